"""
Global variables: ``vars/<name>.py`` scripts bound as per-context singletons.

Binding only registers names. The script runs the first time a name is
referenced, exactly once per execution context even under concurrent first
access. The resulting instance exposes what the script defined:

    # vars/deploy.py
    target = "staging"          # field, persisted in checkpoints

    def call(env):              # deploy("prod")
        echo("deploying to " + env)

    def describe():             # deploy.describe()
        return target

Only what the script itself defines is reachable from outside; names it
imported or was given (steps, host functions, modules) stay private.

A script sets ``RESUMABLE = False`` to opt out of checkpointing; it is then
recreated empty when the job resumes. Fields must be JSON values (None, bool,
int, float, str, lists and str-keyed dicts of those) to survive a resume.
"""

import logging
import threading
import warnings
from dataclasses import dataclass, field
from types import ModuleType
from typing import TYPE_CHECKING, Any

from pipelibs.core.errors import (
    LibraryCompilationError,
    LibraryError,
    NameCollisionError,
    NonResumableStateWarning,
    UnboundNameError,
)
from pipelibs.core.library.classifier import ClassifiedLibrary, VariableSource
from pipelibs.engines.script.sandbox import CompiledUnit, TrustLevel, compile_unit, instantiate

if TYPE_CHECKING:
    from pipelibs.core.execution.context import ExecutionContext

_log = logging.getLogger(__name__)

CALL_ENTRY_POINT = "call"
RESUMABLE_FLAG = "RESUMABLE"

POLICY_STATE = "state"
POLICY_FRESH = "fresh"


class GlobalVariable:
    """The singleton instance of one global variable in one execution context."""

    _guarded_writes = True

    def __init__(
        self,
        name: str,
        library: str,
        namespace: dict[str, Any],
        hidden: set[str],
        unit: CompiledUnit,
    ) -> None:
        object.__setattr__(self, "_name", name)
        object.__setattr__(self, "_library", library)
        object.__setattr__(self, "_namespace", namespace)
        object.__setattr__(self, "_hidden", frozenset(hidden))
        object.__setattr__(self, "_unit", unit)

    def _declared(self, attr: str) -> bool:
        return not attr.startswith("_") and attr not in self._hidden and attr in self._namespace

    def _visible(self, attr: str) -> bool:
        # Only what the script itself defined; imports and injected steps stay inside.
        return self._declared(attr) and self._unit.defines(
            self._namespace[attr], self._namespace.get("__name__", "")
        )

    def __getattr__(self, attr: str) -> Any:
        if attr.startswith("_") or not self._visible(attr):
            raise AttributeError(f"Global variable '{self._name}' has no attribute '{attr}'")
        return self._namespace[attr]

    def __setattr__(self, attr: str, value: Any) -> None:
        if attr.startswith("_") or attr in self._hidden:
            raise AttributeError(f"Cannot set '{attr}' on global variable '{self._name}'")
        if attr in self._namespace and not self._visible(attr):
            raise AttributeError(f"Cannot set '{attr}' on global variable '{self._name}'")
        self._namespace[attr] = value

    def __call__(self, *args: Any, **kwargs: Any) -> Any:
        fn = self._namespace.get(CALL_ENTRY_POINT)
        if not self._visible(CALL_ENTRY_POINT) or not callable(fn):
            raise TypeError(f"Global variable '{self._name}' is not callable (no call() defined)")
        return fn(*args, **kwargs)

    def __dir__(self) -> list[str]:
        return sorted(k for k in self._namespace if self._visible(k))

    def __repr__(self) -> str:
        return f"<global variable {self._name} from {self._library}>"


class GlobalVariableProxy:
    """
    Stand-in installed in job script globals. Every use resolves the name in
    the owning context, which instantiates the variable on first reference.
    """

    __slots__ = ("_context", "_name")
    _guarded_writes = True

    def __init__(self, context: "ExecutionContext", name: str) -> None:
        object.__setattr__(self, "_context", context)
        object.__setattr__(self, "_name", name)

    def _target(self) -> GlobalVariable:
        return resolve_name(self._context, self._name)

    def __getattr__(self, attr: str) -> Any:
        if attr.startswith("__"):
            raise AttributeError(attr)
        return getattr(self._target(), attr)

    def __setattr__(self, attr: str, value: Any) -> None:
        setattr(self._target(), attr, value)

    def __call__(self, *args: Any, **kwargs: Any) -> Any:
        return self._target()(*args, **kwargs)

    def __repr__(self) -> str:
        return f"<global variable proxy {self._name}>"


@dataclass
class VariableCell:
    """Lazy slot for one bound name."""

    name: str
    library: str
    revision: str
    source: VariableSource
    trust: TrustLevel
    instance: GlobalVariable | None = None
    pending_state: dict[str, Any] | None = None
    recreate_on_resume: bool = False
    lock: threading.RLock = field(default_factory=threading.RLock, repr=False)
    _initializing: bool = field(default=False, repr=False)

    def get(self, context: "ExecutionContext") -> GlobalVariable:
        instance = self.instance
        if instance is not None:
            return instance
        with self.lock:
            if self.instance is None:
                if self._initializing:
                    raise LibraryError(
                        f"Global variable '{self.name}' refers to itself while initializing"
                    )
                self._initializing = True
                try:
                    self.instance = _instantiate(context, self)
                finally:
                    self._initializing = False
            return self.instance


def _instantiate(context: "ExecutionContext", cell: VariableCell) -> GlobalVariable:
    context.ensure_active()
    path = cell.source.path
    source = cell.source.require_source()
    filename = f"{cell.library}@{cell.revision[:12]}/{path}"
    try:
        unit = compile_unit(source, filename, cell.trust)
    except (SyntaxError, ValueError) as e:
        raise LibraryCompilationError(cell.library, cell.revision, path, str(e)) from e
    injected = context.unit_bindings(cell.trust, filename)
    namespace, provided = instantiate(
        unit,
        injected,
        name=f"vars.{cell.name}",
        importer=context.classpath.make_importer(cell.trust),
        emit=context.write_console,
    )
    hidden = set(provided)
    variable = GlobalVariable(cell.name, cell.library, namespace, hidden, unit)
    if cell.pending_state is not None:
        namespace.update(cell.pending_state)
        _log.debug("Restored %d fields of global variable %s", len(cell.pending_state), cell.name)
        cell.pending_state = None
    elif cell.recreate_on_resume:
        _log.info("Global variable %s recreated empty after resume", cell.name)
    cell.recreate_on_resume = False
    _log.debug("Instantiated global variable %s from %s", cell.name, cell.library)
    return variable


# ---------------------------------------------------------------------------
# Binding and resolution
# ---------------------------------------------------------------------------


def bind(context: "ExecutionContext", classified: ClassifiedLibrary, *, trust: TrustLevel) -> None:
    """Register the global variables of *classified* without instantiating any of them."""
    library, revision = classified.key
    with context.lock:
        if classified.key in context.bound_libraries:
            return
        staged: dict[str, VariableCell] = {}
        for name in sorted(classified.variables):
            context.raise_if_cancelled()
            existing = context.bindings.get(name)
            if existing is not None:
                raise NameCollisionError(name, existing.library, library)
            staged[name] = VariableCell(
                name=name,
                library=library,
                revision=revision,
                source=classified.variables[name],
                trust=trust,
            )
        context.bindings.update(staged)
        context.bound_libraries.add(classified.key)
    _log.debug("Bound %d global variables from %s@%s", len(staged), library, revision)


def resolve_name(context: "ExecutionContext", name: str) -> GlobalVariable:
    """The singleton for *name* in *context*, creating it on first reference."""
    cell = context.bindings.get(name)
    if cell is None:
        raise UnboundNameError(name, job_id=context.job_id)
    return cell.get(context)


def bound_names(context: "ExecutionContext") -> list[str]:
    return sorted(context.bindings)


# ---------------------------------------------------------------------------
# Checkpoint support
# ---------------------------------------------------------------------------


def is_json_value(value: Any) -> bool:
    """True for values that survive a JSON round trip unchanged."""
    if value is None or type(value) in (str, bool, int, float):
        return True
    if type(value) is list:
        return all(is_json_value(v) for v in value)
    if type(value) is dict:
        return all(type(k) is str and is_json_value(v) for k, v in value.items())
    return False


def variable_fields(variable: GlobalVariable) -> dict[str, Any]:
    """Script-defined data fields (functions, classes and modules excluded)."""
    namespace = variable._namespace
    return {
        k: v
        for k, v in sorted(namespace.items())
        if k != RESUMABLE_FLAG
        and variable._declared(k)
        and not isinstance(v, ModuleType)
        and not callable(v)
    }


def is_resumable(variable: GlobalVariable) -> bool:
    return variable._namespace.get(RESUMABLE_FLAG, True) is not False


def capture_state(context: "ExecutionContext") -> dict[str, dict[str, Any]]:
    """Per-variable checkpoint entries for every variable that has state to carry."""
    state: dict[str, dict[str, Any]] = {}
    for name in bound_names(context):
        cell = context.bindings[name]
        variable = cell.instance
        if variable is None:
            if cell.pending_state is not None:
                state[name] = {"policy": POLICY_STATE, "fields": cell.pending_state}
            elif cell.recreate_on_resume:
                state[name] = {"policy": POLICY_FRESH}
            continue
        if not is_resumable(variable):
            state[name] = {"policy": POLICY_FRESH}
            continue
        fields = variable_fields(variable)
        bad = sorted(k for k, v in fields.items() if not is_json_value(v))
        if bad:
            msg = (
                f"Global variable '{name}' holds non-serializable fields {', '.join(bad)}; "
                "it will be recreated empty on resume"
            )
            warnings.warn(msg, NonResumableStateWarning, stacklevel=3)
            _log.warning(msg)
            state[name] = {"policy": POLICY_FRESH}
            continue
        state[name] = {"policy": POLICY_STATE, "fields": fields}
    return state


def restore_state(context: "ExecutionContext", state: dict[str, dict[str, Any]]) -> None:
    """Arrange for checkpointed fields to be applied when each variable is next instantiated."""
    for name, entry in state.items():
        cell = context.bindings.get(name)
        if cell is None:
            _log.warning("Checkpoint names global variable %s which is no longer bound", name)
            continue
        if entry.get("policy") == POLICY_STATE:
            cell.pending_state = dict(entry.get("fields") or {})
        else:
            cell.recreate_on_resume = True
