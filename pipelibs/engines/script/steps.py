"""
Step vocabulary available to pipeline scripts and library code.

A step is a plain function ``fn(invocation, *args, **kwargs)``. Each compiled
unit gets its own bound copy of every step, carrying the unit's trust level,
so privileged steps can tell a trusted library apart from the job script that
called into it.
"""

import logging
import os
from collections.abc import Callable, Iterator
from dataclasses import dataclass
from pathlib import Path
from types import SimpleNamespace
from typing import TYPE_CHECKING, Any

from pipelibs.core.config import settings
from pipelibs.core.errors import StepFailedError
from pipelibs.engines.script.modules import make_env_module, make_log_module
from pipelibs.engines.script.sandbox import TrustLevel
from pipelibs.engines.script.trust import PermissionHook

if TYPE_CHECKING:
    from pipelibs.core.execution.context import ExecutionContext

_log = logging.getLogger(__name__)

StepFunc = Callable[..., Any]


@dataclass(frozen=True)
class StepDefinition:
    name: str
    func: StepFunc
    privileged: bool = False
    description: str = ""


@dataclass(frozen=True)
class StepInvocation:
    """What a step implementation knows about its caller."""

    step: str
    trust: TrustLevel
    unit: str
    context: "ExecutionContext | None"

    @property
    def job_id(self) -> str | None:
        return self.context.job_id if self.context is not None else None


class StepRegistry:
    """Named steps. Registration is expected at startup; lookups are read-only."""

    def __init__(self) -> None:
        self._steps: dict[str, StepDefinition] = {}

    def register(
        self,
        name: str,
        func: StepFunc | None = None,
        *,
        privileged: bool = False,
        description: str = "",
    ) -> Any:
        """Register *func* as step *name*; usable as a decorator when *func* is omitted."""
        if not name.isidentifier() or name.startswith("_"):
            raise ValueError(f"Invalid step name: {name!r}")

        def _add(fn: StepFunc) -> StepFunc:
            self._steps[name] = StepDefinition(
                name=name,
                func=fn,
                privileged=privileged,
                description=description or (fn.__doc__ or "").strip().split("\n")[0],
            )
            return fn

        if func is None:
            return _add
        return _add(func)

    def get(self, name: str) -> StepDefinition | None:
        return self._steps.get(name)

    def names(self) -> list[str]:
        return sorted(self._steps)

    def __contains__(self, name: object) -> bool:
        return name in self._steps

    def __iter__(self) -> Iterator[StepDefinition]:
        return iter(self._steps[n] for n in self.names())

    def copy(self) -> "StepRegistry":
        other = StepRegistry()
        other._steps = dict(self._steps)
        return other


class BoundStep:
    """A step bound to one unit. Privileged steps consult the permission hook on every call."""

    __slots__ = ("_definition", "_invocation", "_hook")

    def __init__(
        self,
        definition: StepDefinition,
        invocation: StepInvocation,
        hook: PermissionHook,
    ) -> None:
        self._definition = definition
        self._invocation = invocation
        self._hook = hook

    @property
    def name(self) -> str:
        return self._definition.name

    def __call__(self, *args: Any, **kwargs: Any) -> Any:
        if self._definition.privileged:
            self._hook.check(
                self._invocation.trust, self._definition.name, unit=self._invocation.unit
            )
        return self._definition.func(self._invocation, *args, **kwargs)

    def __repr__(self) -> str:
        return f"<step {self._definition.name} ({self._invocation.trust.value})>"


def bind_steps(
    registry: StepRegistry,
    *,
    trust: TrustLevel,
    unit: str,
    context: "ExecutionContext | None",
    hook: PermissionHook,
) -> dict[str, BoundStep]:
    bound: dict[str, BoundStep] = {}
    for definition in registry:
        invocation = StepInvocation(step=definition.name, trust=trust, unit=unit, context=context)
        bound[definition.name] = BoundStep(definition, invocation, hook)
    return bound


def build_unit_bindings(
    registry: StepRegistry,
    *,
    trust: TrustLevel,
    unit: str,
    context: "ExecutionContext | None",
    hook: PermissionHook,
) -> dict[str, Any]:
    """
    Names injected into a unit's globals: every step by name, plus ``steps``
    (namespace of the same), ``env`` and ``log``.
    """
    bound = bind_steps(registry, trust=trust, unit=unit, context=context, hook=hook)
    job_id = context.job_id if context is not None else None
    job_env = context.env if context is not None else {}
    whitelist = None if trust is TrustLevel.TRUSTED else settings.env_whitelist
    bindings: dict[str, Any] = dict(bound)
    bindings["steps"] = SimpleNamespace(**bound)
    bindings["env"] = make_env_module(job_env=job_env, env_whitelist=whitelist)
    bindings["log"] = make_log_module(extra={"job_id": job_id, "unit": unit})
    return bindings


# ---------------------------------------------------------------------------
# Built-in steps
# ---------------------------------------------------------------------------


def _echo(inv: StepInvocation, message: Any = "") -> None:
    """Print a message to the job console."""
    text = str(message)
    if inv.context is not None:
        inv.context.write_console(text)
    _log.info("[%s] %s", inv.job_id or "-", text)


def _error(inv: StepInvocation, message: Any = "Pipeline failed") -> None:
    """Fail the job with a message."""
    raise StepFailedError(str(message))


def _library_resource(inv: StepInvocation, path: str, encoding: str | None = "utf-8") -> Any:
    """Content of a file under resources/ of a loaded library."""
    if inv.context is None:
        raise StepFailedError("library_resource needs an execution context")
    data = inv.context.library_resource(path)
    if encoding is None:
        return data
    return data.decode(encoding)


def _host_env(inv: StepInvocation, key: str, default: Any = None) -> Any:
    """Read any host environment variable."""
    return os.environ.get(key, default)


def _read_host_file(inv: StepInvocation, path: str, encoding: str = "utf-8") -> str:
    """Read a file from the host filesystem."""
    return Path(path).read_text(encoding=encoding)


def default_step_registry() -> StepRegistry:
    registry = StepRegistry()
    registry.register("echo", _echo)
    registry.register("error", _error)
    registry.register("library_resource", _library_resource)
    registry.register("host_env", _host_env, privileged=True)
    registry.register("read_host_file", _read_host_file, privileged=True)
    return registry
