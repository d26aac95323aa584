"""
Classpath contribution: make a library's ``src/`` modules importable inside
one execution context.

Every module is compiled up front (at the library's trust level) so a broken
file fails the job before any script runs. Module bodies run lazily, on first
import, in the context that imported them; nothing is shared through
``sys.modules``. Sandboxed importers only ever see a filtered view of a
module: the names its own code defined, never the injected steps.
"""

import builtins
import logging
import threading
from collections.abc import Callable
from dataclasses import dataclass, field
from types import ModuleType
from typing import TYPE_CHECKING, Any

from pipelibs.core.errors import LibraryCompilationError, LibraryError, NameCollisionError
from pipelibs.core.library.classifier import ClassifiedLibrary
from pipelibs.engines.script.sandbox import CompiledUnit, TrustLevel, compile_unit, instantiate

if TYPE_CHECKING:
    from pipelibs.core.execution.context import ExecutionContext

_log = logging.getLogger(__name__)


@dataclass
class ContributedModule:
    name: str
    library: str
    revision: str
    path: str | None
    unit: CompiledUnit | None
    is_package: bool
    module: ModuleType | None = None
    exported: frozenset[str] = frozenset()
    lock: threading.RLock = field(default_factory=threading.RLock, repr=False)

    @property
    def synthetic(self) -> bool:
        """Implicit parent package with no ``__init__.py`` of its own."""
        return self.unit is None

    @property
    def trust(self) -> TrustLevel | None:
        return self.unit.trust if self.unit is not None else None


def unit_filename(library: str, revision: str, path: str) -> str:
    return f"{library}@{revision[:12]}/{path}"


def _parent(name: str) -> str:
    return name.rpartition(".")[0]


def _resolve_relative(name: str, package: str, level: int) -> str:
    bits = package.split(".") if package else []
    if level > len(bits):
        raise ImportError("attempted relative import beyond top-level package")
    base = ".".join(bits[: len(bits) - level + 1])
    if not name:
        return base
    return f"{base}.{name}" if base else name


class Classpath:
    """Modules contributed to one execution context."""

    def __init__(self, context: "ExecutionContext") -> None:
        self._context = context
        self._modules: dict[str, ContributedModule] = {}
        self._libraries: dict[str, str] = {}
        self._lock = threading.RLock()

    # ------------------------------------------------------------------
    # Contents
    # ------------------------------------------------------------------

    def revision_of(self, library: str) -> str | None:
        with self._lock:
            return self._libraries.get(library)

    def owner(self, module: str) -> str | None:
        with self._lock:
            entry = self._modules.get(module)
            return entry.library if entry is not None else None

    def provides(self, module: str) -> bool:
        with self._lock:
            return module in self._modules

    def names(self) -> list[str]:
        with self._lock:
            return sorted(self._modules)

    def commit(self, library: str, revision: str, staged: dict[str, ContributedModule]) -> None:
        """Add *staged* modules all at once, or none of them on a collision."""
        with self._lock:
            current = self._libraries.get(library)
            if current is not None:
                if current == revision:
                    return
                raise LibraryError(
                    f"Library '{library}' is already loaded at revision {current}; "
                    f"cannot also load {revision}"
                )
            merged: dict[str, ContributedModule] = {}
            for name, entry in staged.items():
                existing = self._modules.get(name)
                if existing is None:
                    merged[name] = entry
                elif entry.synthetic:
                    continue
                elif existing.synthetic and existing.module is None:
                    merged[name] = entry
                else:
                    raise NameCollisionError(name, existing.library, library)
            self._modules.update(merged)
            self._libraries[library] = revision
        _log.debug("Contributed %d modules from %s@%s", len(staged), library, revision)

    # ------------------------------------------------------------------
    # Import machinery
    # ------------------------------------------------------------------

    def make_importer(self, trust: TrustLevel) -> Callable[..., Any]:
        """``__import__`` replacement for units of the given trust level."""

        def _import(
            name: str,
            globals: dict[str, Any] | None = None,
            locals: dict[str, Any] | None = None,
            fromlist: tuple[str, ...] | list[str] | None = (),
            level: int = 0,
        ) -> Any:
            if level:
                package = (globals or {}).get("__package__") or ""
                name = _resolve_relative(name, package, level)
            top = name.partition(".")[0]
            if self.provides(top):
                return self._import(name, fromlist or (), trust)
            if trust is TrustLevel.TRUSTED:
                return builtins.__import__(name, globals, locals, fromlist or (), 0)
            raise ImportError(f"Import of '{name}' is not allowed in sandboxed scripts")

        return _import

    def _import(self, name: str, fromlist: tuple[str, ...] | list[str], trust: TrustLevel) -> Any:
        parts = name.split(".")
        for i in range(1, len(parts) + 1):
            self.load(".".join(parts[:i]))
        for item in fromlist:
            if item == "*":
                continue
            sub = f"{name}.{item}"
            if self.provides(sub):
                self.load(sub)
        target = name if fromlist else parts[0]
        if trust is TrustLevel.TRUSTED:
            return self.load(target)
        return self.view(target)

    def load(self, name: str) -> ModuleType:
        """The module object, executing its body on first use."""
        with self._lock:
            entry = self._modules.get(name)
        if entry is None:
            raise ModuleNotFoundError(f"No module named '{name}'", name=name)
        with entry.lock:
            if entry.module is not None:
                return entry.module
            module = ModuleType(name)
            module.__file__ = entry.path and unit_filename(entry.library, entry.revision, entry.path)
            module.__package__ = name if entry.is_package else _parent(name)
            if entry.is_package:
                module.__path__ = []
            # Published before the body runs so circular imports see the partial module.
            entry.module = module
            if entry.unit is not None:
                try:
                    injected = self._context.unit_bindings(entry.unit.trust, entry.unit.filename)
                    ns, provided = instantiate(
                        entry.unit,
                        injected,
                        name=name,
                        namespace=module.__dict__,
                        importer=self.make_importer(entry.unit.trust),
                        emit=self._context.write_console,
                    )
                except BaseException:
                    entry.module = None
                    raise
                hidden = provided | set(injected)
                entry.exported = frozenset(
                    k for k, v in ns.items()
                    if not k.startswith("_") and k not in hidden and entry.unit.defines(v, name)
                )
        parent = _parent(name)
        if parent:
            setattr(self.load(parent), name.rpartition(".")[2], module)
        return module

    def view(self, name: str) -> ModuleType:
        """What a sandboxed importer sees: exported names and loaded submodules."""
        module = self.load(name)
        with self._lock:
            entry = self._modules[name]
            children = [
                n for n, e in self._modules.items()
                if _parent(n) == name and e.module is not None
            ]
        view = ModuleType(name)
        for attr in entry.exported:
            value = module.__dict__.get(attr)
            if isinstance(value, ModuleType):
                continue
            setattr(view, attr, value)
        for child in children:
            setattr(view, child.rpartition(".")[2], self.view(child))
        return view


def contribute(
    context: "ExecutionContext",
    classified: ClassifiedLibrary,
    *,
    trust: TrustLevel,
) -> None:
    """
    Compile every ``src/`` module of *classified* and add them to the
    context's classpath. Either all modules are added or none are.
    """
    library, revision = classified.key
    if context.classpath.revision_of(library) == revision:
        return
    staged: dict[str, ContributedModule] = {}
    for name in sorted(classified.classes):
        context.raise_if_cancelled()
        source = classified.classes[name]
        if source.error is not None:
            raise LibraryCompilationError(library, revision, source.path, source.error.reason)
        filename = unit_filename(library, revision, source.path)
        try:
            unit = compile_unit(source.source or "", filename, trust)
        except (SyntaxError, ValueError) as e:
            raise LibraryCompilationError(library, revision, source.path, str(e)) from e
        staged[name] = ContributedModule(
            name=name,
            library=library,
            revision=revision,
            path=source.path,
            unit=unit,
            is_package=source.is_package,
        )
    for name in list(staged):
        parent = _parent(name)
        while parent and parent not in staged:
            staged[parent] = ContributedModule(
                name=parent,
                library=library,
                revision=revision,
                path=None,
                unit=None,
                is_package=True,
            )
            parent = _parent(parent)
    context.raise_if_cancelled()
    context.classpath.commit(library, revision, staged)
