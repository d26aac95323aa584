"""
ExecutionContext: the per-job scope that owns loaded libraries, the
classpath, global variable singletons and the job console.

Nothing in a context is shared with another context, even when both loaded
the same library revision.
"""

import logging
import threading
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from pipelibs.core.errors import ContextCancelledError, LibraryError
from pipelibs.core.library.binder import (
    GlobalVariable,
    GlobalVariableProxy,
    VariableCell,
    resolve_name,
)
from pipelibs.core.library.classifier import ClassifiedLibrary, is_valid_name
from pipelibs.core.library.classpath import Classpath
from pipelibs.engines.script.sandbox import TrustLevel
from pipelibs.engines.script.steps import StepRegistry, build_unit_bindings, default_step_registry
from pipelibs.engines.script.trust import PermissionHook

_log = logging.getLogger(__name__)


class ContextState(str, Enum):
    ACTIVE = "active"
    CLOSED = "closed"


@dataclass(frozen=True)
class LoadedLibrary:
    """One library as loaded into a context; the unit of checkpoint records."""

    name: str
    version: str | None
    revision: str
    trusted: bool
    classified: ClassifiedLibrary = field(repr=False, compare=False)

    def record(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "version": self.version,
            "revision": self.revision,
            "trusted": self.trusted,
        }


class ExecutionContext:
    def __init__(
        self,
        job_id: str,
        *,
        job_name: str | None = None,
        steps: StepRegistry | None = None,
        permission_hook: PermissionHook | None = None,
        cancel: threading.Event | None = None,
        env: dict[str, Any] | None = None,
    ) -> None:
        self.job_id = job_id
        self.job_name = job_name
        self.steps = steps or default_step_registry()
        self.permission_hook = permission_hook or PermissionHook()
        self.cancel_event = cancel or threading.Event()
        self.env: dict[str, Any] = {"JOB_ID": job_id}
        if job_name:
            self.env["JOB_NAME"] = job_name
        self.env.update(env or {})
        self.lock = threading.RLock()
        self.libraries: dict[str, LoadedLibrary] = {}
        self.classpath = Classpath(self)
        self.bindings: dict[str, VariableCell] = {}
        self.bound_libraries: set[tuple[str, str]] = set()
        self.console: list[str] = []
        self.state = ContextState.ACTIVE
        self._console_lock = threading.Lock()
        self._proxies: dict[str, GlobalVariableProxy] | None = None

    def __repr__(self) -> str:
        return f"<ExecutionContext {self.job_id} {self.state.value}>"

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    @property
    def active(self) -> bool:
        return self.state is ContextState.ACTIVE

    def ensure_active(self) -> None:
        if not self.active:
            raise LibraryError(f"Execution context '{self.job_id}' is closed")

    def abort(self) -> None:
        """Request cancellation; in-progress loading stops at the next check."""
        self.cancel_event.set()

    def raise_if_cancelled(self) -> None:
        if self.cancel_event.is_set():
            raise ContextCancelledError(f"Execution '{self.job_id}' was cancelled")

    def close(self) -> None:
        """Drop every singleton and module; the context cannot be used afterwards."""
        with self.lock:
            self.state = ContextState.CLOSED
            self.bindings.clear()
            self.bound_libraries.clear()
            self._proxies = None
            self.classpath = Classpath(self)

    # ------------------------------------------------------------------
    # Libraries
    # ------------------------------------------------------------------

    def add_library(self, loaded: LoadedLibrary) -> None:
        with self.lock:
            self.libraries[loaded.name] = loaded
            self._proxies = None

    def library_records(self) -> list[dict[str, Any]]:
        with self.lock:
            return [lib.record() for lib in self.libraries.values()]

    def library_resource(self, path: str) -> bytes:
        """Content of ``resources/<path>`` from the loaded library that ships it."""
        key = path.strip().lstrip("/")
        with self.lock:
            found = [
                (lib.name, lib.classified.resources[key])
                for lib in self.libraries.values()
                if key in lib.classified.resources
            ]
        if not found:
            raise LibraryError(f"No loaded library has a resource '{key}'")
        if len(found) > 1:
            owners = ", ".join(name for name, _ in found)
            raise LibraryError(f"Resource '{key}' is ambiguous; provided by {owners}")
        return found[0][1]

    # ------------------------------------------------------------------
    # Names
    # ------------------------------------------------------------------

    def resolve_name(self, name: str) -> GlobalVariable:
        self.ensure_active()
        return resolve_name(self, name)

    def proxies(self) -> dict[str, GlobalVariableProxy]:
        """Proxies for every bound name, for installation into job script globals."""
        with self.lock:
            if self._proxies is None:
                self._proxies = {
                    name: GlobalVariableProxy(self, name)
                    for name in self.bindings
                    if is_valid_name(name)
                }
            return dict(self._proxies)

    def unit_bindings(self, trust: TrustLevel, unit: str) -> dict[str, Any]:
        return build_unit_bindings(
            self.steps,
            trust=trust,
            unit=unit,
            context=self,
            hook=self.permission_hook,
        )

    # ------------------------------------------------------------------
    # Console
    # ------------------------------------------------------------------

    def write_console(self, text: str) -> None:
        with self._console_lock:
            self.console.append(text)

    def console_text(self) -> str:
        with self._console_lock:
            return "\n".join(self.console)
