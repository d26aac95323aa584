"""
PipelineScriptExecutor: run a job script inside an execution context.

The job script is always sandboxed. Its globals hold the step vocabulary,
``env``, ``log``, ``params`` and a proxy for every bound global variable.
If the script defines ``execute(params)`` it is called and its return value
is the result; otherwise the script's global ``result`` is returned.
Optional: SCRIPT_EXEC_TIMEOUT (signal.SIGALRM on Unix, main thread only)
aborts long-running scripts.

A script can request libraries with header comments:

    #@library acme-utils@v2, deploy-tools
    #@library reporting
"""

import logging
import re
import signal
import threading
from collections.abc import Iterable
from typing import TYPE_CHECKING, Any

from pipelibs.core.config import settings
from pipelibs.core.library.declarations import LibraryRequest
from pipelibs.engines.script.sandbox import build_restricted_globals, compile_unit
from pipelibs.engines.script.trust import JOB_SCRIPT_TRUST
from pipelibs.models import ExecutionStatusEnum

if TYPE_CHECKING:
    from pipelibs.core.execution.context import ExecutionContext
    from pipelibs.core.execution.lifecycle import LifecycleManager

_log = logging.getLogger(__name__)

_DIRECTIVE_RE = re.compile(r"^\s*#\s*@library\s+(?P<specs>.+?)\s*$")


class ScriptTimeoutError(TimeoutError):
    """Raised when script execution exceeds SCRIPT_EXEC_TIMEOUT."""

    pass


def parse_library_directives(script: str) -> list[LibraryRequest]:
    """``#@library`` requests from the script's leading comment block."""
    requests: list[LibraryRequest] = []
    for line in script.splitlines():
        stripped = line.strip()
        if not stripped:
            continue
        if not stripped.startswith("#"):
            break
        m = _DIRECTIVE_RE.match(stripped)
        if m is None:
            continue
        for spec in m.group("specs").split(","):
            if spec.strip():
                requests.append(LibraryRequest.parse(spec))
    return requests


def _exec_with_timeout(code: object, g: dict[str, Any], timeout_sec: int) -> None:
    """Run exec(code, g) with signal.SIGALRM. Unix only; requires hasattr(signal, 'SIGALRM')."""

    def _handler(signum: int, frame: Any) -> None:
        raise ScriptTimeoutError(f"Script execution timed out after {timeout_sec}s")

    old = signal.signal(signal.SIGALRM, _handler)
    try:
        signal.alarm(timeout_sec)
        try:
            exec(code, g)
        finally:
            signal.alarm(0)
    finally:
        signal.signal(signal.SIGALRM, old)


class PipelineScriptExecutor:
    """Run pipeline scripts in a RestrictedPython sandbox with an ExecutionContext."""

    def execute(
        self,
        script: str,
        context: "ExecutionContext",
        params: dict[str, Any] | None = None,
        *,
        filename: str = "<pipeline>",
    ) -> Any:
        """
        Compile script, exec in restricted globals, return result.
        Global variables shadow steps of the same name.
        """
        context.ensure_active()
        unit = compile_unit(script, filename, JOB_SCRIPT_TRUST)
        injected = context.unit_bindings(JOB_SCRIPT_TRUST, filename)
        proxies = context.proxies()
        shadowed = sorted(set(injected) & set(proxies))
        if shadowed:
            _log.debug("Global variables shadow steps: %s", ", ".join(shadowed))
        req = dict(params or {})
        g = build_restricted_globals(
            {**injected, **proxies, "params": req},
            name="__pipeline__",
            importer=context.classpath.make_importer(JOB_SCRIPT_TRUST),
            emit=context.write_console,
        )
        timeout = settings.SCRIPT_EXEC_TIMEOUT
        use_signal = (
            timeout is not None
            and timeout > 0
            and hasattr(signal, "SIGALRM")
            and threading.current_thread() is threading.main_thread()
        )
        if use_signal:
            _exec_with_timeout(unit.code, g, timeout)
        else:
            exec(unit.code, g)
        # Prefer execute(params) function; fallback to global result
        execute_fn = g.get("execute")
        if callable(execute_fn):
            return execute_fn(req)
        return g.get("result")

    def run(
        self,
        manager: "LifecycleManager",
        job_id: str,
        script: str,
        *,
        job_name: str | None = None,
        requests: Iterable[LibraryRequest | str] = (),
        params: dict[str, Any] | None = None,
    ) -> Any:
        """Start a context (script directives + *requests*), run *script*, finish the context."""
        wanted = [*parse_library_directives(script), *requests]
        context = manager.start(job_id, wanted, job_name=job_name)
        try:
            result = self.execute(script, context, params)
        except BaseException:
            manager.finish(context, ExecutionStatusEnum.FAILED)
            raise
        manager.finish(context, ExecutionStatusEnum.COMPLETED)
        return result
