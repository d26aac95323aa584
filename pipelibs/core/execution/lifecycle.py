"""
LifecycleManager: create, checkpoint, resume and tear down execution contexts.

Starting a context resolves every requested library (implicit libraries
first, then explicit requests in order), classifies each revision,
contributes its modules and binds its global variables. Any failure discards
the half-built context; a job never runs with a partial set of libraries.

A checkpoint is a JSON document:

    {
      "format": 1,
      "job_id": "...",
      "job_name": "...",
      "libraries": [{"name", "version", "revision", "trusted"}, ...],
      "variables": {"<name>": {"policy": "state", "fields": {...}}
                    | {"policy": "fresh"}}
    }

Resuming re-materializes exactly the recorded revisions; the current default
version of a library is never consulted.
"""

import json
import logging
import threading
from collections import OrderedDict
from collections.abc import Iterable
from typing import Any

from pipelibs.core.errors import LibraryError
from pipelibs.core.execution.context import ExecutionContext, LoadedLibrary
from pipelibs.core.execution.store import ExecutionStore
from pipelibs.core.library.binder import bind, capture_state, restore_state
from pipelibs.core.library.classifier import ClassifiedLibrary, classify
from pipelibs.core.library.classpath import contribute
from pipelibs.core.library.declarations import LibraryRequest
from pipelibs.core.library.provider import (
    RevisionProvider,
    Snapshot,
    resolve_with_retry,
    with_transport_retry,
)
from pipelibs.engines.script.sandbox import TrustLevel
from pipelibs.engines.script.steps import StepRegistry
from pipelibs.engines.script.trust import PermissionHook, effective_trust, trust_for_library
from pipelibs.models import ExecutionStatusEnum, LibraryDeclaration

_log = logging.getLogger(__name__)

CHECKPOINT_FORMAT = 1
_CLASSIFIED_MAX_SIZE = 128


class LifecycleManager:
    def __init__(
        self,
        provider: RevisionProvider,
        *,
        store: ExecutionStore | None = None,
        steps: StepRegistry | None = None,
        permission_hook: PermissionHook | None = None,
    ) -> None:
        self.provider = provider
        self.store = store
        self._steps = steps
        self._permission_hook = permission_hook
        self._classified: OrderedDict[tuple[str, str], ClassifiedLibrary] = OrderedDict()
        self._classified_lock = threading.Lock()

    # ------------------------------------------------------------------
    # Start
    # ------------------------------------------------------------------

    def start(
        self,
        job_id: str,
        requests: Iterable[LibraryRequest | str] = (),
        *,
        job_name: str | None = None,
        replay_of: str | None = None,
        cancel: threading.Event | None = None,
        env: dict[str, Any] | None = None,
    ) -> ExecutionContext:
        """Build a fully loaded context for a new job run."""
        ctx = self._new_context(job_id, job_name=job_name, cancel=cancel, env=env)
        try:
            plan = self._plan(list(requests), job_name)
            pinned: dict[str, str] = {}
            if replay_of:
                if self.store is None:
                    raise LibraryError("Replaying an execution needs an execution store")
                pinned = self.store.recorded_revisions(replay_of)
            for decl, version in plan:
                ctx.raise_if_cancelled()
                revision = pinned.get(decl.name) if decl.allow_version_override else None
                if revision is not None:
                    _log.info("Replay of %s reuses %s@%s", replay_of, decl.name, revision)
                    snapshot = self._materialize(decl.name, revision, ctx)
                else:
                    snapshot = resolve_with_retry(
                        self.provider, decl.name, version, job_name=job_name, cancel=ctx.cancel_event
                    )
                self._load(ctx, snapshot, version, trust_for_library(decl))
            if self.store is not None:
                self.store.create(job_id, job_name=job_name, libraries=ctx.library_records())
        except BaseException as e:
            _log.error("Cannot start execution %s: %s", job_id, e, extra={"job_id": job_id})
            ctx.close()
            raise
        _log.info(
            "Started execution %s with libraries %s",
            job_id,
            ", ".join(f"{lib.name}@{lib.revision[:12]}" for lib in ctx.libraries.values()) or "-",
        )
        return ctx

    def _new_context(
        self,
        job_id: str,
        *,
        job_name: str | None,
        cancel: threading.Event | None,
        env: dict[str, Any] | None = None,
    ) -> ExecutionContext:
        return ExecutionContext(
            job_id,
            job_name=job_name,
            steps=self._steps,
            permission_hook=self._permission_hook,
            cancel=cancel,
            env=env,
        )

    def _plan(
        self, requests: list[LibraryRequest | str], job_name: str | None
    ) -> list[tuple[LibraryDeclaration, str | None]]:
        """Implicit libraries, then explicit requests; one entry per library."""
        explicit: OrderedDict[str, str | None] = OrderedDict()
        for raw in requests:
            req = LibraryRequest.parse(raw) if isinstance(raw, str) else raw
            if req.name in explicit and explicit[req.name] != req.version:
                raise LibraryError(
                    f"Library '{req.name}' requested at both "
                    f"'{explicit[req.name] or '<default>'}' and '{req.version or '<default>'}'"
                )
            explicit[req.name] = req.version
        plan: list[tuple[LibraryDeclaration, str | None]] = []
        for decl in self.provider.registry.implicit_for(job_name):
            if decl.name not in explicit:
                plan.append((decl, None))
        for name, version in explicit.items():
            plan.append((self.provider.declaration(name, job_name=job_name), version))
        return plan

    def _materialize(self, library: str, revision: str, ctx: ExecutionContext) -> Snapshot:
        return with_transport_retry(
            lambda: self.provider.materialize(
                library, revision, job_name=ctx.job_name, cancel=ctx.cancel_event
            ),
            library=library,
            cancel=ctx.cancel_event,
        )

    def _classify(self, snapshot: Snapshot) -> ClassifiedLibrary:
        with self._classified_lock:
            classified = self._classified.get(snapshot.key)
            if classified is not None:
                self._classified.move_to_end(snapshot.key)
                return classified
        classified = classify(snapshot)
        with self._classified_lock:
            self._classified[snapshot.key] = classified
            while len(self._classified) > _CLASSIFIED_MAX_SIZE:
                self._classified.popitem(last=False)
        return classified

    def _load(
        self,
        ctx: ExecutionContext,
        snapshot: Snapshot,
        version: str | None,
        trust: TrustLevel,
    ) -> None:
        classified = self._classify(snapshot)
        contribute(ctx, classified, trust=trust)
        bind(ctx, classified, trust=trust)
        ctx.add_library(
            LoadedLibrary(
                name=snapshot.library,
                version=version,
                revision=snapshot.revision,
                trusted=trust is TrustLevel.TRUSTED,
                classified=classified,
            )
        )

    # ------------------------------------------------------------------
    # Checkpoint / resume
    # ------------------------------------------------------------------

    def checkpoint(self, ctx: ExecutionContext) -> bytes:
        """Serialize the context; stored as the job's latest checkpoint when a store is set."""
        ctx.ensure_active()
        payload = {
            "format": CHECKPOINT_FORMAT,
            "job_id": ctx.job_id,
            "job_name": ctx.job_name,
            "libraries": ctx.library_records(),
            "variables": capture_state(ctx),
        }
        blob = json.dumps(payload, sort_keys=True, separators=(",", ":")).encode("utf-8")
        if self.store is not None:
            self.store.save_checkpoint(ctx.job_id, blob)
        _log.info("Checkpointed execution %s (%d bytes)", ctx.job_id, len(blob))
        return blob

    def resume(
        self,
        blob: bytes | str,
        *,
        cancel: threading.Event | None = None,
        env: dict[str, Any] | None = None,
    ) -> ExecutionContext:
        """Rebuild a context from a checkpoint, with the exact recorded revisions."""
        payload = _parse_checkpoint(blob)
        job_id = payload["job_id"]
        job_name = payload.get("job_name")
        ctx = self._new_context(job_id, job_name=job_name, cancel=cancel, env=env)
        try:
            for rec in payload.get("libraries", []):
                ctx.raise_if_cancelled()
                decl = self.provider.declaration(rec["name"], job_name=job_name)
                snapshot = self._materialize(decl.name, rec["revision"], ctx)
                trust = effective_trust(bool(rec.get("trusted")), decl)
                self._load(ctx, snapshot, rec.get("version"), trust)
            restore_state(ctx, payload.get("variables") or {})
        except BaseException as e:
            _log.error("Cannot resume execution %s: %s", job_id, e, extra={"job_id": job_id})
            ctx.close()
            raise
        if self.store is not None:
            self.store.set_status(job_id, ExecutionStatusEnum.RUNNING)
        _log.info("Resumed execution %s", job_id)
        return ctx

    def resume_job(self, job_id: str, *, cancel: threading.Event | None = None) -> ExecutionContext:
        if self.store is None:
            raise LibraryError("Resuming by job id needs an execution store")
        return self.resume(self.store.load_checkpoint(job_id), cancel=cancel)

    # ------------------------------------------------------------------
    # Teardown
    # ------------------------------------------------------------------

    def finish(
        self,
        ctx: ExecutionContext,
        status: ExecutionStatusEnum = ExecutionStatusEnum.COMPLETED,
    ) -> None:
        """Close the context; its singletons and modules are released."""
        ctx.close()
        if self.store is not None:
            self.store.set_status(ctx.job_id, status)
        _log.info("Execution %s finished: %s", ctx.job_id, status.value)

    def discard(self, ctx: ExecutionContext) -> None:
        self.finish(ctx, ExecutionStatusEnum.DISCARDED)


def _parse_checkpoint(blob: bytes | str) -> dict[str, Any]:
    try:
        payload = json.loads(blob)
    except ValueError as e:
        raise LibraryError(f"Checkpoint is not valid JSON: {e}") from e
    if not isinstance(payload, dict) or "job_id" not in payload:
        raise LibraryError("Checkpoint has no job id")
    if payload.get("format") != CHECKPOINT_FORMAT:
        raise LibraryError(f"Unsupported checkpoint format {payload.get('format')!r}")
    return payload
