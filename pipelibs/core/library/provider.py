"""
Revision provider: library name + optional version token -> immutable Snapshot.

Resolution happens in two steps, each coalesced so concurrent callers for the
same key share one transport call:

* version token -> revision id   (single flight per (library, token), then the
  two-tier revision cache)
* revision id -> file tree       (single flight per (library, revision), then an
  in-memory LRU and an on-disk tar cache)

Distinct keys never wait on each other. Failed flights are not cached; every
waiter of a failed flight receives the same error.
"""

import logging
import os
import re
import tarfile
import threading
import time
from collections import OrderedDict
from collections.abc import Callable, Hashable, Mapping
from concurrent.futures import Future
from concurrent.futures import TimeoutError as FutureTimeout
from dataclasses import dataclass
from pathlib import Path
from types import MappingProxyType
from typing import Any

from pipelibs.core.config import settings
from pipelibs.core.errors import (
    ContextCancelledError,
    LibraryError,
    NotFoundError,
    ResolutionFailure,
    VersionResolutionError,
)
from pipelibs.core.library import revision_cache
from pipelibs.core.library.declarations import LibraryRegistry
from pipelibs.core.library.transport import (
    GitTransport,
    LocalDirectoryTransport,
    RevisionNotFound,
    TransportError,
    VcsTransport,
    unpack_tree,
)
from pipelibs.models import LibraryDeclaration

_log = logging.getLogger(__name__)

_WAIT_POLL_SECONDS = 0.05
_UNSAFE_NAME_RE = re.compile(r"[^A-Za-z0-9._-]")


@dataclass(frozen=True, eq=False)
class Snapshot:
    """One materialized revision of a library tree."""

    library: str
    revision: str
    files: Mapping[str, bytes]

    @property
    def key(self) -> tuple[str, str]:
        return (self.library, self.revision)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Snapshot):
            return NotImplemented
        return self.key == other.key and dict(self.files) == dict(other.files)

    def __hash__(self) -> int:
        return hash(self.key)


def default_transports() -> dict[str, VcsTransport]:
    return {"git": GitTransport(), "local": LocalDirectoryTransport()}


class _SingleFlight:
    """At most one call in flight per key; later callers wait for its outcome."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._calls: dict[Hashable, Future] = {}

    def do(
        self,
        key: Hashable,
        fn: Callable[[], Any],
        cancel: threading.Event | None = None,
    ) -> Any:
        with self._lock:
            fut = self._calls.get(key)
            leader = fut is None
            if leader:
                fut = Future()
                self._calls[key] = fut
        if not leader:
            return _wait(fut, cancel)
        try:
            result = fn()
        except BaseException as e:
            fut.set_exception(e)
            raise
        else:
            fut.set_result(result)
            return result
        finally:
            with self._lock:
                self._calls.pop(key, None)

    def in_flight(self) -> int:
        with self._lock:
            return len(self._calls)


def _wait(fut: Future, cancel: threading.Event | None) -> Any:
    if cancel is None:
        return fut.result()
    while True:
        if cancel.is_set():
            raise ContextCancelledError("Cancelled while waiting for library checkout")
        try:
            return fut.result(timeout=_WAIT_POLL_SECONDS)
        except FutureTimeout:
            continue


class RevisionProvider:
    """Resolves declared libraries to snapshots. Safe to share between threads."""

    def __init__(
        self,
        registry: LibraryRegistry | None = None,
        transports: Mapping[str, VcsTransport] | None = None,
        *,
        cache_dir: str | Path | None = None,
        disk_cache: bool = True,
        max_entries: int | None = None,
    ) -> None:
        self._registry = registry or LibraryRegistry()
        self._transports = dict(transports) if transports is not None else default_transports()
        self._disk_dir = (
            Path(cache_dir or Path(settings.LIBRARY_CACHE_DIR) / "snapshots")
            if disk_cache
            else None
        )
        self._max_entries = max(1, max_entries or settings.LIBRARY_CACHE_MAX_ENTRIES)
        self._snapshots: OrderedDict[tuple[str, str], Snapshot] = OrderedDict()
        self._snapshots_lock = threading.Lock()
        self._disk_lock = threading.Lock()
        self._resolving = _SingleFlight()
        self._materializing = _SingleFlight()

    @property
    def registry(self) -> LibraryRegistry:
        return self._registry

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def declaration(self, library: str, *, job_name: str | None = None) -> LibraryDeclaration:
        """The declaration of *library* as seen by *job_name*; NotFoundError otherwise."""
        decl = self._registry.get(library)
        if decl is None or not decl.visible_to(job_name):
            raise NotFoundError(library, job_name=job_name)
        return decl

    def resolve(
        self,
        library: str,
        version: str | None = None,
        *,
        job_name: str | None = None,
        cancel: threading.Event | None = None,
    ) -> Snapshot:
        """Snapshot of *library* at *version* (or its default version)."""
        decl = self.declaration(library, job_name=job_name)
        revision = self.resolve_revision(decl, version, cancel=cancel)
        return self._materialize(decl, revision, cancel)

    def materialize(
        self,
        library: str,
        revision: str,
        *,
        job_name: str | None = None,
        cancel: threading.Event | None = None,
    ) -> Snapshot:
        """Snapshot of an exact, previously resolved revision id."""
        decl = self.declaration(library, job_name=job_name)
        return self._materialize(decl, revision, cancel)

    def resolve_revision(
        self,
        decl: LibraryDeclaration,
        version: str | None,
        *,
        cancel: threading.Event | None = None,
    ) -> str:
        token = self.effective_version(decl, version)
        cached = revision_cache.get_revision(decl.name, token)
        if cached is not None:
            return cached
        return self._resolving.do(
            (decl.name, token), lambda: self._lookup_revision(decl, token), cancel
        )

    @staticmethod
    def effective_version(decl: LibraryDeclaration, version: str | None) -> str | None:
        """Version token to resolve, enforcing the declaration's override policy."""
        default = decl.default_version or None
        if version and version != default and not decl.allow_version_override:
            raise VersionResolutionError(
                decl.name,
                version,
                ResolutionFailure.OVERRIDE_FORBIDDEN,
                "version override not permitted by the library declaration",
            )
        return version or default

    def invalidate(self, library: str) -> None:
        """Forget cached version lookups (library pushed or re-registered)."""
        revision_cache.invalidate_library(library)

    def evict(self, library: str) -> int:
        """Drop cached snapshots of *library* from memory and disk. Returns count."""
        self.invalidate(library)
        with self._snapshots_lock:
            keys = [k for k in self._snapshots if k[0] == library]
            for k in keys:
                self._snapshots.pop(k, None)
        removed = len(keys)
        if self._disk_dir is not None:
            lib_dir = self._disk_dir / _safe_name(library)
            with self._disk_lock:
                for p in lib_dir.glob("*.tar") if lib_dir.is_dir() else []:
                    p.unlink(missing_ok=True)
                    removed += 1
        return removed

    def stats(self) -> dict[str, int]:
        with self._snapshots_lock:
            cached = len(self._snapshots)
        return {
            "snapshots": cached,
            "resolving": self._resolving.in_flight(),
            "materializing": self._materializing.in_flight(),
        }

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _transport(self, decl: LibraryDeclaration) -> VcsTransport:
        transport = self._transports.get(decl.scm)
        if transport is None:
            raise LibraryError(
                f"Library '{decl.name}' uses scm '{decl.scm}' but no transport is registered for it"
            )
        return transport

    def _lookup_revision(self, decl: LibraryDeclaration, token: str | None) -> str:
        cached = revision_cache.get_revision(decl.name, token)
        if cached is not None:
            return cached
        transport = self._transport(decl)
        try:
            revision = transport.resolve_revision(decl.location, token)
        except RevisionNotFound as e:
            raise VersionResolutionError(
                decl.name, token, ResolutionFailure.UNKNOWN_REVISION, str(e)
            ) from e
        except TransportError as e:
            raise VersionResolutionError(
                decl.name, token, ResolutionFailure.TRANSPORT_UNAVAILABLE, str(e)
            ) from e
        _log.info(
            "Resolved library %s@%s to %s", decl.name, token or "<default>", revision
        )
        revision_cache.set_revision(decl.name, token, revision)
        return revision

    def _materialize(
        self,
        decl: LibraryDeclaration,
        revision: str,
        cancel: threading.Event | None,
    ) -> Snapshot:
        key = (decl.name, revision)
        snap = self._memory_get(key)
        if snap is not None:
            return snap
        return self._materializing.do(key, lambda: self._load(decl, revision), cancel)

    def _load(self, decl: LibraryDeclaration, revision: str) -> Snapshot:
        key = (decl.name, revision)
        snap = self._memory_get(key)
        if snap is not None:
            return snap
        data = self._disk_get(key)
        if data is None:
            transport = self._transport(decl)
            try:
                data = transport.fetch(decl.location, revision)
            except RevisionNotFound as e:
                raise VersionResolutionError(
                    decl.name, revision, ResolutionFailure.UNKNOWN_REVISION, str(e)
                ) from e
            except TransportError as e:
                raise VersionResolutionError(
                    decl.name, revision, ResolutionFailure.TRANSPORT_UNAVAILABLE, str(e)
                ) from e
            from_disk = False
        else:
            from_disk = True
        try:
            files = unpack_tree(data)
        except tarfile.TarError as e:
            if from_disk:
                self._disk_delete(key)
            raise VersionResolutionError(
                decl.name,
                revision,
                ResolutionFailure.TRANSPORT_UNAVAILABLE,
                f"corrupt tree archive: {e}",
            ) from e
        if not from_disk:
            self._disk_put(key, data)
        snap = Snapshot(library=decl.name, revision=revision, files=MappingProxyType(files))
        self._memory_put(key, snap)
        _log.debug("Materialized %s@%s (%d files)", decl.name, revision, len(files))
        return snap

    def _memory_get(self, key: tuple[str, str]) -> Snapshot | None:
        with self._snapshots_lock:
            snap = self._snapshots.get(key)
            if snap is not None:
                self._snapshots.move_to_end(key)
            return snap

    def _memory_put(self, key: tuple[str, str], snap: Snapshot) -> None:
        with self._snapshots_lock:
            self._snapshots[key] = snap
            self._snapshots.move_to_end(key)
            while len(self._snapshots) > self._max_entries:
                self._snapshots.popitem(last=False)

    def _disk_path(self, key: tuple[str, str]) -> Path | None:
        if self._disk_dir is None:
            return None
        library, revision = key
        return self._disk_dir / _safe_name(library) / f"{_safe_name(revision)}.tar"

    def _disk_get(self, key: tuple[str, str]) -> bytes | None:
        path = self._disk_path(key)
        if path is None:
            return None
        try:
            data = path.read_bytes()
        except FileNotFoundError:
            return None
        except OSError as e:
            _log.warning("Cannot read cached snapshot %s: %s", path, e)
            return None
        try:
            os.utime(path)
        except OSError:
            pass
        return data

    def _disk_put(self, key: tuple[str, str], data: bytes) -> None:
        path = self._disk_path(key)
        if path is None:
            return
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            tmp = path.with_suffix(f".tmp{threading.get_ident()}")
            tmp.write_bytes(data)
            os.replace(tmp, path)
        except OSError as e:
            _log.warning("Cannot write snapshot cache %s: %s", path, e)
            return
        self._disk_evict()

    def _disk_delete(self, key: tuple[str, str]) -> None:
        path = self._disk_path(key)
        if path is not None:
            path.unlink(missing_ok=True)

    def _disk_evict(self) -> None:
        """Keep at most max_entries archives on disk, least recently used out first."""
        assert self._disk_dir is not None
        with self._disk_lock:
            entries = []
            for p in self._disk_dir.glob("*/*.tar"):
                try:
                    entries.append((p.stat().st_mtime, p))
                except OSError:
                    continue
            excess = len(entries) - self._max_entries
            if excess <= 0:
                return
            entries.sort()
            for _, p in entries[:excess]:
                p.unlink(missing_ok=True)
                _log.debug("Evicted cached snapshot %s", p)


def _safe_name(value: str) -> str:
    return _UNSAFE_NAME_RE.sub("_", value) or "_"


def with_transport_retry(
    fn: Callable[[], Snapshot],
    *,
    library: str,
    cancel: threading.Event | None = None,
    attempts: int | None = None,
    backoff: float | None = None,
) -> Snapshot:
    """Call *fn*, retrying transport outages with exponential backoff."""
    attempts = max(1, attempts or settings.TRANSPORT_RETRY_ATTEMPTS)
    delay = settings.TRANSPORT_RETRY_BACKOFF_SECONDS if backoff is None else backoff
    for attempt in range(1, attempts + 1):
        try:
            return fn()
        except VersionResolutionError as e:
            if not e.retryable or attempt == attempts:
                raise
            _log.warning(
                "Transport unavailable for library %s (attempt %d/%d), retrying in %.2fs",
                library,
                attempt,
                attempts,
                delay,
            )
            if cancel is not None:
                if cancel.wait(delay):
                    raise ContextCancelledError(
                        f"Cancelled while retrying checkout of library '{library}'"
                    ) from e
            else:
                time.sleep(delay)
            delay *= 2
    raise AssertionError("unreachable")


def resolve_with_retry(
    provider: RevisionProvider,
    library: str,
    version: str | None,
    *,
    job_name: str | None = None,
    cancel: threading.Event | None = None,
    attempts: int | None = None,
    backoff: float | None = None,
) -> Snapshot:
    """``provider.resolve`` retrying transport outages."""
    return with_transport_retry(
        lambda: provider.resolve(library, version, job_name=job_name, cancel=cancel),
        library=library,
        cancel=cancel,
        attempts=attempts,
        backoff=backoff,
    )
