"""Unit tests for the revision provider: resolution, single flight, caching, retry."""

import threading
from pathlib import Path

import pytest
from sqlmodel import Session

from pipelibs.core.errors import (
    ContextCancelledError,
    NotFoundError,
    ResolutionFailure,
    VersionResolutionError,
)
from pipelibs.core.library.declarations import LibraryRegistry
from pipelibs.core.library.provider import RevisionProvider, resolve_with_retry
from tests.utils.library import create_library, tree
from tests.utils.transport import InMemoryTransport

HELLO = tree(vars={"hello": "def call():\n    return 'hi'\n"})


def _run_threads(n: int, fn) -> tuple[list, list]:  # type: ignore[no-untyped-def]
    results: list = []
    errors: list = []
    lock = threading.Lock()
    barrier = threading.Barrier(n)

    def worker() -> None:
        barrier.wait()
        try:
            out = fn()
        except Exception as e:
            with lock:
                errors.append(e)
        else:
            with lock:
                results.append(out)

    threads = [threading.Thread(target=worker) for _ in range(n)]
    for t in threads:
        t.start()
    for t in threads:
        t.join(10)
    return results, errors


class TestResolve:
    def test_default_version(
        self, db: Session, provider: RevisionProvider, transport: InMemoryTransport
    ) -> None:
        rev = transport.publish("mem://acme", HELLO)
        create_library(db, "acme")
        snap = provider.resolve("acme")
        assert snap.revision == rev
        assert snap.files["vars/hello.py"] == HELLO["vars/hello.py"]

    def test_declared_default_version(
        self, db: Session, provider: RevisionProvider, transport: InMemoryTransport
    ) -> None:
        transport.publish("mem://acme", HELLO)
        stable = transport.publish("mem://acme", tree(vars={"x": "y = 1\n"}), "stable")
        create_library(db, "acme", default_version="stable")
        assert provider.resolve("acme").revision == stable

    def test_snapshot_is_immutable(
        self, db: Session, provider: RevisionProvider, transport: InMemoryTransport
    ) -> None:
        transport.publish("mem://acme", HELLO)
        create_library(db, "acme")
        snap = provider.resolve("acme")
        with pytest.raises(TypeError):
            snap.files["vars/other.py"] = b""  # type: ignore[index]

    def test_same_revision_same_snapshot(
        self, db: Session, provider: RevisionProvider, transport: InMemoryTransport
    ) -> None:
        rev = transport.publish("mem://acme", HELLO)
        create_library(db, "acme")
        assert provider.resolve("acme") is provider.materialize("acme", rev)
        assert transport.fetch_calls == 1

    def test_unknown_library(self, provider: RevisionProvider) -> None:
        with pytest.raises(NotFoundError):
            provider.resolve("missing")

    def test_library_not_visible_to_job(
        self, db: Session, provider: RevisionProvider, transport: InMemoryTransport
    ) -> None:
        transport.publish("mem://acme", HELLO)
        create_library(db, "acme", job_scope="team-a")
        assert provider.resolve("acme", job_name="team-a/build").revision
        with pytest.raises(NotFoundError):
            provider.resolve("acme", job_name="team-b/build")

    def test_unknown_version(
        self, db: Session, provider: RevisionProvider, transport: InMemoryTransport
    ) -> None:
        transport.publish("mem://acme", HELLO)
        create_library(db, "acme")
        with pytest.raises(VersionResolutionError) as exc:
            provider.resolve("acme", "nope")
        assert exc.value.kind is ResolutionFailure.UNKNOWN_REVISION
        assert not exc.value.retryable

    def test_override_forbidden(
        self, db: Session, provider: RevisionProvider, transport: InMemoryTransport
    ) -> None:
        transport.publish("mem://acme", HELLO)
        transport.publish("mem://acme", HELLO, "dev")
        create_library(db, "acme", default_version="main", allow_version_override=False)
        assert provider.resolve("acme", "main").revision
        with pytest.raises(VersionResolutionError) as exc:
            provider.resolve("acme", "dev")
        assert exc.value.kind is ResolutionFailure.OVERRIDE_FORBIDDEN

    def test_unknown_scm(self, db: Session, provider: RevisionProvider) -> None:
        create_library(db, "acme", scm="svn")
        with pytest.raises(Exception, match="no transport"):
            provider.resolve("acme")

    def test_version_lookup_cached(
        self, db: Session, provider: RevisionProvider, transport: InMemoryTransport
    ) -> None:
        transport.publish("mem://acme", HELLO)
        create_library(db, "acme")
        provider.resolve("acme")
        provider.resolve("acme")
        assert transport.resolve_calls == 1
        provider.invalidate("acme")
        provider.resolve("acme")
        assert transport.resolve_calls == 2


class TestSingleFlight:
    def test_concurrent_resolutions_share_one_fetch(
        self, db: Session, provider: RevisionProvider, transport: InMemoryTransport
    ) -> None:
        transport.publish("mem://acme", HELLO)
        create_library(db, "acme")
        gate = threading.Event()
        transport.resolve_gate = gate
        threading.Timer(0.2, gate.set).start()
        results, errors = _run_threads(8, lambda: provider.resolve("acme"))
        assert errors == []
        assert len(results) == 8
        assert len({id(s) for s in results}) == 1
        assert transport.resolve_calls == 1
        assert transport.fetch_calls == 1

    def test_failure_reaches_all_waiters_and_is_not_cached(
        self, db: Session, provider: RevisionProvider, transport: InMemoryTransport
    ) -> None:
        transport.publish("mem://acme", HELLO)
        create_library(db, "acme")
        gate = threading.Event()
        transport.resolve_gate = gate
        transport.fail_next = 1
        threading.Timer(0.2, gate.set).start()
        results, errors = _run_threads(4, lambda: provider.resolve("acme"))
        assert results == []
        assert len(errors) == 4
        assert all(isinstance(e, VersionResolutionError) and e.retryable for e in errors)
        transport.resolve_gate = None
        assert provider.resolve("acme").revision

    def test_distinct_libraries_do_not_wait(
        self, db: Session, provider: RevisionProvider, transport: InMemoryTransport
    ) -> None:
        transport.publish("mem://slow", HELLO)
        transport.publish("mem://fast", HELLO)
        create_library(db, "slow", location="mem://slow")
        create_library(db, "fast", location="mem://fast")
        gate = threading.Event()
        transport.fetch_gates["mem://slow"] = gate
        slow = threading.Thread(target=lambda: provider.resolve("slow"))
        slow.start()
        try:
            assert provider.resolve("fast").revision
            assert slow.is_alive()
        finally:
            gate.set()
            slow.join(5)

    def test_cancelled_waiter(
        self, db: Session, provider: RevisionProvider, transport: InMemoryTransport
    ) -> None:
        transport.publish("mem://acme", HELLO)
        create_library(db, "acme")
        gate = threading.Event()
        transport.resolve_gate = gate
        leader = threading.Thread(target=lambda: provider.resolve("acme"))
        leader.start()
        try:
            assert transport.entered.wait(5)
            cancel = threading.Event()
            cancel.set()
            with pytest.raises(ContextCancelledError):
                provider.resolve("acme", cancel=cancel)
        finally:
            gate.set()
            leader.join(5)
        assert transport.resolve_calls == 1


class TestRetry:
    def test_transport_outage_retried(
        self, db: Session, provider: RevisionProvider, transport: InMemoryTransport
    ) -> None:
        transport.publish("mem://acme", HELLO)
        create_library(db, "acme")
        transport.fail_next = 2
        snap = resolve_with_retry(provider, "acme", None, attempts=3, backoff=0)
        assert snap.revision
        assert transport.resolve_calls == 3

    def test_gives_up_after_attempts(
        self, db: Session, provider: RevisionProvider, transport: InMemoryTransport
    ) -> None:
        transport.publish("mem://acme", HELLO)
        create_library(db, "acme")
        transport.fail_next = 5
        with pytest.raises(VersionResolutionError):
            resolve_with_retry(provider, "acme", None, attempts=2, backoff=0)
        assert transport.resolve_calls == 2

    def test_unknown_revision_not_retried(
        self, db: Session, provider: RevisionProvider, transport: InMemoryTransport
    ) -> None:
        transport.publish("mem://acme", HELLO)
        create_library(db, "acme")
        with pytest.raises(VersionResolutionError):
            resolve_with_retry(provider, "acme", "nope", attempts=3, backoff=0)
        assert transport.resolve_calls == 1

    def test_cancel_during_backoff(
        self, db: Session, provider: RevisionProvider, transport: InMemoryTransport
    ) -> None:
        transport.publish("mem://acme", HELLO)
        create_library(db, "acme")
        transport.fail_next = 5
        cancel = threading.Event()
        cancel.set()
        with pytest.raises(ContextCancelledError):
            resolve_with_retry(provider, "acme", None, cancel=cancel, attempts=3, backoff=10)


class TestSnapshotCache:
    def test_disk_cache_shared_between_providers(
        self,
        db: Session,
        registry: LibraryRegistry,
        transport: InMemoryTransport,
        tmp_path: Path,
    ) -> None:
        rev = transport.publish("mem://acme", HELLO)
        create_library(db, "acme")
        first = RevisionProvider(registry, {"mem": transport}, cache_dir=tmp_path)
        first.materialize("acme", rev)
        second = RevisionProvider(registry, {"mem": transport}, cache_dir=tmp_path)
        assert second.materialize("acme", rev).files == first.materialize("acme", rev).files
        assert transport.fetch_calls == 1

    def test_corrupt_disk_entry_refetched(
        self,
        db: Session,
        registry: LibraryRegistry,
        transport: InMemoryTransport,
        tmp_path: Path,
    ) -> None:
        rev = transport.publish("mem://acme", HELLO)
        create_library(db, "acme")
        RevisionProvider(registry, {"mem": transport}, cache_dir=tmp_path).materialize("acme", rev)
        for p in tmp_path.glob("*/*.tar"):
            p.write_bytes(b"not a tar archive at all" * 40)
        fresh = RevisionProvider(registry, {"mem": transport}, cache_dir=tmp_path)
        with pytest.raises(VersionResolutionError):
            fresh.materialize("acme", rev)
        assert fresh.materialize("acme", rev).revision == rev
        assert transport.fetch_calls == 2

    def test_memory_lru_bound(
        self, db: Session, registry: LibraryRegistry, transport: InMemoryTransport
    ) -> None:
        create_library(db, "acme")
        revs = [
            transport.publish("mem://acme", tree(vars={"v": f"n = {i}\n"}), f"b{i}")
            for i in range(3)
        ]
        p = RevisionProvider(registry, {"mem": transport}, disk_cache=False, max_entries=2)
        for r in revs:
            p.materialize("acme", r)
        assert p.stats()["snapshots"] == 2
        p.materialize("acme", revs[0])
        assert transport.fetch_calls == 4

    def test_evict(
        self,
        db: Session,
        registry: LibraryRegistry,
        transport: InMemoryTransport,
        tmp_path: Path,
    ) -> None:
        rev = transport.publish("mem://acme", HELLO)
        create_library(db, "acme")
        p = RevisionProvider(registry, {"mem": transport}, cache_dir=tmp_path)
        p.materialize("acme", rev)
        assert p.evict("acme") == 2
        p.materialize("acme", rev)
        assert transport.fetch_calls == 2
