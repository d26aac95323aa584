"""Unit tests for the two-tier revision cache."""

from unittest.mock import MagicMock, patch

from pipelibs.core.library import revision_cache


def test_set_then_get() -> None:
    revision_cache.set_revision("acme", "main", "abc")
    assert revision_cache.get_revision("acme", "main") == "abc"
    assert revision_cache.get_revision("acme", "other") is None


def test_default_token_distinct_from_named() -> None:
    revision_cache.set_revision("acme", None, "r-default")
    assert revision_cache.get_revision("acme", None) == "r-default"
    assert revision_cache.get_revision("acme", "main") is None


def test_entries_expire() -> None:
    with patch.object(revision_cache.time, "monotonic", return_value=1000.0):
        revision_cache.set_revision("acme", "main", "abc")
    with patch.object(revision_cache.time, "monotonic", return_value=1000.0 + 10_000):
        assert revision_cache.get_revision("acme", "main") is None


def test_invalidate_library() -> None:
    revision_cache.set_revision("acme", "main", "abc")
    revision_cache.set_revision("other", "main", "def")
    revision_cache.invalidate_library("acme")
    assert revision_cache.get_revision("acme", "main") is None
    assert revision_cache.get_revision("other", "main") == "def"


def test_redis_tier_used_on_local_miss() -> None:
    r = MagicMock()
    r.get.return_value = "from-redis"
    with patch.object(revision_cache, "get_redis", return_value=r):
        assert revision_cache.get_revision("acme", "v1") == "from-redis"
        r.get.assert_called_once_with("pipelibs:revision:acme:v1")
    # Promoted into the local tier.
    assert revision_cache.get_revision("acme", "v1") == "from-redis"


def test_redis_writes_and_invalidation() -> None:
    r = MagicMock()
    r.scan_iter.return_value = ["pipelibs:revision:acme:v1"]
    with patch.object(revision_cache, "get_redis", return_value=r):
        revision_cache.set_revision("acme", "v1", "abc")
        revision_cache.invalidate_library("acme")
    r.setex.assert_called_once()
    assert r.setex.call_args.args[0] == "pipelibs:revision:acme:v1"
    r.delete.assert_called_once_with("pipelibs:revision:acme:v1")


def test_redis_errors_are_ignored() -> None:
    r = MagicMock()
    r.get.side_effect = ConnectionError("down")
    with patch.object(revision_cache, "get_redis", return_value=r):
        assert revision_cache.get_revision("acme", "v9") is None
