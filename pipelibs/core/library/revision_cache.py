"""
Version-token cache: two-tier (in-process + Redis) to avoid asking the VCS
for the same branch/tag head on every job start.

Caches ``(library, version token) -> revision id``. Entries expire after
DEFAULT_REVISION_CACHE_TTL_SECONDS and are dropped when a library is
re-registered. Redis errors never fail a resolution; they only cost a
transport round trip.
"""

import logging
import threading
import time

from pipelibs.core.config import settings
from pipelibs.core.redis_client import get_redis

_LOG = logging.getLogger(__name__)
_KEY_PREFIX = "pipelibs:revision:"
_DEFAULT_TOKEN = "@default"

# In-process L1 cache: {(library, token): (revision, expires_at_monotonic)}
_LOCAL_CACHE: dict[tuple[str, str], tuple[str, float]] = {}
_LOCAL_LOCK = threading.Lock()
_LOCAL_MAX_SIZE = 2048


def _token(version: str | None) -> str:
    return version or _DEFAULT_TOKEN


def _cache_key(library: str, version: str | None) -> str:
    return f"{_KEY_PREFIX}{library}:{_token(version)}"


def _ttl() -> int:
    return max(1, settings.DEFAULT_REVISION_CACHE_TTL_SECONDS)


def _local_get(library: str, version: str | None) -> str | None:
    entry = _LOCAL_CACHE.get((library, _token(version)))
    if entry is None:
        return None
    revision, expires_at = entry
    if time.monotonic() > expires_at:
        return None
    return revision


def _local_set(library: str, version: str | None, revision: str) -> None:
    with _LOCAL_LOCK:
        if len(_LOCAL_CACHE) >= _LOCAL_MAX_SIZE:
            now = time.monotonic()
            expired = [k for k, (_, exp) in _LOCAL_CACHE.items() if now > exp]
            for k in expired:
                _LOCAL_CACHE.pop(k, None)
            if len(_LOCAL_CACHE) >= _LOCAL_MAX_SIZE:
                _LOCAL_CACHE.clear()
        _LOCAL_CACHE[(library, _token(version))] = (revision, time.monotonic() + _ttl())


def get_revision(library: str, version: str | None) -> str | None:
    """L1 in-process, then L2 Redis. Returns None on miss."""
    local = _local_get(library, version)
    if local is not None:
        return local

    r = get_redis()
    if r is None:
        return None
    try:
        raw = r.get(_cache_key(library, version))
        if raw is None:
            return None
        _local_set(library, version, raw)
        return raw
    except Exception as e:
        _LOG.debug("Revision cache get failed for %s: %s", library, e)
        return None


def set_revision(library: str, version: str | None, revision: str) -> None:
    """Store a resolved revision in L1 + L2 with TTL."""
    _local_set(library, version, revision)

    r = get_redis()
    if r is None:
        return
    try:
        r.setex(_cache_key(library, version), _ttl(), revision)
    except Exception as e:
        _LOG.debug("Revision cache set failed for %s: %s", library, e)


def invalidate_library(library: str) -> None:
    """Drop every cached version token of *library* (library updated or re-registered)."""
    with _LOCAL_LOCK:
        for key in [k for k in _LOCAL_CACHE if k[0] == library]:
            _LOCAL_CACHE.pop(key, None)

    r = get_redis()
    if r is None:
        return
    try:
        keys = list(r.scan_iter(match=f"{_KEY_PREFIX}{library}:*"))
        if keys:
            r.delete(*keys)
    except Exception as e:
        _LOG.debug("Revision cache invalidate failed for %s: %s", library, e)


def clear() -> None:
    """Drop the in-process tier (tests, settings reload)."""
    with _LOCAL_LOCK:
        _LOCAL_CACHE.clear()
