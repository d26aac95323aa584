"""
Shared Redis client for the default-revision cache.

All Redis connections go through this module so there is exactly one client
per process. Redis is optional: every caller treats ``None`` as "no shared
tier" and keeps working from its in-process cache.
"""

import logging
import threading

import redis

from pipelibs.core.config import settings

_LOG = logging.getLogger(__name__)

_lock = threading.Lock()
_client: "redis.Redis | None" = None
_tried = False


def get_redis() -> "redis.Redis | None":
    """Return the shared Redis client (``decode_responses=True``).

    Returns ``None`` when ``CACHE_ENABLED`` is ``False`` or the initial ping
    fails.
    """
    global _client, _tried
    if _tried:
        return _client
    with _lock:
        if _tried:
            return _client
        _tried = True
        _client = _create_client()
        return _client


def _create_client() -> "redis.Redis | None":
    if not settings.CACHE_ENABLED:
        return None
    try:
        r = redis.Redis.from_url(settings.redis_url, decode_responses=True)
        r.ping()
        return r
    except Exception as e:
        _LOG.debug("Redis unavailable: %s", e)
        return None


def reset_redis() -> None:
    """Forget the cached client so the next call reconnects (tests, reconfig)."""
    global _client, _tried
    with _lock:
        _client = None
        _tried = False


def ping() -> bool:
    """Quick health check: True if the shared client can PING."""
    client = get_redis()
    if client is None:
        return False
    try:
        return bool(client.ping())
    except Exception:
        return False
