"""
Env module for pipeline scripts: get, get_int, get_bool.

Job variables (JOB_NAME, JOB_ID, parameters passed at start) are always
readable. Host environment variables are readable by trusted units, and by
sandboxed units only for keys in SCRIPT_ENV_WHITELIST.
"""

import os
from collections.abc import Mapping
from types import SimpleNamespace
from typing import Any


def make_env_module(
    *,
    job_env: Mapping[str, Any] | None = None,
    env_whitelist: frozenset[str] | set[str] | None = None,
) -> Any:
    """
    Build the `env` object: get, get_int, get_bool.
    env_whitelist None means the host environment is fully readable.
    """
    wl = frozenset(env_whitelist) if env_whitelist is not None else None
    job = dict(job_env or {})

    def _get_raw(key: str) -> Any:
        if key in job:
            return job[key]
        if wl is not None and key not in wl:
            return None
        return os.environ.get(key)

    def get(key: str, default: Any = None) -> Any:
        v = _get_raw(key)
        return default if v is None else v

    def get_int(key: str, default: int = 0) -> int:
        v = _get_raw(key)
        if v is None:
            return default
        try:
            return int(v)
        except (TypeError, ValueError):
            return default

    def get_bool(key: str, default: bool = False) -> bool:
        v = _get_raw(key)
        if v is None:
            return default
        if isinstance(v, bool):
            return v
        s = str(v).lower().strip()
        return s in ("true", "1", "yes", "on")

    return SimpleNamespace(get=get, get_int=get_int, get_bool=get_bool)
