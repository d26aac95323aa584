"""
Readiness of the library service.

A node is ready when it can answer library questions: declarations can be
read, the shared revision cache answers (only when it is enabled), and the
on-disk library cache can take new snapshots.
"""

import logging
import os
from pathlib import Path

from sqlmodel import Session, select

from pipelibs.core.config import settings
from pipelibs.core.redis_client import ping as redis_ping
from pipelibs.models import LibraryDeclaration

logger = logging.getLogger(__name__)


def declarations_readable(session: Session) -> bool:
    try:
        session.exec(select(LibraryDeclaration.name).limit(1)).first()
    except Exception:
        logger.warning("Library declarations are not readable", exc_info=True)
        return False
    return True


def revision_cache_reachable() -> bool:
    """The Redis tier of the revision cache; an in-process-only cache is always reachable."""
    if not settings.CACHE_ENABLED:
        return True
    return redis_ping()


def library_cache_writable(path: str | Path | None = None) -> bool:
    """
    True when snapshots can be written under the library cache directory.
    A directory that does not exist yet counts when its nearest existing
    parent is writable, since the provider creates it on first use.
    """
    target = Path(path or settings.LIBRARY_CACHE_DIR).resolve()
    while not target.exists() and target != target.parent:
        target = target.parent
    return target.is_dir() and os.access(target, os.W_OK | os.X_OK)


def readiness(session: Session) -> dict[str, bool]:
    return {
        "declarations": declarations_readable(session),
        "revision_cache": revision_cache_reachable(),
        "library_cache": library_cache_writable(),
    }


def not_ready(report: dict[str, bool]) -> list[str]:
    return sorted(name for name, ok in report.items() if not ok)
