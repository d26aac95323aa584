"""
Library declarations: lookup, registration and job-side requests.

Declarations live in the ``library_declaration`` table. A declaration is
immutable for the duration of a job run (the provider reads it once per
resolution); re-registration updates the row and drops cached version
lookups so the next resolution sees the change.
"""

import logging
from typing import Any, NamedTuple

from sqlalchemy.engine import Engine
from sqlmodel import Session, select

from pipelibs.core.library import revision_cache
from pipelibs.models import LibraryDeclaration, _utc_now

_log = logging.getLogger(__name__)


class LibraryRequest(NamedTuple):
    """A job's request for a library, optionally pinned to a version token."""

    name: str
    version: str | None = None

    @classmethod
    def parse(cls, spec: str) -> "LibraryRequest":
        """Parse ``name`` or ``name@version``."""
        text = (spec or "").strip()
        name, sep, version = text.partition("@")
        name = name.strip()
        version = version.strip()
        if not name:
            raise ValueError(f"Library request '{spec}' has no library name")
        if sep and not version:
            raise ValueError(f"Library request '{spec}' has an empty version")
        if any(c.isspace() for c in version):
            raise ValueError(f"Library request '{spec}' has whitespace in its version")
        return cls(name=name, version=version or None)

    def __str__(self) -> str:
        return f"{self.name}@{self.version}" if self.version else self.name


class LibraryRegistry:
    """Read access to declarations, one short session per call."""

    def __init__(self, engine: Engine | None = None) -> None:
        if engine is None:
            from pipelibs.core.db import engine as default_engine

            engine = default_engine
        self._engine = engine

    def get(self, name: str) -> LibraryDeclaration | None:
        with Session(self._engine) as session:
            return session.get(LibraryDeclaration, name)

    def declarations(self) -> list[LibraryDeclaration]:
        with Session(self._engine) as session:
            stmt = select(LibraryDeclaration).order_by(LibraryDeclaration.name)
            return list(session.exec(stmt).all())

    def implicit_for(self, job_name: str | None) -> list[LibraryDeclaration]:
        """Implicit libraries visible to *job_name*, sorted by name."""
        with Session(self._engine) as session:
            stmt = (
                select(LibraryDeclaration)
                .where(LibraryDeclaration.implicit.is_(True))
                .order_by(LibraryDeclaration.name)
            )
            rows = session.exec(stmt).all()
        return [d for d in rows if d.visible_to(job_name)]


_DECLARATION_FIELDS = (
    "scm",
    "location",
    "default_version",
    "allow_version_override",
    "trusted",
    "implicit",
    "job_scope",
    "doc_format",
    "description",
)


def register_library(session: Session, name: str, **fields: Any) -> LibraryDeclaration:
    """Create or update the declaration for *name* and invalidate its cached versions."""
    unknown = set(fields) - set(_DECLARATION_FIELDS)
    if unknown:
        raise ValueError(f"Unknown declaration fields: {', '.join(sorted(unknown))}")
    decl = session.get(LibraryDeclaration, name)
    if decl is None:
        decl = LibraryDeclaration(name=name, **fields)
        _log.info("Registering library %s", name)
    else:
        for key, value in fields.items():
            setattr(decl, key, value)
        decl.updated_at = _utc_now()
        _log.info("Re-registering library %s", name)
    session.add(decl)
    session.commit()
    session.refresh(decl)
    revision_cache.invalidate_library(name)
    return decl


def unregister_library(session: Session, name: str) -> bool:
    decl = session.get(LibraryDeclaration, name)
    if decl is None:
        return False
    session.delete(decl)
    session.commit()
    revision_cache.invalidate_library(name)
    return True
