"""
Persistent models.

Entities: LibraryDeclaration (administrative registration of a shared
library) and ExecutionRecord (one durable row per execution context: the
resolved library revisions and the latest checkpoint blob).
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any

from sqlalchemy import JSON, Column, Text
from sqlmodel import Field, SQLModel


def _utc_now() -> datetime:
    """Timezone-aware UTC now (replaces deprecated datetime.utcnow())."""
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------


class DocFormatEnum(str, Enum):
    """Markup format of ``vars/<name>.txt`` documentation."""

    TEXT = "text"
    HTML = "html"


class ExecutionStatusEnum(str, Enum):
    """Lifecycle of an execution context."""

    RUNNING = "running"
    SUSPENDED = "suspended"
    COMPLETED = "completed"
    FAILED = "failed"
    DISCARDED = "discarded"


# ---------------------------------------------------------------------------
# LibraryDeclaration - registered shared library
# ---------------------------------------------------------------------------


class LibraryDeclaration(SQLModel, table=True):
    __tablename__ = "library_declaration"

    name: str = Field(primary_key=True, max_length=255)
    scm: str = Field(default="git", max_length=32)
    location: str = Field(max_length=1024)
    default_version: str | None = Field(
        default=None,
        max_length=255,
        description="Version token used when a job does not ask for one. "
        "Empty means the transport's default (e.g. remote HEAD).",
    )
    allow_version_override: bool = Field(default=True)
    trusted: bool = Field(
        default=True,
        description="Global libraries run fully trusted; job-scoped ones are sandboxed.",
    )
    implicit: bool = Field(
        default=False,
        description="Load into every job that can see the library, without a request.",
    )
    job_scope: str | None = Field(
        default=None,
        max_length=512,
        description="Folder prefix of jobs that may use the library. None = all jobs.",
    )
    doc_format: DocFormatEnum = Field(default=DocFormatEnum.TEXT)
    description: str | None = Field(default=None, max_length=512)
    created_at: datetime = Field(default_factory=_utc_now)
    updated_at: datetime = Field(default_factory=_utc_now)

    def visible_to(self, job_name: str | None) -> bool:
        """Whether a job may load this library."""
        if not self.job_scope:
            return True
        if not job_name:
            return False
        scope = self.job_scope.strip("/")
        return job_name == scope or job_name.startswith(scope + "/")


# ---------------------------------------------------------------------------
# ExecutionRecord - durable state of one execution context
# ---------------------------------------------------------------------------


class ExecutionRecord(SQLModel, table=True):
    __tablename__ = "execution_record"

    job_id: str = Field(primary_key=True, max_length=255)
    job_name: str | None = Field(default=None, max_length=512, index=True)
    status: ExecutionStatusEnum = Field(default=ExecutionStatusEnum.RUNNING)
    # [{"name", "version", "revision", "trusted"}]
    libraries: list[dict[str, Any]] = Field(
        default_factory=list, sa_column=Column(JSON, nullable=False)
    )
    checkpoint: str | None = Field(default=None, sa_column=Column(Text, nullable=True))
    created_at: datetime = Field(default_factory=_utc_now)
    updated_at: datetime = Field(default_factory=_utc_now)
