"""
Pydantic schemas for the read-only libraries/executions API.
"""

from datetime import datetime

from pydantic import Field
from sqlmodel import SQLModel

from pipelibs.models import DocFormatEnum, ExecutionStatusEnum

# ---------------------------------------------------------------------------
# Libraries
# ---------------------------------------------------------------------------


class LibraryPublic(SQLModel):
    """A library declaration as shown to users (no transport internals beyond location)."""

    name: str
    scm: str
    location: str
    default_version: str | None = None
    allow_version_override: bool
    trusted: bool
    implicit: bool
    job_scope: str | None = None
    doc_format: DocFormatEnum
    description: str | None = None
    updated_at: datetime


class LibraryListOut(SQLModel):
    data: list[LibraryPublic]
    total: int


class GlobalVariableDoc(SQLModel):
    name: str
    html: str
    has_doc: bool
    error: str | None = None


class GlobalVariableReference(SQLModel):
    """GET /libraries/{name}/globals: docs of one resolved revision."""

    library: str
    version: str | None = None
    revision: str
    variables: list[GlobalVariableDoc] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Executions
# ---------------------------------------------------------------------------


class LoadedLibraryPublic(SQLModel):
    name: str
    version: str | None = None
    revision: str
    trusted: bool


class ExecutionPublic(SQLModel):
    job_id: str
    job_name: str | None = None
    status: ExecutionStatusEnum
    libraries: list[LoadedLibraryPublic] = Field(default_factory=list)
    has_checkpoint: bool
    created_at: datetime
    updated_at: datetime
