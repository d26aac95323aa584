"""
Library declarations and global variable reference (read-only).

Endpoints: list, get, globals (docs of the default or a given version).
"""

from typing import Any

from fastapi import APIRouter, HTTPException
from sqlmodel import select

from pipelibs.api.deps import ProviderDep, SessionDep
from pipelibs.core.errors import NotFoundError, ResolutionFailure, VersionResolutionError
from pipelibs.core.library.classifier import classify
from pipelibs.core.library.docs import variable_reference
from pipelibs.models import LibraryDeclaration
from pipelibs.schemas import (
    GlobalVariableDoc,
    GlobalVariableReference,
    LibraryListOut,
    LibraryPublic,
)

router = APIRouter(prefix="/libraries", tags=["libraries"])


def _to_public(decl: LibraryDeclaration) -> LibraryPublic:
    return LibraryPublic(
        name=decl.name,
        scm=decl.scm,
        location=decl.location,
        default_version=decl.default_version,
        allow_version_override=decl.allow_version_override,
        trusted=decl.trusted,
        implicit=decl.implicit,
        job_scope=decl.job_scope,
        doc_format=decl.doc_format,
        description=decl.description,
        updated_at=decl.updated_at,
    )


@router.get("", response_model=LibraryListOut)
def list_libraries(session: SessionDep, job_name: str | None = None) -> Any:
    """Declared libraries; with job_name, only those that job can load."""
    rows = session.exec(select(LibraryDeclaration).order_by(LibraryDeclaration.name)).all()
    visible = [d for d in rows if job_name is None or d.visible_to(job_name)]
    return LibraryListOut(
        data=[_to_public(d) for d in visible],
        total=len(visible),
    )


@router.get("/{name}", response_model=LibraryPublic)
def get_library(session: SessionDep, name: str) -> Any:
    decl = session.get(LibraryDeclaration, name)
    if not decl:
        raise HTTPException(status_code=404, detail="Library not found")
    return _to_public(decl)


@router.get("/{name}/globals", response_model=GlobalVariableReference)
def get_library_globals(
    provider: ProviderDep,
    name: str,
    version: str | None = None,
    job_name: str | None = None,
) -> Any:
    """Global variable docs of one revision (default version unless given)."""
    try:
        decl = provider.declaration(name, job_name=job_name)
        snapshot = provider.resolve(name, version, job_name=job_name)
    except NotFoundError:
        raise HTTPException(status_code=404, detail="Library not found")
    except VersionResolutionError as e:
        status = {
            ResolutionFailure.UNKNOWN_REVISION: 404,
            ResolutionFailure.OVERRIDE_FORBIDDEN: 400,
        }.get(e.kind, 503)
        raise HTTPException(status_code=status, detail=str(e))
    docs = variable_reference(classify(snapshot), decl.doc_format, trusted=decl.trusted)
    return GlobalVariableReference(
        library=name,
        version=provider.effective_version(decl, version),
        revision=snapshot.revision,
        variables=[
            GlobalVariableDoc(name=d.name, html=d.html, has_doc=d.has_doc, error=d.error)
            for d in docs
        ],
    )
