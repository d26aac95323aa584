from typing import Any

from fastapi import APIRouter, HTTPException

from pipelibs.api.deps import ExecutionStoreDep
from pipelibs.schemas import ExecutionPublic, LoadedLibraryPublic

router = APIRouter(prefix="/executions", tags=["executions"])


@router.get("/{job_id}", response_model=ExecutionPublic)
def get_execution(store: ExecutionStoreDep, job_id: str) -> Any:
    """Status and resolved library revisions of one execution."""
    record = store.get(job_id)
    if record is None:
        raise HTTPException(status_code=404, detail="Execution not found")
    return ExecutionPublic(
        job_id=record.job_id,
        job_name=record.job_name,
        status=record.status,
        libraries=[LoadedLibraryPublic(**lib) for lib in record.libraries or []],
        has_checkpoint=bool(record.checkpoint),
        created_at=record.created_at,
        updated_at=record.updated_at,
    )
