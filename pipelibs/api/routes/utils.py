import logging

from fastapi import APIRouter
from fastapi.responses import JSONResponse

from pipelibs.api.deps import SessionDep
from pipelibs.core import health

router = APIRouter(prefix="/utils", tags=["utils"])

_log = logging.getLogger(__name__)


@router.get("/liveness/")
async def liveness() -> bool:
    return True


@router.get("/health-check/", response_model=None)
def health_check(session: SessionDep) -> bool | JSONResponse:
    """503 with the failing parts (declarations, revision_cache, library_cache) when not ready."""
    failures = health.not_ready(health.readiness(session))
    if failures:
        _log.warning("Library service not ready: %s", ", ".join(failures))
        return JSONResponse(
            status_code=503,
            content={
                "success": False,
                "message": "Library service not ready",
                "data": failures,
            },
        )
    return True
