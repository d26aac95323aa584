from fastapi import APIRouter

from pipelibs.api.routes import executions, libraries, utils

api_router = APIRouter()
api_router.include_router(utils.router)
api_router.include_router(libraries.router)
api_router.include_router(executions.router)
