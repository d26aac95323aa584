import threading
from collections.abc import Generator
from typing import Annotated

from fastapi import Depends
from sqlmodel import Session

from pipelibs.core.db import engine
from pipelibs.core.execution.store import ExecutionStore
from pipelibs.core.library.declarations import LibraryRegistry
from pipelibs.core.library.provider import RevisionProvider

_provider: RevisionProvider | None = None
_provider_lock = threading.Lock()


def get_db() -> Generator[Session, None, None]:
    with Session(engine) as session:
        yield session


def get_provider() -> RevisionProvider:
    """Process-wide provider; its snapshot caches outlive single requests."""
    global _provider
    if _provider is None:
        with _provider_lock:
            if _provider is None:
                _provider = RevisionProvider(LibraryRegistry(engine))
    return _provider


def get_execution_store() -> ExecutionStore:
    return ExecutionStore(engine)


SessionDep = Annotated[Session, Depends(get_db)]
ProviderDep = Annotated[RevisionProvider, Depends(get_provider)]
ExecutionStoreDep = Annotated[ExecutionStore, Depends(get_execution_store)]
