import os

# In-memory store for every test; set before pipelibs reads its settings.
os.environ["DATABASE_URL"] = "sqlite:///:memory:"

from collections.abc import Generator  # noqa: E402
from unittest.mock import patch  # noqa: E402

import pytest  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402
from sqlalchemy.engine import Engine  # noqa: E402
from sqlalchemy.pool import StaticPool  # noqa: E402
from sqlmodel import Session, SQLModel, create_engine  # noqa: E402

from pipelibs.api import deps  # noqa: E402
from pipelibs.core.db import init_db  # noqa: E402
from pipelibs.core.execution import ExecutionStore, LifecycleManager  # noqa: E402
from pipelibs.core.library import revision_cache  # noqa: E402
from pipelibs.core.library.declarations import LibraryRegistry  # noqa: E402
from pipelibs.core.library.provider import RevisionProvider  # noqa: E402
from pipelibs.main import app  # noqa: E402
from tests.utils.transport import InMemoryTransport  # noqa: E402


@pytest.fixture(autouse=True)
def _no_redis() -> Generator[None, None, None]:
    """Revision cache runs on its in-process tier only."""
    revision_cache.clear()
    with patch.object(revision_cache, "get_redis", return_value=None):
        yield
    revision_cache.clear()


@pytest.fixture
def engine() -> Generator[Engine, None, None]:
    eng = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    init_db(eng)
    yield eng
    SQLModel.metadata.drop_all(eng)


@pytest.fixture
def db(engine: Engine) -> Generator[Session, None, None]:
    with Session(engine) as session:
        yield session


@pytest.fixture
def transport() -> InMemoryTransport:
    return InMemoryTransport()


@pytest.fixture
def registry(engine: Engine) -> LibraryRegistry:
    return LibraryRegistry(engine)


@pytest.fixture
def provider(registry: LibraryRegistry, transport: InMemoryTransport) -> RevisionProvider:
    return RevisionProvider(registry, {"mem": transport}, disk_cache=False)


@pytest.fixture
def store(engine: Engine) -> ExecutionStore:
    return ExecutionStore(engine)


@pytest.fixture
def manager(provider: RevisionProvider, store: ExecutionStore) -> LifecycleManager:
    return LifecycleManager(provider, store=store)


@pytest.fixture
def client(
    engine: Engine, provider: RevisionProvider, store: ExecutionStore
) -> Generator[TestClient, None, None]:
    def _get_db() -> Generator[Session, None, None]:
        with Session(engine) as session:
            yield session

    app.dependency_overrides[deps.get_db] = _get_db
    app.dependency_overrides[deps.get_provider] = lambda: provider
    app.dependency_overrides[deps.get_execution_store] = lambda: store
    yield TestClient(app)
    app.dependency_overrides.clear()
