import os

from sqlalchemy.pool import StaticPool
from sqlmodel import SQLModel, create_engine

from pipelibs.core.config import settings


def _make_engine(url: str):
    if url.startswith("sqlite"):
        path = url.split("///", 1)[-1]
        if path and path != ":memory:":
            os.makedirs(os.path.dirname(path) or ".", exist_ok=True)
            return create_engine(url, connect_args={"check_same_thread": False})
        return create_engine(
            url,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )
    return create_engine(url, pool_pre_ping=True)


engine = _make_engine(settings.DATABASE_URL)


def init_db(bind=None) -> None:
    """Create tables. Schema is small and additive; no migration tool needed."""
    # Import so the tables are registered on SQLModel.metadata.
    from pipelibs import models  # noqa: F401

    SQLModel.metadata.create_all(bind or engine)
