"""Tests for /api/v1/utils routes and the readiness checks behind them."""

from pathlib import Path
from unittest.mock import patch

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.engine import Engine
from sqlmodel import Session, SQLModel

from pipelibs.core import health
from pipelibs.core.config import settings


def test_liveness(client: TestClient) -> None:
    r = client.get(f"{settings.API_V1_STR}/utils/liveness/")
    assert r.status_code == 200
    assert r.json() is True


def test_health_check_ready(
    client: TestClient, tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    monkeypatch.setattr(settings, "LIBRARY_CACHE_DIR", str(tmp_path / "cache"))
    r = client.get(f"{settings.API_V1_STR}/utils/health-check/")
    assert r.status_code == 200
    assert r.json() is True


def test_health_check_reports_failing_parts(client: TestClient) -> None:
    with patch.object(health, "library_cache_writable", return_value=False):
        r = client.get(f"{settings.API_V1_STR}/utils/health-check/")
    assert r.status_code == 503
    data = r.json()
    assert data["success"] is False
    assert data["data"] == ["library_cache"]


def test_declarations_unreadable_without_tables(engine: Engine) -> None:
    SQLModel.metadata.drop_all(engine)
    with Session(engine) as session:
        assert health.declarations_readable(session) is False


def test_revision_cache_checked_only_when_enabled(monkeypatch: pytest.MonkeyPatch) -> None:
    with patch.object(health, "redis_ping", return_value=False):
        monkeypatch.setattr(settings, "CACHE_ENABLED", False)
        assert health.revision_cache_reachable() is True
        monkeypatch.setattr(settings, "CACHE_ENABLED", True)
        assert health.revision_cache_reachable() is False


def test_missing_cache_dir_counts_when_parent_is_writable(tmp_path: Path) -> None:
    assert health.library_cache_writable(tmp_path / "not" / "yet" / "there") is True
    blocker = tmp_path / "file"
    blocker.write_text("x")
    assert health.library_cache_writable(blocker) is False


def test_not_ready_lists_failures_sorted() -> None:
    report = {"revision_cache": False, "declarations": True, "library_cache": False}
    assert health.not_ready(report) == ["library_cache", "revision_cache"]
