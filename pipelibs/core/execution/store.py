"""
Durable execution records: resolved revisions and the latest checkpoint of
each execution context, in the ``execution_record`` table.
"""

import logging
from typing import Any

from sqlalchemy.engine import Engine
from sqlmodel import Session

from pipelibs.core.errors import LibraryError
from pipelibs.models import ExecutionRecord, ExecutionStatusEnum, _utc_now

_log = logging.getLogger(__name__)


class ExecutionStore:
    def __init__(self, engine: Engine | None = None) -> None:
        if engine is None:
            from pipelibs.core.db import engine as default_engine

            engine = default_engine
        self._engine = engine

    def create(
        self,
        job_id: str,
        *,
        job_name: str | None,
        libraries: list[dict[str, Any]],
    ) -> ExecutionRecord:
        """Insert (or reset) the record of a freshly started context."""
        with Session(self._engine) as session:
            record = session.get(ExecutionRecord, job_id)
            if record is None:
                record = ExecutionRecord(job_id=job_id)
            record.job_name = job_name
            record.libraries = libraries
            record.status = ExecutionStatusEnum.RUNNING
            record.checkpoint = None
            record.updated_at = _utc_now()
            session.add(record)
            session.commit()
            session.refresh(record)
            return record

    def get(self, job_id: str) -> ExecutionRecord | None:
        with Session(self._engine) as session:
            return session.get(ExecutionRecord, job_id)

    def _require(self, session: Session, job_id: str) -> ExecutionRecord:
        record = session.get(ExecutionRecord, job_id)
        if record is None:
            raise LibraryError(f"No recorded execution '{job_id}'")
        return record

    def save_checkpoint(self, job_id: str, blob: bytes) -> None:
        with Session(self._engine) as session:
            record = self._require(session, job_id)
            record.checkpoint = blob.decode("utf-8")
            record.status = ExecutionStatusEnum.SUSPENDED
            record.updated_at = _utc_now()
            session.add(record)
            session.commit()

    def load_checkpoint(self, job_id: str) -> bytes:
        with Session(self._engine) as session:
            record = self._require(session, job_id)
            if not record.checkpoint:
                raise LibraryError(f"Execution '{job_id}' has no checkpoint")
            return record.checkpoint.encode("utf-8")

    def recorded_revisions(self, job_id: str) -> dict[str, str]:
        """``{library: revision}`` of an earlier execution, for replays."""
        with Session(self._engine) as session:
            record = self._require(session, job_id)
            return {lib["name"]: lib["revision"] for lib in record.libraries or []}

    def set_status(self, job_id: str, status: ExecutionStatusEnum) -> None:
        with Session(self._engine) as session:
            record = session.get(ExecutionRecord, job_id)
            if record is None:
                _log.debug("No execution record for %s; status %s not stored", job_id, status.value)
                return
            record.status = status
            record.updated_at = _utc_now()
            session.add(record)
            session.commit()
