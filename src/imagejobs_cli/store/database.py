from __future__ import annotations

import logging
import threading
import uuid
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Any, Iterable, Iterator, Optional, Union

from sqlalchemy import event
from sqlalchemy.pool import StaticPool
from sqlmodel import Session, SQLModel, col, create_engine, func, select

from .models import TERMINAL_STATUSES, HistoryRecord, Job, JobStatus, utcnow

logger = logging.getLogger(__name__)


def _set_sqlite_pragma(dbapi_connection, connection_record) -> None:
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA journal_mode=WAL")
    cursor.execute("PRAGMA synchronous=NORMAL")
    cursor.close()


class Store:
    """SQLite-backed store for generation history and jobs.

    Each call opens a short-lived session. Writes are serialized through a
    single lock, so a conditional update (read status, then write) is atomic
    with respect to every other write made through the same store.
    """

    def __init__(self, db_path: Optional[Union[str, Path]] = None, *, echo: bool = False):
        if db_path is None:
            self.engine = create_engine(
                "sqlite://",
                echo=echo,
                connect_args={"check_same_thread": False},
                poolclass=StaticPool,
            )
        else:
            path = Path(db_path).expanduser()
            path.parent.mkdir(parents=True, exist_ok=True)
            self.engine = create_engine(
                f"sqlite:///{path}",
                echo=echo,
                connect_args={"check_same_thread": False, "timeout": 5.0},
            )
            event.listen(self.engine, "connect", _set_sqlite_pragma)
        self.db_path = db_path
        self._write_lock = threading.RLock()
        SQLModel.metadata.create_all(self.engine)

    @classmethod
    def in_memory(cls) -> "Store":
        return cls(None)

    def close(self) -> None:
        self.engine.dispose()

    @contextmanager
    def session(self) -> Iterator[Session]:
        with Session(self.engine, expire_on_commit=False) as session:
            yield session

    # history

    def create_history(
        self,
        *,
        tool_name: str,
        prompt: str,
        parameters: dict[str, Any],
        output_paths: list[str],
        sample_count: int = 1,
        history_id: Optional[str] = None,
        size: Optional[str] = None,
        quality: Optional[str] = None,
        output_format: Optional[str] = None,
        params_hash: Optional[str] = None,
        input_tokens: Optional[int] = None,
        output_tokens: Optional[int] = None,
        total_tokens: Optional[int] = None,
        estimated_cost: Optional[float] = None,
    ) -> HistoryRecord:
        record = HistoryRecord(
            id=history_id or str(uuid.uuid4()),
            tool_name=tool_name,
            prompt=prompt,
            parameters=dict(parameters),
            output_paths=list(output_paths),
            sample_count=sample_count,
            size=size,
            quality=quality,
            output_format=output_format,
            params_hash=params_hash,
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            total_tokens=total_tokens,
            estimated_cost=estimated_cost,
        )
        with self._write_lock, self.session() as session:
            session.add(record)
            session.commit()
        logger.debug("History record created: %s", record.id)
        return record

    def get_history(self, history_id: str) -> Optional[HistoryRecord]:
        with self.session() as session:
            return session.get(HistoryRecord, history_id)

    def list_history(
        self,
        limit: int = 20,
        offset: int = 0,
        tool_name: Optional[str] = None,
        query: Optional[str] = None,
    ) -> list[HistoryRecord]:
        stmt = select(HistoryRecord)
        if tool_name:
            stmt = stmt.where(HistoryRecord.tool_name == tool_name)
        if query:
            stmt = stmt.where(col(HistoryRecord.prompt).contains(query))
        stmt = stmt.order_by(col(HistoryRecord.created_at).desc()).offset(offset).limit(limit)
        with self.session() as session:
            return list(session.exec(stmt).all())

    def count_history(self) -> int:
        with self.session() as session:
            return session.exec(select(func.count()).select_from(HistoryRecord)).one()

    # jobs

    def insert_job(self, job: Job) -> Job:
        with self._write_lock, self.session() as session:
            session.add(job)
            session.commit()
        return job

    def get_job(self, job_id: str) -> Optional[Job]:
        with self.session() as session:
            return session.get(Job, job_id)

    def update_job(
        self,
        job_id: str,
        *,
        expected: Optional[Iterable[JobStatus]] = None,
        **changes: Any,
    ) -> bool:
        """Apply ``changes`` to a job, only if its status is in ``expected``.

        Returns False when the job is missing or its current status is not
        one of ``expected``; nothing is written in that case.
        """
        allowed = None if expected is None else {JobStatus(s).value for s in expected}
        if "status" in changes:
            changes["status"] = JobStatus(changes["status"]).value
        with self._write_lock, self.session() as session:
            job = session.get(Job, job_id)
            if job is None:
                return False
            if allowed is not None and job.status not in allowed:
                return False
            for name, value in changes.items():
                setattr(job, name, value)
            job.updated_at = utcnow()
            session.add(job)
            session.commit()
        return True

    def list_jobs(
        self,
        status: Optional[JobStatus] = None,
        tool_name: Optional[str] = None,
        limit: int = 20,
        offset: int = 0,
    ) -> list[Job]:
        stmt = select(Job)
        if status is not None:
            stmt = stmt.where(Job.status == JobStatus(status).value)
        if tool_name:
            stmt = stmt.where(Job.tool_name == tool_name)
        stmt = stmt.order_by(col(Job.created_at).desc()).offset(offset).limit(limit)
        with self.session() as session:
            return list(session.exec(stmt).all())

    def count_jobs(self, status: Optional[JobStatus] = None) -> int:
        stmt = select(func.count()).select_from(Job)
        if status is not None:
            stmt = stmt.where(Job.status == JobStatus(status).value)
        with self.session() as session:
            return session.exec(stmt).one()

    def delete_terminal_jobs(self, created_before: datetime) -> int:
        stmt = select(Job).where(
            col(Job.status).in_([s.value for s in TERMINAL_STATUSES]),
            col(Job.created_at) < created_before,
        )
        with self._write_lock, self.session() as session:
            jobs = session.exec(stmt).all()
            for job in jobs:
                session.delete(job)
            session.commit()
        return len(jobs)
