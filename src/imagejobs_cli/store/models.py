from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from sqlalchemy import DateTime, TypeDecorator
from sqlmodel import JSON, Field, SQLModel


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class UTCTimestamp(TypeDecorator):
    """Timezone-aware UTC datetimes on both sides of the column.

    Naive values are taken to be UTC. SQLite keeps no offset, so values read
    back get UTC attached.
    """

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)


class JobStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset({JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED})
ACTIVE_STATUSES = frozenset({JobStatus.PENDING, JobStatus.RUNNING})


class Job(SQLModel, table=True):
    __tablename__ = "jobs"

    job_id: str = Field(primary_key=True)
    created_at: datetime = Field(default_factory=utcnow, sa_type=UTCTimestamp, index=True)
    updated_at: datetime = Field(default_factory=utcnow, sa_type=UTCTimestamp)
    status: str = Field(default=JobStatus.PENDING.value, index=True)
    tool_name: str = Field(index=True)
    prompt: str
    parameters: Dict[str, Any] = Field(default_factory=dict, sa_type=JSON)
    sample_count: int = 1
    output_paths: Optional[List[str]] = Field(default=None, sa_type=JSON)
    history_id: Optional[str] = None
    error_message: Optional[str] = None
    progress: int = 0

    @property
    def job_status(self) -> JobStatus:
        return JobStatus(self.status)


class HistoryRecord(SQLModel, table=True):
    __tablename__ = "history"

    id: str = Field(primary_key=True)
    created_at: datetime = Field(default_factory=utcnow, sa_type=UTCTimestamp, index=True)
    tool_name: str = Field(index=True)
    prompt: str
    parameters: Dict[str, Any] = Field(default_factory=dict, sa_type=JSON)
    output_paths: List[str] = Field(default_factory=list, sa_type=JSON)
    sample_count: int = 1
    size: Optional[str] = None
    quality: Optional[str] = None
    output_format: Optional[str] = None
    params_hash: Optional[str] = None
    input_tokens: Optional[int] = None
    output_tokens: Optional[int] = None
    total_tokens: Optional[int] = None
    estimated_cost: Optional[float] = None
