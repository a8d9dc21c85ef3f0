from __future__ import annotations

from .database import Store
from .models import ACTIVE_STATUSES, TERMINAL_STATUSES, HistoryRecord, Job, JobStatus, utcnow

__all__ = [
    "Store",
    "Job",
    "JobStatus",
    "HistoryRecord",
    "ACTIVE_STATUSES",
    "TERMINAL_STATUSES",
    "utcnow",
]
