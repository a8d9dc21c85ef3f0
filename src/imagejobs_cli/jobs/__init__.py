from __future__ import annotations

from .batch import BatchJobResult, BatchResult, BatchRunner, CostEstimate, QualityCost, estimate_cost
from .batch_config import BatchConfig, BatchConfigError, BatchJobSpec, RetryPolicy, load_batch_config
from .manager import JobManager, JobSpec

__all__ = [
    "JobManager",
    "JobSpec",
    "BatchRunner",
    "BatchResult",
    "BatchJobResult",
    "CostEstimate",
    "QualityCost",
    "estimate_cost",
    "BatchConfig",
    "BatchConfigError",
    "BatchJobSpec",
    "RetryPolicy",
    "load_batch_config",
]
