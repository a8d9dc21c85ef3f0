from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

from ..errors import ImageJobsError
from ..provenance.record import now_utc_iso
from ..store import Job, JobStatus
from .batch_config import BatchConfig, BatchJobSpec, RetryPolicy
from .manager import JobManager, JobSpec

logger = logging.getLogger(__name__)

TIMEOUT_ERROR = "Timeout"

# per-image price range by quality
QUALITY_COST_RANGES = {
    "low": (0.01, 0.02),
    "medium": (0.04, 0.07),
    "high": (0.17, 0.19),
    "auto": (0.04, 0.19),
}


@dataclass
class BatchJobResult:
    prompt: str
    status: str
    job_id: Optional[str] = None
    output_paths: list[str] = field(default_factory=list)
    error: Optional[str] = None
    duration_ms: Optional[int] = None
    history_id: Optional[str] = None

    @property
    def output_path(self) -> Optional[str]:
        return self.output_paths[0] if self.output_paths else None


@dataclass
class BatchResult:
    total: int
    succeeded: int
    failed: int
    cancelled: int
    results: list[BatchJobResult]
    started_at: str
    finished_at: str
    total_duration_ms: int
    total_cost: Optional[float] = None


@dataclass
class QualityCost:
    quality: str
    count: int
    cost_min: float
    cost_max: float


@dataclass
class CostEstimate:
    total_images: int
    cost_min: float
    cost_max: float
    breakdown: list[QualityCost]


def estimate_cost(config: BatchConfig) -> CostEstimate:
    """Price range for a batch before running it. No side effects."""
    breakdown: dict[str, QualityCost] = {}
    for spec in config.jobs:
        quality = spec.quality or "auto"
        low, high = QUALITY_COST_RANGES[quality]
        entry = breakdown.get(quality)
        if entry is None:
            entry = breakdown[quality] = QualityCost(quality, 0, 0.0, 0.0)
        entry.count += spec.sample_count
        entry.cost_min += low * spec.sample_count
        entry.cost_max += high * spec.sample_count

    items = list(breakdown.values())
    return CostEstimate(
        total_images=sum(spec.sample_count for spec in config.jobs),
        cost_min=sum(q.cost_min for q in items),
        cost_max=sum(q.cost_max for q in items),
        breakdown=items,
    )


def _result_from_job(job: Job) -> BatchJobResult:
    status = job.job_status
    if status is JobStatus.COMPLETED:
        return BatchJobResult(
            prompt=job.prompt,
            status=status.value,
            job_id=job.job_id,
            output_paths=list(job.output_paths or []),
            duration_ms=int((job.updated_at - job.created_at).total_seconds() * 1000),
            history_id=job.history_id,
        )
    if status is JobStatus.FAILED:
        error = job.error_message or "Unknown error"
    else:
        error = job.error_message or "Job was cancelled"
    return BatchJobResult(prompt=job.prompt, status=status.value, job_id=job.job_id, error=error)


class BatchRunner:
    """Runs batch job specifications through the job manager.

    At most ``max_concurrent`` entries hold the gate at once; each entry
    creates and starts a real job, then polls it until terminal. A failed
    job whose error matches the retry policy is re-submitted as a new job.
    """

    def __init__(self, jobs: JobManager, *, poll_interval: float = 1.0, timeout_grace: float = 2.0):
        self.jobs = jobs
        self.poll_interval = poll_interval
        self.timeout_grace = timeout_grace

    async def execute(self, config: BatchConfig) -> BatchResult:
        started = time.monotonic()
        started_at = now_utc_iso()
        gate = asyncio.Semaphore(config.max_concurrent)
        policy = config.retry_policy or RetryPolicy(max_retries=0)
        launched: dict[int, str] = {}

        logger.info(
            "Starting batch: %d job(s), max_concurrent=%d, timeout=%dms",
            len(config.jobs),
            config.max_concurrent,
            config.timeout_ms,
        )

        tasks = [
            asyncio.create_task(
                self._run_entry(index, spec, config.output_dir, gate, policy, launched),
                name=f"batch-entry-{index + 1}",
            )
            for index, spec in enumerate(config.jobs)
        ]

        _, pending = await asyncio.wait(tasks, timeout=config.timeout_ms / 1000)
        if pending:
            logger.warning("Batch timed out after %dms; %d entr(ies) unfinished", config.timeout_ms, len(pending))
            _, pending = await asyncio.wait(pending, timeout=self.timeout_grace)
            for task in pending:
                task.cancel()
            await asyncio.gather(*pending, return_exceptions=True)

        results = []
        for index, (spec, task) in enumerate(zip(config.jobs, tasks)):
            if task.cancelled():
                results.append(
                    BatchJobResult(
                        prompt=spec.prompt,
                        status=JobStatus.CANCELLED.value,
                        job_id=launched.get(index),
                        error=TIMEOUT_ERROR,
                    )
                )
            else:
                results.append(task.result())

        result = BatchResult(
            total=len(results),
            succeeded=sum(1 for r in results if r.status == JobStatus.COMPLETED.value),
            failed=sum(1 for r in results if r.status == JobStatus.FAILED.value),
            cancelled=sum(1 for r in results if r.status == JobStatus.CANCELLED.value),
            results=results,
            started_at=started_at,
            finished_at=now_utc_iso(),
            total_duration_ms=int((time.monotonic() - started) * 1000),
            total_cost=self._total_cost(results),
        )
        logger.info(
            "Batch finished: %d succeeded, %d failed, %d cancelled",
            result.succeeded,
            result.failed,
            result.cancelled,
        )
        return result

    async def _run_entry(
        self,
        index: int,
        spec: BatchJobSpec,
        output_dir: Optional[Path],
        gate: asyncio.Semaphore,
        policy: RetryPolicy,
        launched: dict[int, str],
    ) -> BatchJobResult:
        async with gate:
            logger.debug("Batch entry %d starting", index + 1)
            try:
                job_spec = JobSpec(
                    tool_name=spec.tool_name.value,
                    prompt=spec.prompt,
                    parameters=spec.to_parameters(index, output_dir),
                    sample_count=spec.sample_count,
                )
                attempts = 0
                while True:
                    job_id = self.jobs.create(job_spec)
                    launched[index] = job_id
                    await self.jobs.start(job_id)
                    job = await self._wait_for_terminal(job_id)

                    error = job.error_message or ""
                    if (
                        job.job_status is JobStatus.FAILED
                        and attempts < policy.max_retries
                        and policy.should_retry(error)
                    ):
                        attempts += 1
                        logger.info(
                            "Retrying batch entry %d (attempt %d/%d): %s",
                            index + 1,
                            attempts,
                            policy.max_retries,
                            error,
                        )
                        await asyncio.sleep(policy.retry_delay_ms / 1000)
                        continue
                    return _result_from_job(job)
            except Exception as e:
                logger.warning("Batch entry %d failed: %s", index + 1, e)
                return BatchJobResult(
                    prompt=spec.prompt,
                    status=JobStatus.FAILED.value,
                    job_id=launched.get(index),
                    error=str(e),
                )

    async def _wait_for_terminal(self, job_id: str) -> Job:
        while True:
            job = self.jobs.get(job_id)
            if job is None:
                raise ImageJobsError(f"Job disappeared: {job_id}")
            if job.job_status.is_terminal:
                return job
            await asyncio.sleep(self.poll_interval)

    def _total_cost(self, results: list[BatchJobResult]) -> Optional[float]:
        total = 0.0
        seen = False
        for r in results:
            if r.status != JobStatus.COMPLETED.value or not r.history_id:
                continue
            history = self.jobs.store.get_history(r.history_id)
            if history is not None and history.estimated_cost is not None:
                total += history.estimated_cost
                seen = True
        return total if seen else None
