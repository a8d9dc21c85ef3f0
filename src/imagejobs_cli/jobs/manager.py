from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any, Awaitable, Callable, Mapping, Optional

from ..errors import InvalidInputError, InvalidStateError, JobNotFoundError
from ..gen.types import ToolName
from ..store import ACTIVE_STATUSES, Job, JobStatus, Store, utcnow

logger = logging.getLogger(__name__)

CANCELLED_BY_USER = "Job cancelled by user"

PROGRESS_STARTED = 10
PROGRESS_CALLING = 30
PROGRESS_DONE = 100


# operations return an object carrying the created history record id
Operation = Callable[[Mapping[str, Any]], Awaitable[Any]]


@dataclass(frozen=True)
class JobSpec:
    tool_name: str
    prompt: str
    parameters: dict[str, Any] = field(default_factory=dict)
    sample_count: int = 1


class JobManager:
    """Persisted job state machine.

    ``pending -> running -> completed | failed | cancelled``. Terminal states
    are sticky: every write after creation is conditional on the job still
    being pending or running, so a cancellation is never overwritten by a
    late execution outcome.
    """

    def __init__(self, store: Store, operations: Mapping[ToolName, Operation]):
        self.store = store
        self._operations = dict(operations)
        self._tasks: dict[str, asyncio.Task] = {}

    def create(self, spec: JobSpec) -> str:
        try:
            tool = ToolName(spec.tool_name)
        except ValueError as e:
            valid = ", ".join(t.value for t in ToolName)
            raise InvalidInputError(f"Invalid tool_name: {spec.tool_name}. Must be one of: {valid}") from e
        if not spec.prompt or not spec.prompt.strip():
            raise InvalidInputError("Prompt is required and cannot be empty")
        if not 1 <= spec.sample_count <= 10:
            raise InvalidInputError(f"Invalid sample_count: {spec.sample_count}. Must be between 1 and 10")

        parameters = dict(spec.parameters)
        parameters["prompt"] = spec.prompt
        parameters["sample_count"] = spec.sample_count

        job = Job(
            job_id=str(uuid.uuid4()),
            tool_name=tool.value,
            prompt=spec.prompt,
            parameters=parameters,
            sample_count=spec.sample_count,
            status=JobStatus.PENDING.value,
            progress=0,
        )
        self.store.insert_job(job)
        logger.debug("Job created: %s (%s)", job.job_id, tool.value)
        return job.job_id

    async def start(self, job_id: str) -> None:
        """Mark the job running and schedule its execution on the running loop.

        Returns as soon as the execution is scheduled.
        """
        job = self.store.get_job(job_id)
        if job is None:
            raise JobNotFoundError(job_id)
        if job.job_status is not JobStatus.PENDING:
            raise InvalidStateError(f"Job {job_id} is already {job.status}")
        if job_id in self._tasks:
            raise InvalidStateError(f"Job {job_id} is already executing")

        started = self.store.update_job(
            job_id,
            expected={JobStatus.PENDING},
            status=JobStatus.RUNNING,
            progress=PROGRESS_STARTED,
        )
        if not started:
            current = self.store.get_job(job_id)
            raise InvalidStateError(f"Job {job_id} is already {current.status if current else 'gone'}")

        task = asyncio.get_running_loop().create_task(self._execute(job), name=f"job-{job_id}")
        self._tasks[job_id] = task
        task.add_done_callback(lambda _t, jid=job_id: self._tasks.pop(jid, None))
        logger.info("Job started: %s", job_id)

    async def _execute(self, job: Job) -> None:
        job_id = job.job_id
        try:
            if not self.store.update_job(job_id, expected=ACTIVE_STATUSES, progress=PROGRESS_CALLING):
                logger.debug("Job %s became terminal before execution; skipping", job_id)
                return

            operation = self._operations.get(ToolName(job.tool_name))
            if operation is None:
                raise InvalidStateError(f"No operation registered for {job.tool_name}")
            outcome = await operation(job.parameters)

            history = self.store.get_history(outcome.history_id)
            output_paths = list(history.output_paths) if history is not None else []
            completed = self.store.update_job(
                job_id,
                expected=ACTIVE_STATUSES,
                status=JobStatus.COMPLETED,
                progress=PROGRESS_DONE,
                output_paths=output_paths,
                history_id=outcome.history_id,
            )
            if completed:
                logger.info("Job completed: %s", job_id)
            else:
                logger.info("Job %s finished after reaching a terminal state; outcome dropped", job_id)
        except asyncio.CancelledError:
            self.store.update_job(
                job_id,
                expected=ACTIVE_STATUSES,
                status=JobStatus.CANCELLED,
                error_message="Execution interrupted",
            )
            raise
        except Exception as e:
            message = str(e) or type(e).__name__
            logger.warning("Job %s failed: %s", job_id, message)
            self.store.update_job(
                job_id,
                expected=ACTIVE_STATUSES,
                status=JobStatus.FAILED,
                error_message=message,
            )

    def get(self, job_id: str) -> Optional[Job]:
        return self.store.get_job(job_id)

    def cancel(self, job_id: str, message: Optional[str] = None) -> bool:
        """Cancel a pending or running job. False if missing or already terminal.

        A running execution is not interrupted; its outcome is discarded.
        """
        cancelled = self.store.update_job(
            job_id,
            expected=ACTIVE_STATUSES,
            status=JobStatus.CANCELLED,
            error_message=message or CANCELLED_BY_USER,
        )
        if cancelled:
            logger.info("Job cancelled: %s", job_id)
        return cancelled

    def list(
        self,
        status: Optional[JobStatus] = None,
        tool_name: Optional[str] = None,
        limit: int = 20,
        offset: int = 0,
    ) -> list[Job]:
        if not 1 <= limit <= 100:
            raise InvalidInputError(f"Invalid limit: {limit}. Must be between 1 and 100")
        if offset < 0:
            raise InvalidInputError(f"Invalid offset: {offset}. Must be >= 0")
        return self.store.list_jobs(status=status, tool_name=tool_name, limit=limit, offset=offset)

    def count(self, status: Optional[JobStatus] = None) -> int:
        return self.store.count_jobs(status)

    def cleanup(self, older_than_days: int = 7) -> int:
        """Delete terminal jobs created more than ``older_than_days`` ago."""
        cutoff = utcnow() - timedelta(days=older_than_days)
        deleted = self.store.delete_terminal_jobs(cutoff)
        if deleted:
            logger.info("Cleaned up %d job(s) older than %d day(s)", deleted, older_than_days)
        return deleted

    async def drain(self, timeout: Optional[float] = None) -> None:
        """Wait for every in-flight execution to finish."""
        tasks = list(self._tasks.values())
        if not tasks:
            return
        done, pending = await asyncio.wait(tasks, timeout=timeout)
        if pending:
            logger.warning("%d job execution(s) still running after drain timeout", len(pending))
