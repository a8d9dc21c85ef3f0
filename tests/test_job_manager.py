from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Mapping

import pytest

from imagejobs_cli.errors import InvalidInputError, InvalidStateError, JobNotFoundError, RateLimitError
from imagejobs_cli.gen.types import ToolName
from imagejobs_cli.jobs import JobManager, JobSpec
from imagejobs_cli.store import JobStatus, Store, utcnow


@dataclass
class FakeOutcome:
    history_id: str


class FakeOperation:
    """Records calls; optionally blocks until released or raises."""

    def __init__(self, store: Store, error: Exception | None = None):
        self.store = store
        self.error = error
        self.calls: list[dict[str, Any]] = []
        self.release = asyncio.Event()
        self.block = False
        self.progress_seen: list[int] = []
        self.job_ids: list[str] = []

    async def __call__(self, params: Mapping[str, Any]) -> FakeOutcome:
        self.calls.append(dict(params))
        for job_id in self.job_ids:
            self.progress_seen.append(self.store.get_job(job_id).progress)
        if self.block:
            await self.release.wait()
        if self.error is not None:
            raise self.error
        record = self.store.create_history(
            tool_name="generate_image",
            prompt=params["prompt"],
            parameters=dict(params),
            output_paths=["/out/a.png", "/out/b.png"],
        )
        return FakeOutcome(history_id=record.id)


def _manager(error: Exception | None = None) -> tuple[JobManager, FakeOperation]:
    store = Store.in_memory()
    op = FakeOperation(store, error)
    return JobManager(store, {tool: op for tool in ToolName}), op


async def _wait_terminal(manager: JobManager, job_id: str) -> None:
    for _ in range(200):
        if manager.get(job_id).job_status.is_terminal:
            return
        await asyncio.sleep(0.01)
    raise AssertionError("job did not finish")


class TestCreate:
    def test_creates_pending_job_with_prompt_in_parameters(self) -> None:
        manager, _ = _manager()
        job_id = manager.create(JobSpec(tool_name="generate_image", prompt="a cat", parameters={"size": "1024x1024"}))
        job = manager.get(job_id)
        assert job.job_status is JobStatus.PENDING
        assert job.progress == 0
        assert job.parameters["prompt"] == "a cat"
        assert job.parameters["size"] == "1024x1024"
        assert job.output_paths is None
        assert job.history_id is None

    def test_rejects_unknown_tool(self) -> None:
        manager, _ = _manager()
        with pytest.raises(InvalidInputError):
            manager.create(JobSpec(tool_name="paint_image", prompt="x"))

    def test_rejects_blank_prompt(self) -> None:
        manager, _ = _manager()
        with pytest.raises(InvalidInputError):
            manager.create(JobSpec(tool_name="generate_image", prompt="   "))

    def test_rejects_sample_count_out_of_range(self) -> None:
        manager, _ = _manager()
        with pytest.raises(InvalidInputError):
            manager.create(JobSpec(tool_name="generate_image", prompt="x", sample_count=11))


class TestExecution:
    def test_successful_job_completes(self) -> None:
        async def scenario():
            manager, op = _manager()
            job_id = manager.create(JobSpec(tool_name="generate_image", prompt="a cat"))
            op.job_ids.append(job_id)
            await manager.start(job_id)
            await _wait_terminal(manager, job_id)
            return manager.get(job_id), op

        job, op = asyncio.run(scenario())
        assert job.job_status is JobStatus.COMPLETED
        assert job.progress == 100
        assert job.output_paths == ["/out/a.png", "/out/b.png"]
        assert job.history_id is not None
        assert op.progress_seen == [30]

    def test_start_marks_running_at_ten(self) -> None:
        async def scenario():
            manager, op = _manager()
            op.block = True
            job_id = manager.create(JobSpec(tool_name="generate_image", prompt="a cat"))
            await manager.start(job_id)
            snapshot = manager.get(job_id)
            op.release.set()
            await manager.drain()
            return snapshot

        snapshot = asyncio.run(scenario())
        assert snapshot.job_status is JobStatus.RUNNING
        assert snapshot.progress == 10

    def test_failure_is_recorded(self) -> None:
        async def scenario():
            manager, _ = _manager(RateLimitError("rate_limit: slow down", status=429))
            job_id = manager.create(JobSpec(tool_name="generate_image", prompt="a cat"))
            await manager.start(job_id)
            await manager.drain()
            return manager.get(job_id)

        job = asyncio.run(scenario())
        assert job.job_status is JobStatus.FAILED
        assert "rate_limit" in job.error_message
        assert job.progress < 100
        assert job.output_paths is None

    def test_start_missing_job(self) -> None:
        manager, _ = _manager()
        with pytest.raises(JobNotFoundError):
            asyncio.run(manager.start("missing"))

    def test_start_twice_is_invalid(self) -> None:
        async def scenario():
            manager, op = _manager()
            op.block = True
            job_id = manager.create(JobSpec(tool_name="generate_image", prompt="a cat"))
            await manager.start(job_id)
            try:
                with pytest.raises(InvalidStateError):
                    await manager.start(job_id)
            finally:
                op.release.set()
                await manager.drain()

        asyncio.run(scenario())


class TestCancel:
    def test_cancel_pending(self) -> None:
        manager, _ = _manager()
        job_id = manager.create(JobSpec(tool_name="generate_image", prompt="a cat"))
        assert manager.cancel(job_id)
        job = manager.get(job_id)
        assert job.job_status is JobStatus.CANCELLED
        assert job.error_message == "Job cancelled by user"

    def test_cancel_with_message(self) -> None:
        manager, _ = _manager()
        job_id = manager.create(JobSpec(tool_name="generate_image", prompt="a cat"))
        manager.cancel(job_id, "no longer needed")
        assert manager.get(job_id).error_message == "no longer needed"

    def test_cancel_missing_or_terminal(self) -> None:
        manager, _ = _manager()
        job_id = manager.create(JobSpec(tool_name="generate_image", prompt="a cat"))
        assert manager.cancel(job_id)
        assert not manager.cancel(job_id)
        assert not manager.cancel("missing")

    def test_cancel_is_not_overwritten_by_late_success(self) -> None:
        async def scenario():
            manager, op = _manager()
            op.block = True
            job_id = manager.create(JobSpec(tool_name="generate_image", prompt="a cat"))
            await manager.start(job_id)
            await asyncio.sleep(0)
            assert manager.cancel(job_id)
            op.release.set()
            await manager.drain()
            return manager.get(job_id)

        job = asyncio.run(scenario())
        assert job.job_status is JobStatus.CANCELLED
        assert job.progress != 100
        assert job.output_paths is None
        assert job.history_id is None

    def test_cancelled_pending_job_cannot_start(self) -> None:
        manager, op = _manager()
        job_id = manager.create(JobSpec(tool_name="generate_image", prompt="a cat"))
        manager.cancel(job_id)
        with pytest.raises(InvalidStateError):
            asyncio.run(manager.start(job_id))
        assert op.calls == []


class TestQueries:
    def test_list_validates_paging(self) -> None:
        manager, _ = _manager()
        with pytest.raises(InvalidInputError):
            manager.list(limit=0)
        with pytest.raises(InvalidInputError):
            manager.list(limit=101)
        with pytest.raises(InvalidInputError):
            manager.list(offset=-1)

    def test_list_and_count(self) -> None:
        manager, _ = _manager()
        a = manager.create(JobSpec(tool_name="generate_image", prompt="a"))
        manager.create(JobSpec(tool_name="edit_image", prompt="b"))
        manager.cancel(a)

        assert manager.count() == 2
        assert manager.count(JobStatus.CANCELLED) == 1
        assert [j.job_id for j in manager.list(status=JobStatus.CANCELLED)] == [a]
        assert len(manager.list(tool_name="edit_image")) == 1

    def test_cleanup_removes_only_old_terminal_jobs(self) -> None:
        manager, _ = _manager()
        old_done = manager.create(JobSpec(tool_name="generate_image", prompt="a"))
        old_pending = manager.create(JobSpec(tool_name="generate_image", prompt="b"))
        recent_done = manager.create(JobSpec(tool_name="generate_image", prompt="c"))
        manager.cancel(old_done)
        manager.cancel(recent_done)

        old = utcnow() - timedelta(days=8)
        manager.store.update_job(old_done, created_at=old)
        manager.store.update_job(old_pending, created_at=old)

        assert manager.cleanup() == 1
        assert manager.get(old_done) is None
        assert manager.get(old_pending) is not None
        assert manager.get(recent_done) is not None
