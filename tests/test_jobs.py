"""Tests for mail_harvester.jobs."""

from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest

from mail_harvester.errors import JobConflictError, MailConnectionError, RunCancelled
from mail_harvester.jobs import Job, JobRegistry, run_job
from mail_harvester.models import JobStatus, ProgressEvent, ProgressEventKind


def _event(message: str, kind: ProgressEventKind = ProgressEventKind.MESSAGE_SCAN_UPDATE) -> ProgressEvent:
    return ProgressEvent(kind=kind, message=message)


def _result(**overrides) -> MagicMock:
    result = MagicMock()
    result.total_messages = overrides.get("total_messages", 3)
    result.total_pdfs = overrides.get("total_pdfs", 1)
    result.total_docx = overrides.get("total_docx", 1)
    result.archive_name = overrides.get("archive_name", "INBOX.zip")
    result.shards = overrides.get("shards", [MagicMock()])
    result.active_streams = overrides.get("active_streams", 0)
    result.release = AsyncMock()
    return result


class TestJobState:
    @pytest.mark.asyncio
    async def test_updates_and_counters(self, job: Job):
        assert job.status == JobStatus.PENDING
        await job.update(status=JobStatus.PROCESSING, total_messages=10)
        await job.increment(processed_batches=1, total_pdfs=2)
        await job.increment(processed_batches=1, total_pdfs=1)
        state = job.snapshot()
        assert state.status == JobStatus.PROCESSING
        assert state.total_messages == 10
        assert state.processed_batches == 2
        assert state.total_pdfs == 3

    @pytest.mark.asyncio
    async def test_updated_at_strictly_increases(self, job: Job):
        stamps = []
        for i in range(5):
            await job.increment(processed_batches=1)
            stamps.append(job.snapshot().updated_at)
        assert stamps == sorted(stamps)
        assert len(set(stamps)) == len(stamps)

    @pytest.mark.asyncio
    async def test_concurrent_increments_all_counted(self, job: Job):
        writers = [job.increment(total_pdfs=1) for _ in range(100)]
        writers += [job.increment(processed_messages=2, total_docx=1) for _ in range(50)]
        results = await asyncio.gather(*writers)

        assert all(results)
        state = job.snapshot()
        assert state.total_pdfs == 100
        assert state.total_docx == 50
        assert state.processed_messages == 100

    @pytest.mark.asyncio
    async def test_unknown_counter(self, job: Job):
        with pytest.raises(ValueError):
            await job.increment(folder=1)

    @pytest.mark.asyncio
    async def test_no_mutation_after_terminal(self, job: Job):
        await job.mark_cancelled()
        assert await job.update(total_messages=5) is False
        assert await job.increment(processed_batches=1) is False
        assert await job.fail("late", "internal") is False
        state = job.snapshot()
        assert state.status == JobStatus.CANCELLED
        assert state.total_messages == 0

    @pytest.mark.asyncio
    async def test_snapshot_is_a_copy(self, job: Job):
        snapshot = job.snapshot()
        await job.update(total_messages=7)
        assert snapshot.total_messages == 0


class TestJobEvents:
    @pytest.mark.asyncio
    async def test_replay_then_follow_until_terminal(self, job: Job):
        await job.emit(_event("one"))
        received: list[str] = []

        async def observe():
            async for event in job.events():
                received.append(event.message)

        observer = asyncio.create_task(observe())
        await asyncio.sleep(0)
        await job.emit(_event("two"))
        await job.fail("boom", "protocol")
        await asyncio.wait_for(observer, timeout=1)

        assert received == ["one", "two", "boom"]

    @pytest.mark.asyncio
    async def test_exactly_one_terminal_event(self, job: Job):
        await job.mark_cancelled()
        await job.fail("late", "internal")
        await job.emit(_event("after"))
        events = [event async for event in job.events()]
        assert [e.kind for e in events] == [ProgressEventKind.CANCELLED]

    @pytest.mark.asyncio
    async def test_multiple_observers(self, job: Job):
        async def collect():
            return [event.message async for event in job.events()]

        first = asyncio.create_task(collect())
        second = asyncio.create_task(collect())
        await asyncio.sleep(0)
        await job.emit(_event("x"))
        await job.complete(_result())
        assert await first == ["x", "Processing complete!"]
        assert await second == ["x", "Processing complete!"]

    @pytest.mark.asyncio
    async def test_complete_event_carries_totals(self, job: Job):
        await job.complete(_result())
        event = [e async for e in job.events()][-1]
        assert event.kind == ProgressEventKind.RUN_COMPLETE
        assert (event.total_messages, event.total_pdfs, event.total_docx) == (3, 1, 1)
        assert event.archive_name == "INBOX.zip"
        assert event.shard_count == 1


class TestJobCancel:
    @pytest.mark.asyncio
    async def test_request_cancel(self, job: Job):
        assert job.cancel_requested is False
        assert job.request_cancel() is True
        assert job.cancel_requested is True
        assert job.status == JobStatus.PENDING

    @pytest.mark.asyncio
    async def test_cancel_after_terminal_rejected(self, job: Job):
        await job.complete(_result())
        assert job.request_cancel() is False


class TestRunJob:
    @pytest.mark.asyncio
    async def test_success(self, job: Job):
        result = _result()
        await run_job(job, AsyncMock(return_value=result))
        assert job.status == JobStatus.COMPLETED
        assert job.result is result

    @pytest.mark.asyncio
    async def test_harvest_error(self, job: Job):
        await run_job(job, AsyncMock(side_effect=MailConnectionError("Connection timeout")))
        state = job.snapshot()
        assert state.status == JobStatus.FAILED
        assert state.error == "Connection timeout"
        assert state.error_kind == "connection"
        events = [e async for e in job.events()]
        assert events[-1].kind == ProgressEventKind.RUN_ERROR
        assert events[-1].error_kind == "connection"

    @pytest.mark.asyncio
    async def test_unexpected_error_is_internal(self, job: Job):
        await run_job(job, AsyncMock(side_effect=RuntimeError("kaput")))
        assert job.snapshot().error_kind == "internal"

    @pytest.mark.asyncio
    async def test_cancelled(self, job: Job):
        await run_job(job, AsyncMock(side_effect=RunCancelled("stop")))
        assert job.status == JobStatus.CANCELLED


class TestJobRegistry:
    @pytest.mark.asyncio
    async def test_start_and_get(self):
        registry = JobRegistry(AsyncMock())
        job = registry.start("INBOX", AsyncMock(return_value=_result()))
        assert registry.get(job.job_id) is job
        await job.task
        assert job.status == JobStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_one_in_flight_per_session(self):
        registry = JobRegistry(AsyncMock())
        gate = asyncio.Event()

        async def runner(job):
            await gate.wait()
            return _result()

        first = registry.start("INBOX", runner, session_id="s1")
        with pytest.raises(JobConflictError):
            registry.start("INBOX", runner, session_id="s1")
        other = registry.start("INBOX", runner, session_id="s2")

        gate.set()
        await asyncio.gather(first.task, other.task)
        again = registry.start("INBOX", AsyncMock(return_value=_result()), session_id="s1")
        await again.task
        assert again.status == JobStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_release_deletes_result(self):
        store = AsyncMock()
        registry = JobRegistry(store)
        result = _result()
        job = registry.start("INBOX", AsyncMock(return_value=result))
        await job.task

        assert await registry.release(job.job_id) is True
        result.release.assert_awaited_once()
        assert registry.get(job.job_id) is None
        assert await registry.release(job.job_id) is False

    @pytest.mark.asyncio
    async def test_release_running_job_cancels_it(self):
        store = AsyncMock()
        registry = JobRegistry(store)

        async def runner(job):
            await asyncio.sleep(10)

        job = registry.start("INBOX", runner)
        await asyncio.sleep(0)
        await registry.release(job.job_id)

        assert job.status == JobStatus.CANCELLED
        store.delete.assert_awaited_once_with(job.job_id)

    @pytest.mark.asyncio
    async def test_sweep_expires_idle_finished_jobs(self):
        store = AsyncMock()
        store.sweep_expired.return_value = []
        registry = JobRegistry(store, idle_ttl_seconds=0)
        result = _result()
        job = registry.start("INBOX", AsyncMock(return_value=result))
        await job.task
        job.last_activity -= 1

        expired = await registry.sweep()

        assert expired == [job.job_id]
        assert len(registry) == 0
        result.release.assert_awaited_once()
        store.sweep_expired.assert_awaited_once_with(0, keep=set())

    @pytest.mark.asyncio
    async def test_sweep_keeps_job_while_archive_streams(self):
        store = AsyncMock()
        store.sweep_expired.return_value = []
        registry = JobRegistry(store, idle_ttl_seconds=0)
        result = _result(active_streams=1)
        job = registry.start("INBOX", AsyncMock(return_value=result))
        await job.task
        job.last_activity -= 1

        assert await registry.sweep() == []
        assert registry.get(job.job_id) is job
        result.release.assert_not_awaited()
        store.sweep_expired.assert_awaited_once_with(0, keep={job.job_id})
