"""Job / progress channel: one extraction run as an observable unit of work.

A :class:`Job` owns the run's :class:`JobState` and its ordered progress
event log.  The pipeline is the only writer; any number of observers can
replay and follow the event log through :meth:`Job.events`.  All writes go
through one ``asyncio.Condition`` so counter updates never interleave.
"""

from __future__ import annotations

import asyncio
import time
import uuid
from collections.abc import AsyncIterator, Awaitable, Callable
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING, Any

import structlog

from .errors import HarvestError, JobConflictError, RunCancelled
from .models import JobState, JobStatus, ProgressEvent, ProgressEventKind
from .storage import WorkingStore

if TYPE_CHECKING:
    from .pipeline import ExtractionResult

logger = structlog.get_logger()

_COUNTERS = (
    "processed_batches",
    "processed_messages",
    "skipped_messages",
    "total_pdfs",
    "total_docx",
)


class Job:
    """State, progress log, and cancellation flag of a single run."""

    def __init__(self, job_id: str, folder: str, session_id: str | None = None) -> None:
        self.session_id = session_id
        self.result: ExtractionResult | None = None
        self.task: asyncio.Task | None = None
        self.last_activity = time.monotonic()

        self._state = JobState(job_id=job_id, folder=folder)
        self._events: list[ProgressEvent] = []
        self._changed = asyncio.Condition()
        self._cancel = asyncio.Event()

    @property
    def job_id(self) -> str:
        return self._state.job_id

    @property
    def status(self) -> JobStatus:
        return self._state.status

    @property
    def cancel_requested(self) -> bool:
        return self._cancel.is_set()

    def snapshot(self) -> JobState:
        """A copy of the current state, safe to hand to readers."""
        return self._state.model_copy()

    # ------------------------------------------------------------------
    # Writes (pipeline side)
    # ------------------------------------------------------------------

    def _touch(self) -> None:
        now = datetime.now(UTC)
        previous = self._state.updated_at
        self._state.updated_at = now if now > previous else previous + timedelta(microseconds=1)
        self.last_activity = time.monotonic()

    async def update(self, **changes: Any) -> bool:
        """Set state fields.  Returns ``False`` once the job is terminal."""
        async with self._changed:
            if self._state.status.is_terminal:
                logger.warning("job_update_rejected", job_id=self.job_id, fields=sorted(changes))
                return False
            for name, value in changes.items():
                setattr(self._state, name, value)
            self._touch()
            self._changed.notify_all()
            return True

    async def increment(self, **deltas: int) -> bool:
        """Add to counters atomically.  Returns ``False`` once the job is terminal."""
        unknown = set(deltas) - set(_COUNTERS)
        if unknown:
            raise ValueError(f"not a counter: {sorted(unknown)}")
        async with self._changed:
            if self._state.status.is_terminal:
                logger.warning("job_update_rejected", job_id=self.job_id, fields=sorted(deltas))
                return False
            for name, delta in deltas.items():
                setattr(self._state, name, getattr(self._state, name) + delta)
            self._touch()
            self._changed.notify_all()
            return True

    async def emit(self, event: ProgressEvent) -> None:
        """Append *event* to the progress log.  Dropped after a terminal event."""
        async with self._changed:
            if self._events and self._events[-1].kind.is_terminal:
                return
            self._events.append(event)
            self.last_activity = time.monotonic()
            self._changed.notify_all()

    async def _finish(self, status: JobStatus, event: ProgressEvent, **changes: Any) -> bool:
        async with self._changed:
            if self._state.status.is_terminal:
                return False
            self._state.status = status
            for name, value in changes.items():
                setattr(self._state, name, value)
            self._touch()
            self._events.append(event)
            self._changed.notify_all()
        logger.info("job_finished", job_id=self.job_id, status=status.value)
        return True

    async def complete(self, result: ExtractionResult) -> bool:
        self.result = result
        return await self._finish(
            JobStatus.COMPLETED,
            ProgressEvent(
                kind=ProgressEventKind.RUN_COMPLETE,
                message="Processing complete!" if result.total_messages else "No emails found",
                total_messages=result.total_messages,
                total_pdfs=result.total_pdfs,
                total_docx=result.total_docx,
                archive_name=result.archive_name,
                shard_count=len(result.shards),
            ),
        )

    async def fail(self, message: str, kind: str) -> bool:
        return await self._finish(
            JobStatus.FAILED,
            ProgressEvent(kind=ProgressEventKind.RUN_ERROR, message=message, error_kind=kind),
            error=message,
            error_kind=kind,
        )

    async def mark_cancelled(self) -> bool:
        return await self._finish(
            JobStatus.CANCELLED,
            ProgressEvent(kind=ProgressEventKind.CANCELLED, message="Job cancelled by user"),
        )

    def request_cancel(self) -> bool:
        """Ask the run to stop at its next batch boundary."""
        if self._state.status.is_terminal:
            return False
        self._cancel.set()
        logger.info("job_cancel_requested", job_id=self.job_id)
        return True

    # ------------------------------------------------------------------
    # Reads (observer side)
    # ------------------------------------------------------------------

    async def events(self) -> AsyncIterator[ProgressEvent]:
        """Replay the progress log from the start, then follow it to the terminal event."""
        index = 0
        while True:
            async with self._changed:
                await self._changed.wait_for(lambda: len(self._events) > index)
                pending = self._events[index:]
            for event in pending:
                index += 1
                yield event
                if event.kind.is_terminal:
                    return


async def run_job(job: Job, runner: Callable[[Job], Awaitable[ExtractionResult]]) -> None:
    """Drive *runner* and translate its outcome into exactly one terminal event."""
    structlog.contextvars.bind_contextvars(run_id=job.job_id)
    try:
        result = await runner(job)
    except RunCancelled:
        await job.mark_cancelled()
    except HarvestError as exc:
        logger.warning("run_failed", kind=exc.kind, error=exc.message)
        await job.fail(exc.message, exc.kind)
    except asyncio.CancelledError:
        await job.mark_cancelled()
        raise
    except Exception as exc:
        logger.exception("run_failed_unexpectedly")
        await job.fail(str(exc) or "Failed to process emails", "internal")
    else:
        if not await job.complete(result):
            await result.release()
    finally:
        structlog.contextvars.unbind_contextvars("run_id")


class JobRegistry:
    """Session-scoped job table with idle expiry.

    A session may have at most one job in flight.  Finished jobs keep their
    result (and working-store namespace) until released explicitly or until
    they have been idle for ``idle_ttl_seconds``.
    """

    def __init__(self, store: WorkingStore, *, idle_ttl_seconds: float = 600.0) -> None:
        self._store = store
        self._idle_ttl = idle_ttl_seconds
        self._jobs: dict[str, Job] = {}
        self._by_session: dict[str, str] = {}

    def __len__(self) -> int:
        return len(self._jobs)

    def get(self, job_id: str) -> Job | None:
        job = self._jobs.get(job_id)
        if job is not None:
            job.last_activity = time.monotonic()
        return job

    def start(
        self,
        folder: str,
        runner: Callable[[Job], Awaitable[ExtractionResult]],
        *,
        session_id: str | None = None,
    ) -> Job:
        """Create a job and schedule *runner* for it on the running loop."""
        if session_id is not None:
            current = self._jobs.get(self._by_session.get(session_id, ""))
            if current is not None and not current.status.is_terminal:
                raise JobConflictError(f"Job {current.job_id} is already running for this session")

        job = Job(uuid.uuid4().hex, folder, session_id=session_id)
        self._jobs[job.job_id] = job
        if session_id is not None:
            self._by_session[session_id] = job.job_id
        job.task = asyncio.create_task(run_job(job, runner), name=f"job-{job.job_id}")
        logger.info("job_started", job_id=job.job_id, folder=folder)
        return job

    async def release(self, job_id: str) -> bool:
        """Forget a job and delete its working-store namespace."""
        job = self._jobs.pop(job_id, None)
        if job is None:
            return False
        if job.session_id is not None and self._by_session.get(job.session_id) == job_id:
            del self._by_session[job.session_id]

        if job.task is not None and not job.task.done():
            job.request_cancel()
            job.task.cancel()
            try:
                await job.task
            except asyncio.CancelledError:
                pass
        if job.result is not None:
            await job.result.release()
        else:
            await self._store.delete(job_id)
        logger.info("job_released", job_id=job_id)
        return True

    async def sweep(self) -> list[str]:
        """Release idle finished jobs, then sweep orphaned store namespaces."""
        now = time.monotonic()
        for job in self._jobs.values():
            # An archive download in progress counts as activity.
            if job.result is not None and job.result.active_streams:
                job.last_activity = now
        expired = [
            job.job_id
            for job in self._jobs.values()
            if job.status.is_terminal and now - job.last_activity > self._idle_ttl
        ]
        for job_id in expired:
            await self.release(job_id)
        await self._store.sweep_expired(self._idle_ttl, keep=set(self._jobs))
        return expired

    async def shutdown(self) -> None:
        for job_id in list(self._jobs):
            await self.release(job_id)
