"""Extraction job endpoints: start, observe, cancel, download, release."""

from __future__ import annotations

from typing import Annotated

from fastapi import APIRouter, Depends, Header, HTTPException, Query, Response, status
from fastapi.responses import StreamingResponse

from mail_harvester.archive import ARCHIVE_MEDIA_TYPE
from mail_harvester.config import ServiceConfig
from mail_harvester.deps import get_client_factory, get_registry, get_settings, get_store
from mail_harvester.jobs import Job, JobRegistry
from mail_harvester.models import JobState, JobStatus
from mail_harvester.pipeline import ClientFactory, ExtractionPipeline, RunContext
from mail_harvester.schemas import CancelOut, JobCreate, JobCreated
from mail_harvester.storage import WorkingStore

router = APIRouter(prefix="/api/v1/jobs", tags=["jobs"])


def _get_job(registry: JobRegistry, job_id: str) -> Job:
    job = registry.get(job_id)
    if job is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Job not found")
    return job


@router.post("", response_model=JobCreated, status_code=status.HTTP_202_ACCEPTED)
async def start_job(
    body: JobCreate,
    registry: Annotated[JobRegistry, Depends(get_registry)],
    store: Annotated[WorkingStore, Depends(get_store)],
    client_factory: Annotated[ClientFactory, Depends(get_client_factory)],
    settings: Annotated[ServiceConfig, Depends(get_settings)],
    x_session_id: Annotated[str | None, Header()] = None,
):
    imap = body.to_imap_config()
    pipeline_config = body.pipeline_config(settings.pipeline)

    async def runner(job: Job):
        ctx = RunContext(job=job, imap=imap, folder=body.folder, store=store, config=pipeline_config)
        return await ExtractionPipeline(client_factory).run(ctx)

    job = registry.start(body.folder, runner, session_id=x_session_id)
    return JobCreated(job_id=job.job_id, status=job.status)


@router.get("/{job_id}", response_model=JobState)
async def get_job(
    job_id: str,
    registry: Annotated[JobRegistry, Depends(get_registry)],
):
    return _get_job(registry, job_id).snapshot()


@router.get("/{job_id}/events")
async def stream_events(
    job_id: str,
    registry: Annotated[JobRegistry, Depends(get_registry)],
):
    job = _get_job(registry, job_id)

    async def _generate():
        async for event in job.events():
            yield f"data: {event.model_dump_json()}\n\n"

    return StreamingResponse(
        _generate(),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )


@router.post("/{job_id}/cancel", response_model=CancelOut, status_code=status.HTTP_202_ACCEPTED)
async def cancel_job(
    job_id: str,
    registry: Annotated[JobRegistry, Depends(get_registry)],
):
    job = _get_job(registry, job_id)
    if not job.request_cancel():
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=f"Job already {job.status.value}",
        )
    return CancelOut(job_id=job.job_id, cancel_requested=True)


@router.get("/{job_id}/archive")
async def download_archive(
    job_id: str,
    registry: Annotated[JobRegistry, Depends(get_registry)],
    part: int = Query(default=1, ge=1),
):
    job = _get_job(registry, job_id)
    if job.status != JobStatus.COMPLETED or job.result is None:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=f"Job is {job.status.value}, archive not available",
        )
    result = job.result
    if not result.shards:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="No files to download")
    try:
        shard = result.shard(part)
        chunks = result.stream(part)
    except LookupError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc

    return StreamingResponse(
        chunks,
        media_type=ARCHIVE_MEDIA_TYPE,
        headers={"Content-Disposition": f'attachment; filename="{shard.filename}"'},
    )


@router.delete("/{job_id}", status_code=status.HTTP_204_NO_CONTENT)
async def release_job(
    job_id: str,
    registry: Annotated[JobRegistry, Depends(get_registry)],
):
    if not await registry.release(job_id):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Job not found")
    return Response(status_code=status.HTTP_204_NO_CONTENT)
