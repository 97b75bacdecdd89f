"""FastAPI application factory."""

from __future__ import annotations

import asyncio
import contextlib
from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse

from mail_harvester.config import ServiceConfig
from mail_harvester.errors import HarvestError
from mail_harvester.jobs import JobRegistry
from mail_harvester.pipeline import default_client_factory
from mail_harvester.schemas import ErrorOut
from mail_harvester.storage import create_store

logger = structlog.get_logger()

_ERROR_STATUS = {
    "connection": status.HTTP_502_BAD_GATEWAY,
    "protocol": status.HTTP_502_BAD_GATEWAY,
    "folder_not_found": status.HTTP_404_NOT_FOUND,
    "provider": status.HTTP_400_BAD_REQUEST,
    "conflict": status.HTTP_409_CONFLICT,
}


async def _sweep_loop(registry: JobRegistry, interval: float) -> None:
    while True:
        await asyncio.sleep(interval)
        try:
            expired = await registry.sweep()
        except Exception:
            logger.exception("sweep_failed")
            continue
        if expired:
            logger.info("jobs_expired", count=len(expired))


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup: working store, job registry, sweep task. Shutdown: reverse."""
    settings: ServiceConfig = app.state.settings
    store = create_store(settings.storage, settings.retry)
    await store.start()
    registry = JobRegistry(store, idle_ttl_seconds=settings.storage.idle_ttl_seconds)
    app.state.store = store
    app.state.registry = registry
    sweeper = asyncio.create_task(_sweep_loop(registry, settings.sweep_interval_seconds))
    logger.info("service_started", backend=settings.storage.backend.value)
    yield
    sweeper.cancel()
    with contextlib.suppress(asyncio.CancelledError):
        await sweeper
    await registry.shutdown()
    await store.stop()
    logger.info("shutdown_complete")


async def _harvest_error_handler(request: Request, exc: HarvestError) -> JSONResponse:
    code = _ERROR_STATUS.get(exc.kind, status.HTTP_500_INTERNAL_SERVER_ERROR)
    logger.warning("request_failed", path=request.url.path, kind=exc.kind, error=exc.message)
    body = ErrorOut(kind=exc.kind, detail=exc.message)
    return JSONResponse(status_code=code, content=body.model_dump())


def create_app(settings: ServiceConfig | None = None) -> FastAPI:
    """Build and return the FastAPI application."""
    if settings is None:
        settings = ServiceConfig()

    app = FastAPI(
        title="Mail Harvester",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.client_factory = default_client_factory
    app.add_exception_handler(HarvestError, _harvest_error_handler)

    from mail_harvester.routers.jobs import router as jobs_router
    from mail_harvester.routers.mailbox import router as mailbox_router

    app.include_router(mailbox_router)
    app.include_router(jobs_router)

    @app.get("/health")
    async def health():
        return {"status": "ok", "service": "mail-harvester"}

    return app
