"""Entry point for the mail harvester package.

Usage::

    python -m mail_harvester serve                        # HTTP job API
    python -m mail_harvester extract <folder> <output-dir>  # one run, IMAP_* env credentials
"""

from __future__ import annotations

import asyncio
import sys
from pathlib import Path

_USAGE = "Usage: python -m mail_harvester <serve | extract <folder> <output-dir>>"


async def _extract(folder: str, output_dir: Path) -> int:
    from .config import ImapConfig, ServiceConfig
    from .jobs import Job, JobRegistry
    from .models import JobStatus
    from .pipeline import ExtractionPipeline, RunContext
    from .storage import create_store

    config = ServiceConfig()
    imap = ImapConfig()  # type: ignore[call-arg]
    store = create_store(config.storage, config.retry)
    await store.start()
    registry = JobRegistry(store, idle_ttl_seconds=config.storage.idle_ttl_seconds)

    async def runner(job: Job):
        ctx = RunContext(job=job, imap=imap, folder=folder, store=store, config=config.pipeline)
        return await ExtractionPipeline().run(ctx)

    try:
        job = registry.start(folder, runner)
        async for event in job.events():
            print(f"[{event.kind.value}] {event.message}", flush=True)

        if job.status != JobStatus.COMPLETED or job.result is None:
            return 1
        output_dir.mkdir(parents=True, exist_ok=True)
        for shard in job.result.shards:
            path = output_dir / shard.filename
            with path.open("wb") as fh:
                async for chunk in job.result.stream(shard.part):
                    fh.write(chunk)
            print(path, flush=True)
        return 0
    finally:
        await registry.shutdown()
        await store.stop()


def main() -> None:
    if len(sys.argv) < 2 or sys.argv[1] not in ("serve", "extract"):
        print(_USAGE, file=sys.stderr)
        sys.exit(1)

    from .config import ServiceConfig
    from .logging import setup_logging

    settings = ServiceConfig()
    setup_logging(json=settings.log_json, level=settings.log_level)

    if sys.argv[1] == "serve":
        import uvicorn

        uvicorn.run(
            "mail_harvester.app:create_app",
            factory=True,
            host=settings.host,
            port=settings.port,
            log_level=settings.log_level.lower(),
        )

    else:
        if len(sys.argv) != 4:
            print(_USAGE, file=sys.stderr)
            sys.exit(1)
        sys.exit(asyncio.run(_extract(sys.argv[2], Path(sys.argv[3]))))


if __name__ == "__main__":
    main()
