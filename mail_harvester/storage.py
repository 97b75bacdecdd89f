"""Working store for harvested attachment bytes.

Each run owns one namespace (its run id).  Attachments are written under
``<run_id>/<name>`` keys, read back while the archive is streamed, and the
whole namespace is deleted as a unit when the run's result is released.
Blocking filesystem and boto3 calls are wrapped with ``asyncio.to_thread()``.
"""

from __future__ import annotations

import abc
import asyncio
import re
import shutil
import time
from pathlib import Path

import boto3
import structlog
from botocore.exceptions import BotoCoreError, ClientError

from .config import RetryConfig, StorageBackend, StorageConfig
from .errors import StorageError
from .retry import with_retry

logger = structlog.get_logger()

SUMMARY_FILENAME = "email_documents_summary.xlsx"

_UNSAFE_CHARS_RE = re.compile(r'[<>:"/\\|?*\x00-\x1f]')
_MAX_FILENAME_CHARS = 200


def sanitize_filename(name: str) -> str:
    """Replace characters that are unsafe in paths, keys, and archive entries."""
    cleaned = _UNSAFE_CHARS_RE.sub("_", name).strip().lstrip(".")
    if not cleaned:
        return "attachment"
    if len(cleaned) > _MAX_FILENAME_CHARS:
        stem, dot, ext = cleaned.rpartition(".")
        if dot and len(ext) <= 10:
            cleaned = stem[: _MAX_FILENAME_CHARS - len(ext) - 1] + "." + ext
        else:
            cleaned = cleaned[:_MAX_FILENAME_CHARS]
    return cleaned


class UniqueNamer:
    """Hands out collision-free filenames within one run.

    A repeated name gets a counter before its extension: ``cv.pdf``,
    ``cv_1.pdf``, ``cv_2.pdf``.  Comparison is case-insensitive so the names
    also stay distinct on case-insensitive filesystems.
    """

    def __init__(self, reserved: tuple[str, ...] = (SUMMARY_FILENAME,)) -> None:
        self._taken: set[str] = {name.lower() for name in reserved}

    def allocate(self, filename: str) -> str:
        name = sanitize_filename(filename)
        stem, dot, ext = name.rpartition(".")
        if not dot or not stem:
            stem, ext = name, ""
        suffix = f".{ext}" if ext else ""

        candidate = name
        counter = 1
        while candidate.lower() in self._taken:
            candidate = f"{stem}_{counter}{suffix}"
            counter += 1
        self._taken.add(candidate.lower())
        return candidate


def _split_key(key: str) -> tuple[str, str]:
    run_id, sep, name = key.partition("/")
    if not sep or not run_id or not name:
        raise StorageError(f"Invalid storage key: {key!r}")
    return run_id, name


class WorkingStore(abc.ABC):
    """Key-value store for loose attachment files, namespaced by run id."""

    async def start(self) -> None:
        """Acquire clients / create roots.  Default: nothing to do."""

    async def stop(self) -> None:
        """Release clients.  Default: nothing to do."""

    @abc.abstractmethod
    async def put(self, run_id: str, name: str, data: bytes) -> str:
        """Store *data* and return its storage key."""

    @abc.abstractmethod
    async def get(self, key: str) -> bytes:
        """Return the bytes stored under *key*."""

    @abc.abstractmethod
    async def delete(self, run_id: str) -> None:
        """Delete the whole namespace of *run_id*.  Logs failures, never raises."""

    @abc.abstractmethod
    async def sweep_expired(self, max_idle_seconds: float, keep: set[str]) -> list[str]:
        """Delete namespaces idle for longer than *max_idle_seconds*.

        Run ids in *keep* are left alone.  Returns the run ids removed.
        """


class LocalWorkingStore(WorkingStore):
    """Working store on the local filesystem: ``<root_dir>/<run_id>/<name>``."""

    def __init__(self, root_dir: Path, retry: RetryConfig | None = None) -> None:
        self._root = Path(root_dir)
        self._retry = with_retry(retry or RetryConfig(), retryable_exceptions=(OSError,))

    @property
    def root(self) -> Path:
        return self._root

    async def start(self) -> None:
        await asyncio.to_thread(self._root.mkdir, parents=True, exist_ok=True)
        logger.info("local_store_started", root=str(self._root))

    def _run_dir(self, run_id: str) -> Path:
        if not run_id or "/" in run_id or run_id in (".", ".."):
            raise StorageError(f"Invalid run id: {run_id!r}")
        return self._root / run_id

    async def put(self, run_id: str, name: str, data: bytes) -> str:
        path = self._run_dir(run_id) / sanitize_filename(name)

        def _write() -> None:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_bytes(data)

        try:
            await self._retry(asyncio.to_thread)(_write)
        except OSError as exc:
            raise StorageError(f"Failed to write {path.name}: {exc}") from exc
        logger.debug("attachment_stored", run_id=run_id, name=path.name, size=len(data))
        return f"{run_id}/{path.name}"

    async def get(self, key: str) -> bytes:
        run_id, name = _split_key(key)
        path = self._run_dir(run_id) / name
        if not path.is_file():
            raise StorageError(f"Missing stored file: {key}")
        try:
            return await self._retry(asyncio.to_thread)(path.read_bytes)
        except OSError as exc:
            raise StorageError(f"Failed to read {key}: {exc}") from exc

    async def delete(self, run_id: str) -> None:
        try:
            run_dir = self._run_dir(run_id)
            await asyncio.to_thread(shutil.rmtree, run_dir, ignore_errors=False)
            logger.info("run_storage_deleted", run_id=run_id)
        except FileNotFoundError:
            pass
        except (OSError, StorageError) as exc:
            logger.warning("run_storage_delete_failed", run_id=run_id, error=str(exc))

    async def sweep_expired(self, max_idle_seconds: float, keep: set[str]) -> list[str]:
        now = time.time()

        def _expired() -> list[str]:
            if not self._root.is_dir():
                return []
            stale = []
            for entry in self._root.iterdir():
                if not entry.is_dir() or entry.name in keep:
                    continue
                if now - entry.stat().st_mtime > max_idle_seconds:
                    stale.append(entry.name)
            return stale

        try:
            stale = await asyncio.to_thread(_expired)
        except OSError as exc:
            logger.warning("store_sweep_failed", error=str(exc))
            return []
        for run_id in stale:
            await self.delete(run_id)
        if stale:
            logger.info("store_swept", removed=len(stale))
        return stale


class S3WorkingStore(WorkingStore):
    """Working store in an S3 bucket: ``s3://<bucket>/<prefix>/<run_id>/<name>``.

    Lets the archive be streamed by any service instance, not only the one
    that ran the extraction.
    """

    def __init__(self, config: StorageConfig, retry: RetryConfig | None = None) -> None:
        if not config.bucket:
            raise StorageError("STORAGE_BUCKET is required for the s3 backend")
        self._config = config
        self._client = None  # type: ignore[assignment]
        self._retry = with_retry(retry or RetryConfig(), retryable_exceptions=(BotoCoreError,))

    async def start(self) -> None:
        """Create the boto3 S3 client."""
        kwargs: dict = {"region_name": self._config.region}
        if self._config.endpoint_url:
            kwargs["endpoint_url"] = self._config.endpoint_url
        self._client = await asyncio.to_thread(boto3.client, "s3", **kwargs)
        logger.info("s3_store_started", bucket=self._config.bucket)

    async def stop(self) -> None:
        """Clean up the boto3 client."""
        self._client = None
        logger.info("s3_store_stopped")

    def _key(self, run_id: str, name: str) -> str:
        return f"{self._config.prefix}/{run_id}/{name}"

    async def put(self, run_id: str, name: str, data: bytes) -> str:
        assert self._client is not None, "S3 client not started"
        safe_name = sanitize_filename(name)
        try:
            await self._retry(asyncio.to_thread)(
                self._client.put_object,
                Bucket=self._config.bucket,
                Key=self._key(run_id, safe_name),
                Body=data,
            )
        except (BotoCoreError, ClientError) as exc:
            raise StorageError(f"Failed to upload {safe_name}: {exc}") from exc
        logger.debug("attachment_uploaded", run_id=run_id, name=safe_name, size=len(data))
        return f"{run_id}/{safe_name}"

    async def get(self, key: str) -> bytes:
        assert self._client is not None, "S3 client not started"
        run_id, name = _split_key(key)

        def _download() -> bytes:
            response = self._client.get_object(
                Bucket=self._config.bucket,
                Key=self._key(run_id, name),
            )
            return response["Body"].read()

        try:
            return await self._retry(asyncio.to_thread)(_download)
        except (BotoCoreError, ClientError) as exc:
            raise StorageError(f"Failed to download {key}: {exc}") from exc

    def _list_run_objects(self, prefix: str) -> list[dict]:
        paginator = self._client.get_paginator("list_objects_v2")
        objects: list[dict] = []
        for page in paginator.paginate(Bucket=self._config.bucket, Prefix=prefix):
            objects.extend(page.get("Contents", []))
        return objects

    async def delete(self, run_id: str) -> None:
        assert self._client is not None, "S3 client not started"

        def _delete() -> int:
            objects = self._list_run_objects(f"{self._config.prefix}/{run_id}/")
            for i in range(0, len(objects), 1000):
                batch = objects[i : i + 1000]
                self._client.delete_objects(
                    Bucket=self._config.bucket,
                    Delete={"Objects": [{"Key": obj["Key"]} for obj in batch]},
                )
            return len(objects)

        try:
            removed = await asyncio.to_thread(_delete)
            logger.info("run_storage_deleted", run_id=run_id, objects=removed)
        except (BotoCoreError, ClientError) as exc:
            logger.warning("run_storage_delete_failed", run_id=run_id, error=str(exc))

    async def sweep_expired(self, max_idle_seconds: float, keep: set[str]) -> list[str]:
        assert self._client is not None, "S3 client not started"
        now = time.time()

        def _expired() -> list[str]:
            latest: dict[str, float] = {}
            for obj in self._list_run_objects(f"{self._config.prefix}/"):
                run_id = obj["Key"][len(self._config.prefix) + 1 :].split("/", 1)[0]
                modified = obj["LastModified"].timestamp()
                latest[run_id] = max(latest.get(run_id, 0.0), modified)
            return [
                run_id
                for run_id, modified in latest.items()
                if run_id not in keep and now - modified > max_idle_seconds
            ]

        try:
            stale = await asyncio.to_thread(_expired)
        except (BotoCoreError, ClientError) as exc:
            logger.warning("store_sweep_failed", error=str(exc))
            return []
        for run_id in stale:
            await self.delete(run_id)
        return stale


def create_store(config: StorageConfig, retry: RetryConfig | None = None) -> WorkingStore:
    """Build the working store selected by ``STORAGE_BACKEND``."""
    if config.backend == StorageBackend.S3:
        return S3WorkingStore(config, retry)
    return LocalWorkingStore(config.root_dir, retry)
