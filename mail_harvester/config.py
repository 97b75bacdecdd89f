"""Harvester configuration loaded from environment variables.

Uses pydantic-settings so every field can be overridden via env vars; the
service constructs :class:`ImapConfig` per request from submitted credentials.
"""

from __future__ import annotations

import tempfile
from enum import Enum
from pathlib import Path

from pydantic import Field, SecretStr
from pydantic_settings import BaseSettings


class ImapConfig(BaseSettings):
    """IMAP server connection settings for one extraction run."""

    model_config = {"env_prefix": "IMAP_"}

    host: str = Field(description="IMAP server hostname")
    port: int = Field(default=993, description="IMAP server port")
    use_ssl: bool = Field(default=True, description="Use SSL/TLS connection")
    username: str = Field(description="IMAP login username")
    password: SecretStr = Field(description="IMAP login password")
    socket_timeout_seconds: float = Field(
        default=30.0,
        description="Timeout applied to every socket operation on the connection",
    )
    connect_timeout_seconds: float = Field(
        default=35.0,
        description="Overall budget for connect + login",
    )


class PipelineConfig(BaseSettings):
    """Batch sizing and output options for the extraction pipeline."""

    model_config = {"env_prefix": "PIPELINE_"}

    scan_batch_size: int = Field(
        default=100,
        ge=1,
        description="UIDs per BODYSTRUCTURE round-trip during the attachment scan",
    )
    fetch_batch_size: int = Field(
        default=10,
        ge=1,
        description="Messages fetched and parsed concurrently per batch",
    )
    shard_size: int = Field(
        default=300,
        ge=1,
        description="Maximum attachments per archive shard",
    )
    include_body: bool = Field(
        default=True,
        description="Include the message body column in the summary workbook",
    )
    max_body_chars: int = Field(
        default=32767,
        description="Body text is truncated to this length (XLSX cell limit)",
    )


class StorageBackend(str, Enum):
    """Where loose attachment bytes live between extraction and download."""

    LOCAL = "local"
    S3 = "s3"


class StorageConfig(BaseSettings):
    """Working-store settings for harvested attachments."""

    model_config = {"env_prefix": "STORAGE_"}

    backend: StorageBackend = Field(
        default=StorageBackend.LOCAL,
        description="Working-store backend",
    )
    root_dir: Path = Field(
        default_factory=lambda: Path(tempfile.gettempdir()) / "mail-harvester",
        description="Root directory for the local backend",
    )
    bucket: str | None = Field(default=None, description="S3 bucket name (s3 backend)")
    prefix: str = Field(default="runs", description="S3 key prefix for run namespaces")
    region: str = Field(default="us-east-1", description="AWS region")
    endpoint_url: str | None = Field(
        default=None,
        description="Custom S3 endpoint URL (e.g. for MinIO)",
    )
    idle_ttl_seconds: float = Field(
        default=600.0,
        description="Run namespaces idle longer than this are swept",
    )


class RetryConfig(BaseSettings):
    """Retry / backoff settings for working-store I/O, driven by Tenacity."""

    model_config = {"env_prefix": "RETRY_"}

    max_attempts: int = Field(default=3, description="Maximum attempts per store operation")
    initial_wait_seconds: float = Field(
        default=0.5,
        description="Initial backoff wait in seconds",
    )
    max_wait_seconds: float = Field(
        default=5.0,
        description="Maximum backoff wait in seconds",
    )
    multiplier: float = Field(default=2.0, description="Exponential backoff multiplier")


class ServiceConfig(BaseSettings):
    """Root configuration for the harvester service and CLI.

    Nested configs are populated from their own env-var prefixes.
    """

    model_config = {"env_prefix": "HARVESTER_"}

    host: str = Field(default="0.0.0.0", description="Bind address")
    port: int = Field(default=8000, description="Bind port")
    log_level: str = Field(default="INFO", description="Log level")
    log_json: bool = Field(
        default=True,
        description="Use JSON log output (True for prod, False for dev)",
    )
    sweep_interval_seconds: float = Field(
        default=60.0,
        description="Seconds between idle job / working-store sweeps",
    )

    pipeline: PipelineConfig = Field(default_factory=PipelineConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    retry: RetryConfig = Field(default_factory=RetryConfig)
