"""Request / response schemas for the HTTP API."""

from __future__ import annotations

from pydantic import BaseModel, Field, SecretStr

from .config import ImapConfig, PipelineConfig
from .errors import ProviderUnavailableError
from .models import FolderInfo, JobStatus
from .providers import get_provider


class MailboxCredentials(BaseModel):
    """Mailbox login.  Either ``provider`` or ``host`` must be given."""

    provider: str | None = Field(default=None, description="Provider preset id")
    host: str | None = Field(default=None, description="IMAP hostname")
    port: int = Field(default=993, description="IMAP port")
    use_ssl: bool = Field(default=True, description="Connect over TLS")
    username: str
    password: SecretStr

    def to_imap_config(self) -> ImapConfig:
        host, port, use_ssl = self.host, self.port, self.use_ssl
        if self.provider:
            preset = get_provider(self.provider)
            host, port, use_ssl = preset.host, preset.port, preset.use_ssl
        if not host:
            raise ProviderUnavailableError("Either a provider or an IMAP host is required")
        return ImapConfig(
            host=host,
            port=port,
            use_ssl=use_ssl,
            username=self.username,
            password=self.password,
        )


class JobCreate(MailboxCredentials):
    folder: str = Field(description="Folder to harvest, as returned by the folders endpoint")
    scan_batch_size: int | None = Field(default=None, ge=1)
    fetch_batch_size: int | None = Field(default=None, ge=1)
    shard_size: int | None = Field(default=None, ge=1)
    include_body: bool | None = None

    def pipeline_config(self, defaults: PipelineConfig) -> PipelineConfig:
        overrides = {
            name: value
            for name, value in {
                "scan_batch_size": self.scan_batch_size,
                "fetch_batch_size": self.fetch_batch_size,
                "shard_size": self.shard_size,
                "include_body": self.include_body,
            }.items()
            if value is not None
        }
        return defaults.model_copy(update=overrides)


class JobCreated(BaseModel):
    job_id: str
    status: JobStatus


class CancelOut(BaseModel):
    job_id: str
    cancel_requested: bool


class FolderList(BaseModel):
    folders: list[FolderInfo]


class ErrorOut(BaseModel):
    kind: str
    detail: str
