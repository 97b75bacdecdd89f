"""Mail Harvester: bulk PDF/DOCX attachment extraction from IMAP folders."""

from .archive import build_summary, plan_shards, sanitize_folder_name, stream_archive
from .classifier import DocumentType, classify
from .config import ImapConfig, PipelineConfig, RetryConfig, ServiceConfig, StorageConfig
from .errors import (
    ArchiveBuildError,
    FolderNotFoundError,
    HarvestError,
    MailConnectionError,
    ProtocolError,
    RunCancelled,
    StorageError,
)
from .imap_client import AsyncImapClient
from .jobs import Job, JobRegistry
from .logging import setup_logging
from .models import ExtractionRecord, JobState, JobStatus, ProgressEvent, ProgressEventKind
from .parser import MimeParser, ParsedAttachment, ParsedEmail
from .pipeline import ExtractionPipeline, ExtractionResult, RunContext
from .storage import LocalWorkingStore, S3WorkingStore, WorkingStore, create_store

__all__ = [
    "ArchiveBuildError",
    "AsyncImapClient",
    "DocumentType",
    "ExtractionPipeline",
    "ExtractionRecord",
    "ExtractionResult",
    "FolderNotFoundError",
    "HarvestError",
    "ImapConfig",
    "Job",
    "JobRegistry",
    "JobState",
    "JobStatus",
    "LocalWorkingStore",
    "MailConnectionError",
    "MimeParser",
    "ParsedAttachment",
    "ParsedEmail",
    "PipelineConfig",
    "ProgressEvent",
    "ProgressEventKind",
    "ProtocolError",
    "RetryConfig",
    "RunCancelled",
    "RunContext",
    "S3WorkingStore",
    "ServiceConfig",
    "StorageConfig",
    "StorageError",
    "WorkingStore",
    "build_summary",
    "classify",
    "create_store",
    "plan_shards",
    "sanitize_folder_name",
    "setup_logging",
    "stream_archive",
]
