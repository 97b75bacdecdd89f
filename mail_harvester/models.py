"""Data models shared by the pipeline, the job channel, and the API."""

from __future__ import annotations

from datetime import UTC, datetime
from enum import Enum

from pydantic import BaseModel, Field

from .classifier import DocumentType

NO_DOCUMENT_FILENAME = "No document found"
NO_STORAGE_REF = ""


class FolderInfo(BaseModel):
    """A selectable mailbox folder."""

    name: str = Field(description="Server-side mailbox name, usable with SELECT")
    display_name: str = Field(description="Fully qualified name in parent.child notation")


class StoredDocument(BaseModel):
    """One classified attachment and where its bytes were written."""

    filename: str = Field(description="Disambiguated filename used inside the archive")
    document_type: DocumentType = Field(description="PDF or DOCX")
    storage_ref: str = Field(
        default=NO_STORAGE_REF,
        description="Working-store reference; empty when the write failed",
    )
    size_bytes: int = Field(default=0, description="Attachment size in bytes")

    @property
    def persisted(self) -> bool:
        return bool(self.storage_ref)


class ExtractionRecord(BaseModel):
    """Summary row for one stored document, or for a message that had none."""

    uid: str = Field(description="IMAP UID of the message")
    sender_name: str = Field(description="Display name of the sender")
    sender_email: str = Field(description="Sender email address")
    subject: str = Field(description="Message subject")
    date: str = Field(description="Message date (UTC, 'YYYY-MM-DD HH:MM:SS') or 'Unknown'")
    body: str = Field(default="", description="Plain-text message body")
    document: StoredDocument | None = Field(
        default=None,
        description="The document this row describes; None for the message's N/A row",
    )

    @property
    def filename(self) -> str:
        return self.document.filename if self.document else NO_DOCUMENT_FILENAME

    @property
    def storage_ref(self) -> str:
        return self.document.storage_ref if self.document else NO_STORAGE_REF

    @property
    def document_type(self) -> DocumentType:
        return self.document.document_type if self.document else DocumentType.NA


class JobStatus(str, Enum):
    """Lifecycle of one extraction job."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED)


class JobState(BaseModel):
    """Progress counters for a job.  Mutated only through :class:`~.jobs.Job`."""

    job_id: str = Field(description="Run identifier")
    folder: str = Field(description="Folder being harvested")
    status: JobStatus = Field(default=JobStatus.PENDING, description="Current status")
    total_messages: int = Field(default=0, description="Messages in the folder")
    messages_with_attachments: int = Field(
        default=0,
        description="Messages flagged by the structural scan",
    )
    batch_count: int = Field(default=0, description="Fetch batches planned")
    processed_batches: int = Field(default=0, description="Fetch batches completed")
    processed_messages: int = Field(default=0, description="Messages fetched and recorded")
    skipped_messages: int = Field(default=0, description="Messages dropped by fetch/parse failures")
    total_pdfs: int = Field(default=0, description="PDF attachments matched")
    total_docx: int = Field(default=0, description="DOCX attachments matched")
    error: str | None = Field(default=None, description="Failure message, if failed")
    error_kind: str | None = Field(default=None, description="Failure kind, if failed")
    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    updated_at: datetime = Field(default_factory=lambda: datetime.now(UTC))


class ProgressEventKind(str, Enum):
    """Kinds of events on the progress stream."""

    MESSAGE_SCAN_UPDATE = "message-scan-update"
    ATTACHMENT_FOUND = "attachment-found"
    SUMMARY_BUILDING = "summary-building"
    ARCHIVE_BUILDING = "archive-building"
    RUN_COMPLETE = "run-complete"
    RUN_ERROR = "run-error"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (
            ProgressEventKind.RUN_COMPLETE,
            ProgressEventKind.RUN_ERROR,
            ProgressEventKind.CANCELLED,
        )


class ProgressEvent(BaseModel):
    """One entry on a job's progress stream."""

    kind: ProgressEventKind = Field(description="Event kind")
    message: str = Field(description="Human-readable progress message")
    current: int | None = Field(default=None, description="Current counter value")
    total: int | None = Field(default=None, description="Counter upper bound")
    filename: str | None = Field(default=None, description="Attachment filename")
    document_type: DocumentType | None = Field(default=None, description="Attachment type")
    error_kind: str | None = Field(default=None, description="Error kind for run-error")
    total_messages: int | None = Field(default=None, description="Set on run-complete")
    total_pdfs: int | None = Field(default=None, description="Set on run-complete")
    total_docx: int | None = Field(default=None, description="Set on run-complete")
    archive_name: str | None = Field(default=None, description="Suggested archive filename")
    shard_count: int | None = Field(default=None, description="Archive parts available")
    emitted_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
