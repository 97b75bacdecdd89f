"""Extraction pipeline: connect → scan → batch fetch/parse → persist → archive.

One :class:`ExtractionPipeline` run harvests one folder over its own IMAP
session.  Everything the run needs travels in a :class:`RunContext`; nothing
is kept in module-level state.
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator, Callable, Sequence
from dataclasses import dataclass, field
from enum import Enum

import structlog

from .archive import ArchiveShard, build_summary, plan_shards, sanitize_folder_name, stream_archive
from .classifier import DocumentType, classify
from .config import ImapConfig, PipelineConfig
from .errors import RunCancelled, StorageError
from .imap_client import AsyncImapClient
from .jobs import Job
from .models import (
    NO_STORAGE_REF,
    ExtractionRecord,
    JobStatus,
    ProgressEvent,
    ProgressEventKind,
    StoredDocument,
)
from .parser import ParsedAttachment, ParsedEmail
from .storage import SUMMARY_FILENAME, UniqueNamer, WorkingStore

logger = structlog.get_logger()

ClientFactory = Callable[[ImapConfig, PipelineConfig], AsyncImapClient]


class PipelineStage(str, Enum):
    IDLE = "idle"
    CONNECTING = "connecting"
    SCANNING = "scanning"
    BATCH_PROCESSING = "batch-processing"
    FINALIZING = "finalizing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


@dataclass
class RunContext:
    """Everything one run owns: credentials, tuning, store, and its job."""

    job: Job
    imap: ImapConfig
    folder: str
    store: WorkingStore
    config: PipelineConfig = field(default_factory=PipelineConfig)

    @property
    def run_id(self) -> str:
        return self.job.job_id


@dataclass
class ExtractionResult:
    """Outcome of a completed run.  Owns the run's working-store namespace."""

    run_id: str
    folder: str
    store: WorkingStore
    total_messages: int = 0
    total_pdfs: int = 0
    total_docx: int = 0
    records: list[ExtractionRecord] = field(default_factory=list)
    shards: list[ArchiveShard] = field(default_factory=list)
    summary_key: str | None = None
    released: bool = False
    active_streams: int = 0

    @property
    def archive_name(self) -> str | None:
        if not self.shards:
            return None
        if len(self.shards) == 1:
            return self.shards[0].filename
        return f"{sanitize_folder_name(self.folder)}.zip"

    def shard(self, part: int = 1) -> ArchiveShard:
        for shard in self.shards:
            if shard.part == part:
                return shard
        raise LookupError(f"Archive part {part} does not exist")

    def stream(self, part: int = 1) -> AsyncIterator[bytes]:
        """Stream the ZIP bytes of archive *part* from the working store."""
        if self.released:
            raise LookupError("Result has been released")
        return self._tracked(self.shard(part))

    async def _tracked(self, shard: ArchiveShard) -> AsyncIterator[bytes]:
        self.active_streams += 1
        try:
            async for chunk in stream_archive(shard, self.store, self.summary_key):
                yield chunk
        finally:
            self.active_streams -= 1

    async def release(self) -> None:
        """Delete the run's working-store namespace.  Idempotent."""
        if self.released:
            return
        self.released = True
        await self.store.delete(self.run_id)


def default_client_factory(imap: ImapConfig, config: PipelineConfig) -> AsyncImapClient:
    return AsyncImapClient(imap, scan_batch_size=config.scan_batch_size)


def _batches(uids: Sequence[str], size: int) -> list[list[str]]:
    return [list(uids[i : i + size]) for i in range(0, len(uids), size)]


def _attachment_name(message: ParsedEmail, attachment: ParsedAttachment, doc_type: DocumentType) -> str:
    """Declared filename, with the type's extension forced on."""
    name = (attachment.filename or "").strip() or f"attachment_{message.uid}"
    lowered = name.lower()
    if doc_type == DocumentType.PDF and not lowered.endswith(".pdf"):
        name += DocumentType.PDF.default_extension
    elif doc_type == DocumentType.DOCX and not lowered.endswith((".docx", ".doc")):
        name += DocumentType.DOCX.default_extension
    return name


class ExtractionPipeline:
    """Runs one extraction from connect to archive plan.

    The run's working-store namespace is deleted on every exit path except
    success, where ownership moves to the returned :class:`ExtractionResult`.
    """

    def __init__(self, client_factory: ClientFactory = default_client_factory) -> None:
        self._client_factory = client_factory
        self.stage = PipelineStage.IDLE

    async def run(self, ctx: RunContext) -> ExtractionResult:
        client = self._client_factory(ctx.imap, ctx.config)
        succeeded = False
        try:
            result = await self._run(ctx, client)
            succeeded = True
            self.stage = PipelineStage.COMPLETED
            return result
        except RunCancelled:
            self.stage = PipelineStage.CANCELLED
            logger.info("run_cancelled", folder=ctx.folder)
            raise
        except BaseException:
            self.stage = PipelineStage.FAILED
            raise
        finally:
            await client.disconnect()
            if not succeeded:
                await ctx.store.delete(ctx.run_id)

    @staticmethod
    def _check_cancel(job: Job, reason: str) -> None:
        if job.cancel_requested:
            raise RunCancelled(reason)

    async def _emit(self, ctx: RunContext, message: str, kind=ProgressEventKind.MESSAGE_SCAN_UPDATE, **extra) -> None:
        await ctx.job.emit(ProgressEvent(kind=kind, message=message, **extra))

    async def _run(self, ctx: RunContext, client: AsyncImapClient) -> ExtractionResult:
        job = ctx.job

        self.stage = PipelineStage.CONNECTING
        await self._emit(ctx, f"Connecting to {ctx.imap.host}...")
        await client.connect()
        await self._emit(ctx, f'Connected! Opening folder "{ctx.folder}"...')
        await client.open_box(ctx.folder)

        self.stage = PipelineStage.SCANNING
        uids = await client.search_all()
        await job.update(total_messages=len(uids))
        logger.info("folder_searched", folder=ctx.folder, messages=len(uids))
        await self._emit(ctx, f"Found {len(uids)} emails in folder", current=0, total=len(uids))
        if not uids:
            self._check_cancel(job, "Cancelled before scanning")
            return ExtractionResult(run_id=ctx.run_id, folder=ctx.folder, store=ctx.store)

        await self._emit(ctx, "Scanning for emails with attachments...")
        flags = await client.scan_for_attachments(uids)
        candidates = [uid for uid in uids if flags.get(uid)]
        batches = _batches(candidates, ctx.config.fetch_batch_size)
        await job.update(messages_with_attachments=len(candidates), batch_count=len(batches))
        await self._emit(
            ctx,
            f"Found {len(candidates)} emails with attachments out of {len(uids)} total",
            current=0,
            total=len(candidates),
        )
        if not candidates:
            self._check_cancel(job, "Cancelled before batch processing")
            return ExtractionResult(
                run_id=ctx.run_id, folder=ctx.folder, store=ctx.store, total_messages=len(uids)
            )

        self.stage = PipelineStage.BATCH_PROCESSING
        namer = UniqueNamer()
        records: list[ExtractionRecord] = []
        total_pdfs = total_docx = 0
        done = 0
        for index, batch in enumerate(batches, start=1):
            self._check_cancel(job, f"Cancelled before batch {index}/{len(batches)}")
            if index == 1:
                await job.update(status=JobStatus.PROCESSING)

            await self._emit(
                ctx,
                f"Processing batch {index}/{len(batches)} ({done + len(batch)}/{len(candidates)} emails)...",
                current=done,
                total=len(candidates),
            )
            parsed = await client.fetch_full(batch)
            batch_records = await self._harvest_batch(ctx, parsed, namer, current=done, total=len(candidates))
            records.extend(batch_records)
            done += len(batch)

            pdfs = sum(1 for r in batch_records if r.document_type == DocumentType.PDF)
            docx = sum(1 for r in batch_records if r.document_type == DocumentType.DOCX)
            total_pdfs += pdfs
            total_docx += docx
            await job.increment(
                processed_batches=1,
                processed_messages=len(parsed),
                skipped_messages=len(batch) - len(parsed),
                total_pdfs=pdfs,
                total_docx=docx,
            )
            logger.info(
                "batch_complete",
                batch=index,
                batches=len(batches),
                messages=len(parsed),
                records=len(batch_records),
                pdfs=pdfs,
                docx=docx,
            )
            await self._emit(
                ctx,
                f"Batch {index}/{len(batches)} complete",
                current=done,
                total=len(candidates),
            )

        await client.disconnect()
        self._check_cancel(job, "Cancelled before archive assembly")

        self.stage = PipelineStage.FINALIZING
        return await self._finalize(ctx, records, len(uids), total_pdfs, total_docx)

    async def _harvest_batch(
        self,
        ctx: RunContext,
        messages: list[ParsedEmail],
        namer: UniqueNamer,
        *,
        current: int,
        total: int,
    ) -> list[ExtractionRecord]:
        """Classify, persist, and record one batch of parsed messages.

        Names are allocated in submission order before any write starts, so
        disambiguation does not depend on write completion order.
        """
        planned: list[tuple[ParsedEmail, list[tuple[ParsedAttachment, DocumentType, str]]]] = []
        for message in messages:
            matches = []
            for attachment in message.attachments:
                doc_type = classify(attachment.filename, attachment.content_type)
                if doc_type is None:
                    continue
                name = namer.allocate(_attachment_name(message, attachment, doc_type))
                matches.append((attachment, doc_type, name))
            planned.append((message, matches))

        stored: dict[tuple[int, int], StoredDocument] = {}
        async with asyncio.TaskGroup() as tg:
            for m_index, (_, matches) in enumerate(planned):
                for a_index, (attachment, doc_type, name) in enumerate(matches):
                    tg.create_task(
                        self._store_document(ctx, (m_index, a_index), attachment, doc_type, name, stored)
                    )

        records: list[ExtractionRecord] = []
        for m_index, (message, matches) in enumerate(planned):
            documents = [stored[(m_index, a_index)] for a_index in range(len(matches))]
            for document in documents or [None]:
                records.append(
                    ExtractionRecord(
                        uid=message.uid,
                        sender_name=message.sender_name,
                        sender_email=message.sender_email,
                        subject=message.subject,
                        date=message.date_display,
                        body=message.body_text if ctx.config.include_body else "",
                        document=document,
                    )
                )
            for document in documents:
                await self._emit(
                    ctx,
                    f"Found {document.document_type.value}: {document.filename}",
                    kind=ProgressEventKind.ATTACHMENT_FOUND,
                    current=current,
                    total=total,
                    filename=document.filename,
                    document_type=document.document_type,
                )
        return records

    async def _store_document(
        self,
        ctx: RunContext,
        slot: tuple[int, int],
        attachment: ParsedAttachment,
        doc_type: DocumentType,
        name: str,
        out: dict[tuple[int, int], StoredDocument],
    ) -> None:
        try:
            ref = await ctx.store.put(ctx.run_id, name, attachment.payload)
        except StorageError as exc:
            logger.warning("attachment_write_failed", filename=name, error=str(exc))
            ref = NO_STORAGE_REF
        out[slot] = StoredDocument(
            filename=name,
            document_type=doc_type,
            storage_ref=ref,
            size_bytes=len(attachment.payload),
        )

    async def _finalize(
        self,
        ctx: RunContext,
        records: list[ExtractionRecord],
        total_messages: int,
        total_pdfs: int,
        total_docx: int,
    ) -> ExtractionResult:
        await self._emit(ctx, "Generating Excel summary...", kind=ProgressEventKind.SUMMARY_BUILDING)
        summary = await asyncio.to_thread(
            build_summary,
            records,
            include_body=ctx.config.include_body,
            max_body_chars=ctx.config.max_body_chars,
        )
        summary_key = await ctx.store.put(ctx.run_id, SUMMARY_FILENAME, summary)
        await self._emit(ctx, "Excel summary created!", kind=ProgressEventKind.SUMMARY_BUILDING)

        shards = plan_shards(records, ctx.folder, ctx.config.shard_size)
        stored = sum(len(shard.documents) for shard in shards)
        await self._emit(
            ctx,
            f"Archive ready: {stored} documents in {len(shards)} part(s)",
            kind=ProgressEventKind.ARCHIVE_BUILDING,
            current=stored,
            total=stored,
        )
        logger.info("run_finalized", records=len(records), documents=stored, shards=len(shards))
        return ExtractionResult(
            run_id=ctx.run_id,
            folder=ctx.folder,
            store=ctx.store,
            total_messages=total_messages,
            total_pdfs=total_pdfs,
            total_docx=total_docx,
            records=records,
            shards=shards,
            summary_key=summary_key,
        )
