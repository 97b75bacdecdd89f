"""Summary workbook and streamed ZIP assembly.

The archive is composed entry by entry into a small in-memory buffer that
is drained after every entry, so the caller can forward chunks as they are
produced and the finished archive never has to exist in memory at once.
"""

from __future__ import annotations

import asyncio
import io
import re
import zipfile
import zlib
from collections.abc import AsyncIterator, Sequence
from dataclasses import dataclass

import structlog
from openpyxl import Workbook
from openpyxl.cell.cell import ILLEGAL_CHARACTERS_RE
from openpyxl.styles import Font, PatternFill
from openpyxl.utils import get_column_letter

from .errors import ArchiveBuildError, StorageError
from .models import ExtractionRecord, StoredDocument
from .storage import SUMMARY_FILENAME, WorkingStore

logger = structlog.get_logger()

ARCHIVE_MEDIA_TYPE = "application/zip"

_SUMMARY_COLUMNS: list[tuple[str, int]] = [
    ("Sender Name", 30),
    ("Sender Email", 35),
    ("Subject", 50),
    ("Date", 20),
    ("Filename", 40),
    ("File Type", 12),
]
_BODY_COLUMN = ("Email Body", 60)
_HEADER_FILL = PatternFill(fill_type="solid", fgColor="FFD3D3D3")

_FOLDER_UNSAFE_RE = re.compile(r'[<>:"/\\|?*\s.]')
_REPEATED_UNDERSCORE_RE = re.compile(r"_+")


def sanitize_folder_name(folder: str) -> str:
    """Make a folder name safe for use in a download filename."""
    name = _FOLDER_UNSAFE_RE.sub("_", folder)
    name = _REPEATED_UNDERSCORE_RE.sub("_", name).strip("_")
    return name or "mailbox"


def _cell(value: str) -> str:
    return ILLEGAL_CHARACTERS_RE.sub("", value)


# ------------------------------------------------------------------
# Summary workbook
# ------------------------------------------------------------------


def build_summary(
    records: Sequence[ExtractionRecord],
    *,
    include_body: bool = True,
    max_body_chars: int = 32767,
) -> bytes:
    """Render one summary row per record, in record order, as XLSX bytes."""
    workbook = Workbook()
    sheet = workbook.active
    sheet.title = "Document Attachments"

    columns = list(_SUMMARY_COLUMNS)
    if include_body:
        columns.append(_BODY_COLUMN)

    sheet.append([title for title, _ in columns])
    for index, (_, width) in enumerate(columns, start=1):
        sheet.column_dimensions[get_column_letter(index)].width = width
        header = sheet.cell(row=1, column=index)
        header.font = Font(bold=True)
        header.fill = _HEADER_FILL

    for record in records:
        row = [
            record.sender_name,
            record.sender_email,
            record.subject,
            record.date,
            record.filename,
            record.document_type.value,
        ]
        if include_body:
            row.append(record.body[:max_body_chars])
        sheet.append([_cell(value) for value in row])

    buffer = io.BytesIO()
    workbook.save(buffer)
    return buffer.getvalue()


# ------------------------------------------------------------------
# Sharding
# ------------------------------------------------------------------


@dataclass(frozen=True)
class ArchiveShard:
    """One downloadable archive: a slice of the run's stored documents."""

    part: int
    filename: str
    documents: tuple[StoredDocument, ...]
    include_summary: bool


def plan_shards(
    records: Sequence[ExtractionRecord],
    folder: str,
    shard_size: int,
) -> list[ArchiveShard]:
    """Split persisted documents into shards of at most *shard_size*.

    The summary goes into the first shard only.  A run with no documents
    still gets one shard so the summary can be downloaded.
    """
    documents = [record.document for record in records if record.document and record.document.persisted]
    base = sanitize_folder_name(folder)
    slices = [
        tuple(documents[i : i + shard_size]) for i in range(0, len(documents), shard_size)
    ] or [()]

    if len(slices) == 1:
        return [ArchiveShard(part=1, filename=f"{base}.zip", documents=slices[0], include_summary=True)]
    return [
        ArchiveShard(
            part=index,
            filename=f"{base}-part-{index}.zip",
            documents=chunk,
            include_summary=index == 1,
        )
        for index, chunk in enumerate(slices, start=1)
    ]


# ------------------------------------------------------------------
# Streaming
# ------------------------------------------------------------------


class _DrainableBuffer(io.RawIOBase):
    """Write-only, non-seekable sink that hands out what was written so far."""

    def __init__(self) -> None:
        super().__init__()
        self._chunks: list[bytes] = []

    def writable(self) -> bool:
        return True

    def write(self, data) -> int:  # type: ignore[override]
        self._chunks.append(bytes(data))
        return len(data)

    def drain(self) -> bytes:
        data = b"".join(self._chunks)
        self._chunks.clear()
        return data


async def stream_archive(
    shard: ArchiveShard,
    store: WorkingStore,
    summary_key: str | None,
) -> AsyncIterator[bytes]:
    """Yield the ZIP bytes of *shard*, one flushed entry at a time.

    A document whose bytes cannot be read is skipped with a warning.  A
    failure to write or finalize the compression stream raises
    :class:`ArchiveBuildError`.
    """
    buffer = _DrainableBuffer()
    archive = zipfile.ZipFile(buffer, mode="w", compression=zipfile.ZIP_DEFLATED, compresslevel=9)
    written = 0

    entries: list[tuple[str, str]] = [(doc.filename, doc.storage_ref) for doc in shard.documents]
    if shard.include_summary and summary_key:
        entries.append((SUMMARY_FILENAME, summary_key))

    for name, key in entries:
        try:
            data = await store.get(key)
        except StorageError as exc:
            logger.warning("archive_entry_skipped", entry=name, error=str(exc))
            continue
        try:
            await asyncio.to_thread(archive.writestr, name, data)
        except (OSError, ValueError, zlib.error) as exc:
            raise ArchiveBuildError(f"Failed to add {name} to archive: {exc}") from exc
        written += 1
        chunk = buffer.drain()
        if chunk:
            yield chunk

    try:
        archive.close()
    except (OSError, ValueError, zlib.error) as exc:
        raise ArchiveBuildError(f"Failed to finalize archive: {exc}") from exc

    logger.info("archive_streamed", archive=shard.filename, entries=written)
    tail = buffer.drain()
    if tail:
        yield tail
