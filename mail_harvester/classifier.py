"""Document-type classification from declared MIME type and filename."""

from __future__ import annotations

from enum import Enum


class DocumentType(str, Enum):
    """Document types the harvester collects.  ``NA`` marks a record without one."""

    PDF = "PDF"
    DOCX = "DOCX"
    NA = "N/A"

    @property
    def default_extension(self) -> str:
        return {DocumentType.PDF: ".pdf", DocumentType.DOCX: ".docx"}.get(self, "")


_PDF_SUFFIXES = (".pdf",)
_DOCX_SUFFIXES = (".docx", ".doc")
_DOCX_CONTENT_MARKERS = ("wordprocessingml", "msword")


def classify(filename: str | None, content_type: str | None) -> DocumentType | None:
    """Map an attachment to ``PDF``, ``DOCX``, or ``None``.

    Matching is case-insensitive and PDF wins over DOCX when both match.
    """
    name = (filename or "").lower()
    ctype = (content_type or "").lower()

    if "pdf" in ctype or name.endswith(_PDF_SUFFIXES):
        return DocumentType.PDF
    if any(marker in ctype for marker in _DOCX_CONTENT_MARKERS) or name.endswith(_DOCX_SUFFIXES):
        return DocumentType.DOCX
    return None
