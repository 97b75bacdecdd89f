"""Full MIME parser: walks a fetched message to extract sender, date,
body text, and attachment buffers.
"""

from __future__ import annotations

import email
import email.message
import email.policy
import email.utils
from dataclasses import dataclass, field
from datetime import UTC, datetime


@dataclass
class ParsedAttachment:
    """A single attachment extracted from a MIME message."""

    filename: str | None
    content_type: str
    payload: bytes


@dataclass
class ParsedEmail:
    """Structured representation of a fully parsed message."""

    uid: str
    subject: str
    sender_name: str
    sender_email: str
    date: datetime | None
    body_text: str
    attachments: list[ParsedAttachment] = field(default_factory=list)

    @property
    def date_display(self) -> str:
        """UTC timestamp as ``YYYY-MM-DD HH:MM:SS``, or ``Unknown``."""
        if self.date is None:
            return "Unknown"
        return self.date.astimezone(UTC).strftime("%Y-%m-%d %H:%M:%S")


class MimeParser:
    """Stateless parser: raw RFC 822 bytes → ParsedEmail."""

    def parse(self, uid: str, raw_bytes: bytes) -> ParsedEmail:
        msg = email.message_from_bytes(raw_bytes, policy=email.policy.default)

        sender_name, sender_email = self._parse_sender(msg.get("From"))
        return ParsedEmail(
            uid=uid,
            subject=str(msg.get("Subject") or "No Subject"),
            sender_name=sender_name,
            sender_email=sender_email,
            date=self._parse_date(msg.get("Date")),
            body_text=self._extract_body(msg),
            attachments=self._extract_attachments(msg),
        )

    def _parse_sender(self, header_value: object) -> tuple[str, str]:
        """Return ``(display name, address)``; the name falls back to the address."""
        if not header_value:
            return "Unknown", "Unknown"
        name, addr = email.utils.parseaddr(str(header_value))
        name = name.strip().strip("\"'")
        if not addr:
            raw = str(header_value).strip()
            return raw, raw
        return name or addr, addr

    def _parse_date(self, header_value: object) -> datetime | None:
        if not header_value:
            return None
        try:
            parsed = email.utils.parsedate_to_datetime(str(header_value))
        except (TypeError, ValueError, IndexError):
            return None
        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=UTC)
        return parsed

    def _extract_body(self, msg: email.message.Message) -> str:
        """Return the first text/plain body that is not an attachment."""
        for part in msg.walk():
            # Skip multipart containers; they have no content of their own
            if part.get_content_maintype() == "multipart":
                continue
            if "attachment" in str(part.get("Content-Disposition", "")):
                continue
            if part.get_content_type() != "text/plain":
                continue
            try:
                payload = part.get_content()
            except (LookupError, ValueError):
                continue
            if isinstance(payload, str):
                return payload.strip()
        return ""

    def _extract_attachments(self, msg: email.message.Message) -> list[ParsedAttachment]:
        """Walk MIME parts and collect attachments."""
        attachments: list[ParsedAttachment] = []

        for part in msg.walk():
            if part.get_content_maintype() == "multipart":
                continue

            disposition = str(part.get("Content-Disposition", ""))
            filename = part.get_filename()

            # Attachment: has Content-Disposition: attachment, or is a named part
            if "attachment" not in disposition and not filename:
                continue

            payload = part.get_payload(decode=True)
            if payload is None:
                continue

            attachments.append(
                ParsedAttachment(
                    filename=filename,
                    content_type=part.get_content_type(),
                    payload=payload,
                )
            )

        return attachments
