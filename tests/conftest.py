"""Shared test fixtures for the mail harvester test suite."""

from __future__ import annotations

from email import encoders
from email.mime.application import MIMEApplication
from email.mime.base import MIMEBase
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from pathlib import Path

import pytest

from mail_harvester.config import ImapConfig, PipelineConfig, RetryConfig
from mail_harvester.errors import FolderNotFoundError, MailConnectionError
from mail_harvester.jobs import Job
from mail_harvester.models import FolderInfo
from mail_harvester.parser import MimeParser
from mail_harvester.storage import LocalWorkingStore


@pytest.fixture
def imap_config() -> ImapConfig:
    return ImapConfig(
        host="imap.test.com",
        port=993,
        use_ssl=True,
        username="testuser",
        password="testpass",
    )


@pytest.fixture
def pipeline_config() -> PipelineConfig:
    return PipelineConfig(scan_batch_size=100, fetch_batch_size=10, shard_size=300)


@pytest.fixture
def fast_retry() -> RetryConfig:
    return RetryConfig(max_attempts=2, initial_wait_seconds=0.0, max_wait_seconds=0.0)


@pytest.fixture
async def local_store(tmp_path: Path, fast_retry: RetryConfig) -> LocalWorkingStore:
    store = LocalWorkingStore(tmp_path / "store", fast_retry)
    await store.start()
    return store


@pytest.fixture
def job() -> Job:
    return Job("run-1", "INBOX")


# ------------------------------------------------------------------
# Sample EML builders
# ------------------------------------------------------------------


def _build_plain_email(
    *,
    subject: str | None = "Test Subject",
    from_addr: str | None = '"Alice Example" <alice@example.com>',
    body: str = "Hello, World!",
    date: str | None = "Mon, 02 Jun 2025 12:00:00 +0000",
) -> bytes:
    """Build a simple plain-text email as raw bytes."""
    msg = MIMEText(body, "plain")
    if subject is not None:
        msg["Subject"] = subject
    if from_addr is not None:
        msg["From"] = from_addr
    msg["To"] = "recipient@example.com"
    if date is not None:
        msg["Date"] = date
    return msg.as_bytes()


def _build_multipart_email(
    *,
    subject: str = "Multipart Email",
    from_addr: str = '"Bob Sender" <bob@example.com>',
    body_text: str = "Plain body",
    attachments: list[tuple[str | None, str, bytes]] | None = None,
) -> bytes:
    """Build a multipart email with a text body and optional attachments."""
    msg = MIMEMultipart("mixed")
    msg["Subject"] = subject
    msg["From"] = from_addr
    msg["To"] = "recipient@example.com"
    msg["Date"] = "Mon, 02 Jun 2025 12:00:00 +0000"

    alt = MIMEMultipart("alternative")
    alt.attach(MIMEText(body_text, "plain"))
    alt.attach(MIMEText(f"<p>{body_text}</p>", "html"))
    msg.attach(alt)

    for filename, content_type, payload in attachments or []:
        maintype, subtype = content_type.split("/", 1)
        part = MIMEBase(maintype, subtype)
        part.set_payload(payload)
        encoders.encode_base64(part)
        if filename is None:
            part.add_header("Content-Disposition", "attachment")
        else:
            part.add_header("Content-Disposition", "attachment", filename=filename)
        msg.attach(part)

    return msg.as_bytes()


def _build_signed_email(*, subject: str = "Signed note", body_text: str = "No files here") -> bytes:
    """A message whose only non-text part is an inline signature (no attachment)."""
    msg = MIMEMultipart("signed", protocol="application/pkcs7-signature")
    msg["Subject"] = subject
    msg["From"] = '"Carol Signer" <carol@example.com>'
    msg["To"] = "recipient@example.com"
    msg["Date"] = "Tue, 03 Jun 2025 08:30:00 +0200"
    msg.attach(MIMEText(body_text, "plain"))
    msg.attach(MIMEApplication(b"signature-bytes", "pkcs7-signature"))
    return msg.as_bytes()


@pytest.fixture
def plain_eml_bytes() -> bytes:
    return _build_plain_email()


@pytest.fixture
def multipart_eml_bytes() -> bytes:
    return _build_multipart_email(
        attachments=[
            ("report.pdf", "application/pdf", b"%PDF-1.4 fake pdf content"),
            ("data.csv", "text/csv", b"col1,col2\na,b\n"),
        ],
    )


@pytest.fixture
def scenario_messages() -> dict[str, bytes]:
    """Three messages: A with a PDF, B with a DOCX and an image, C with none."""
    return {
        "1": _build_multipart_email(
            subject="Message A",
            from_addr='"Ann" <ann@example.com>',
            attachments=[("resume.pdf", "application/pdf", b"%PDF-1.4 A")],
        ),
        "2": _build_multipart_email(
            subject="Message B",
            from_addr='"Ben" <ben@example.com>',
            attachments=[
                (
                    "letter.docx",
                    "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
                    b"PK docx B",
                ),
                ("photo.png", "image/png", b"\x89PNG image"),
            ],
        ),
        "3": _build_signed_email(subject="Message C"),
    }


# ------------------------------------------------------------------
# Mail session test double
# ------------------------------------------------------------------


class FakeImapClient:
    """In-memory stand-in for AsyncImapClient.

    ``flags`` overrides the structural scan per UID (default ``True``).
    ``on_fetch`` is called with the 1-based fetch number after each fetch.
    """

    def __init__(
        self,
        messages: dict[str, bytes] | None = None,
        *,
        flags: dict[str, bool] | None = None,
        folders: list[FolderInfo] | None = None,
        connect_error: Exception | None = None,
        missing_folder: bool = False,
        on_fetch=None,
    ) -> None:
        self.messages = messages or {}
        self.flags = flags or {}
        self.folders = folders or []
        self.connect_error = connect_error
        self.missing_folder = missing_folder
        self.on_fetch = on_fetch
        self.parser = MimeParser()
        self.connected = False
        self.disconnect_calls = 0
        self.fetched: list[list[str]] = []

    async def connect(self) -> None:
        if self.connect_error is not None:
            raise self.connect_error
        self.connected = True

    async def disconnect(self) -> None:
        self.connected = False
        self.disconnect_calls += 1

    async def list_folders(self) -> list[FolderInfo]:
        if not self.connected:
            raise MailConnectionError("not connected")
        return self.folders

    async def open_box(self, folder: str) -> int:
        if self.missing_folder:
            raise FolderNotFoundError(folder)
        return len(self.messages)

    async def search_all(self) -> list[str]:
        return list(self.messages)

    async def scan_for_attachments(self, uids: list[str]) -> dict[str, bool]:
        return {uid: self.flags.get(uid, True) for uid in uids}

    async def fetch_full(self, uids: list[str]):
        self.fetched.append(list(uids))
        parsed = [self.parser.parse(uid, self.messages[uid]) for uid in uids if uid in self.messages]
        if self.on_fetch is not None:
            self.on_fetch(len(self.fetched))
        return parsed

    @property
    def fetched_uids(self) -> list[str]:
        return [uid for batch in self.fetched for uid in batch]


def client_factory_for(client: FakeImapClient):
    """Return a pipeline client factory that always hands out *client*."""

    def factory(imap, config):
        return client

    return factory
