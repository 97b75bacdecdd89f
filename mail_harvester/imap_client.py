"""Async IMAP client wrapping stdlib imaplib with asyncio.to_thread."""

from __future__ import annotations

import asyncio
import imaplib
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any, TypeVar

import structlog

from .config import ImapConfig
from .errors import FolderNotFoundError, MailConnectionError, ProtocolError
from .models import FolderInfo
from .parser import MimeParser, ParsedEmail
from .structure import (
    MalformedResponse,
    build_tree,
    has_candidate_attachment,
    parse_fetch_response,
    parse_values,
)

logger = structlog.get_logger()

T = TypeVar("T")


@dataclass
class _FolderNode:
    """Intermediate tree used to flatten a LIST response."""

    mailbox: str | None = None
    children: dict[str, _FolderNode] = field(default_factory=dict)


def _quote_mailbox(name: str) -> str:
    escaped = name.replace("\\", "\\\\").replace('"', '\\"')
    return f'"{escaped}"'


def _chunks(items: list[str], size: int) -> list[list[str]]:
    return [items[i : i + size] for i in range(0, len(items), size)]


class AsyncImapClient:
    """Async-friendly IMAP client bound to one mailbox session.

    All blocking ``imaplib`` operations are wrapped with
    ``asyncio.to_thread()`` to avoid blocking the event loop, and are
    serialized on a lock because one ``imaplib`` connection cannot carry
    concurrent commands.  Message references are IMAP UIDs and are only
    valid for the folder opened on the current connection.
    """

    def __init__(
        self,
        config: ImapConfig,
        *,
        scan_batch_size: int = 100,
        parser: MimeParser | None = None,
    ) -> None:
        self._config = config
        self._scan_batch_size = scan_batch_size
        self._parser = parser or MimeParser()
        self._conn: imaplib.IMAP4_SSL | imaplib.IMAP4 | None = None
        self._selected: str | None = None
        self._lock = asyncio.Lock()

    @property
    def selected_folder(self) -> str | None:
        return self._selected

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def connect(self) -> None:
        """Open the connection and log in within the configured time budget."""
        self._selected = None
        attempt = asyncio.ensure_future(asyncio.to_thread(self._connect_sync))
        try:
            self._conn = await asyncio.wait_for(
                asyncio.shield(attempt),
                timeout=self._config.connect_timeout_seconds,
            )
        except asyncio.CancelledError:
            attempt.add_done_callback(self._discard_late_connection)
            raise
        except TimeoutError as exc:
            # The worker thread cannot be interrupted; log out if it still logs in.
            attempt.add_done_callback(self._discard_late_connection)
            raise MailConnectionError(
                "Connection timeout - please check your credentials and try again"
            ) from exc
        except imaplib.IMAP4.error as exc:
            raise MailConnectionError(f"Authentication failed: {exc}") from exc
        except OSError as exc:
            raise MailConnectionError(f"Cannot connect to {self._config.host}: {exc}") from exc
        logger.info("imap_connected", host=self._config.host, port=self._config.port)

    def _discard_late_connection(self, attempt: asyncio.Future) -> None:
        if attempt.cancelled() or attempt.exception() is not None:
            return
        logger.warning("imap_late_login_discarded", host=self._config.host)
        asyncio.get_running_loop().run_in_executor(None, self._disconnect_sync, attempt.result())

    def _connect_sync(self) -> imaplib.IMAP4:
        timeout = self._config.socket_timeout_seconds
        conn: imaplib.IMAP4
        if self._config.use_ssl:
            conn = imaplib.IMAP4_SSL(self._config.host, self._config.port, timeout=timeout)
        else:
            conn = imaplib.IMAP4(self._config.host, self._config.port, timeout=timeout)
        try:
            conn.login(self._config.username, self._config.password.get_secret_value())
        except BaseException:
            conn.shutdown()
            raise
        return conn

    async def disconnect(self) -> None:
        """Close mailbox and logout.  Safe to call in any state."""
        conn, self._conn = self._conn, None
        self._selected = None
        if conn is not None:
            await asyncio.to_thread(self._disconnect_sync, conn)
            logger.info("imap_disconnected", host=self._config.host)

    @staticmethod
    def _disconnect_sync(conn: imaplib.IMAP4) -> None:
        try:
            conn.close()
        except (imaplib.IMAP4.error, OSError):
            pass
        try:
            conn.logout()
        except (imaplib.IMAP4.error, OSError):
            pass

    async def is_connected(self) -> bool:
        """Check connection liveness with a NOOP command."""
        if self._conn is None:
            return False
        try:
            async with self._lock:
                status, _ = await asyncio.to_thread(self._conn.noop)
            return status == "OK"
        except (imaplib.IMAP4.error, OSError):
            return False

    async def _call(self, op: str, fn: Callable[..., T], *args: Any) -> T:
        if self._conn is None:
            raise ProtocolError(f"{op} failed: not connected")
        async with self._lock:
            try:
                return await asyncio.to_thread(fn, *args)
            except imaplib.IMAP4.abort as exc:
                raise ProtocolError(f"{op} failed: connection lost ({exc})") from exc
            except imaplib.IMAP4.error as exc:
                raise ProtocolError(f"{op} failed: {exc}") from exc
            except OSError as exc:
                raise ProtocolError(f"{op} failed: {exc}") from exc

    def _require_selected(self, op: str) -> None:
        if self._selected is None:
            raise ProtocolError(f"{op} failed: no folder selected")

    # ------------------------------------------------------------------
    # Folders
    # ------------------------------------------------------------------

    async def list_folders(self) -> list[FolderInfo]:
        """Return every selectable folder, flattened from the server hierarchy."""
        return await self._call("LIST", self._list_folders_sync)

    def _list_folders_sync(self) -> list[FolderInfo]:
        assert self._conn is not None
        status, data = self._conn.list()
        if status != "OK":
            raise ProtocolError(f"LIST rejected: {data!r}")

        root = _FolderNode()
        for item in data:
            if item is None:
                continue
            try:
                flags, delimiter, name = parse_values([item])[:3]
            except (MalformedResponse, ValueError):
                logger.warning("imap_list_line_unparseable", line=repr(item)[:200])
                continue
            if isinstance(name, bytes):
                name = name.decode("utf-8", errors="replace")
            if not isinstance(name, str):
                continue
            flag_set = {str(f).lower() for f in flags} if isinstance(flags, list) else set()
            segments = name.split(delimiter) if isinstance(delimiter, str) and delimiter else [name]

            node = root
            for segment in segments:
                node = node.children.setdefault(segment, _FolderNode())
            if "\\noselect" not in flag_set and "\\nonexistent" not in flag_set:
                node.mailbox = name

        folders: list[FolderInfo] = []
        self._flatten(root, "", folders)
        return folders

    def _flatten(self, node: _FolderNode, prefix: str, out: list[FolderInfo]) -> None:
        for segment, child in node.children.items():
            display = f"{prefix}.{segment}" if prefix else segment
            if child.mailbox is not None:
                out.append(FolderInfo(name=child.mailbox, display_name=display))
            self._flatten(child, display, out)

    async def open_box(self, folder: str) -> int:
        """Select *folder* read-only.  Returns the message count reported by the server."""
        if self._conn is None:
            raise ProtocolError("SELECT failed: not connected")
        async with self._lock:
            try:
                count = await asyncio.to_thread(self._select_sync, folder)
            except (imaplib.IMAP4.abort, OSError) as exc:
                raise ProtocolError(f"SELECT failed: {exc}") from exc
        self._selected = folder
        logger.info("imap_folder_opened", folder=folder, exists=count)
        return count

    def _select_sync(self, folder: str) -> int:
        assert self._conn is not None
        try:
            status, data = self._conn.select(_quote_mailbox(folder), readonly=True)
        except imaplib.IMAP4.abort:
            raise
        except imaplib.IMAP4.error as exc:
            raise FolderNotFoundError(folder, str(exc)) from exc
        if status != "OK":
            detail = data[0].decode(errors="replace") if data and isinstance(data[0], bytes) else ""
            raise FolderNotFoundError(folder, detail)
        try:
            return int(data[0]) if data and data[0] else 0
        except ValueError:
            return 0

    # ------------------------------------------------------------------
    # Message retrieval
    # ------------------------------------------------------------------

    async def search_all(self) -> list[str]:
        """Return every message UID in the selected folder, in server order."""
        self._require_selected("SEARCH")
        return await self._call("SEARCH", self._search_all_sync)

    def _search_all_sync(self) -> list[str]:
        assert self._conn is not None
        status, data = self._conn.uid("SEARCH", None, "ALL")
        if status != "OK":
            raise ProtocolError(f"SEARCH rejected: {data!r}")
        if not data or not data[0]:
            return []
        return [uid.decode() for uid in data[0].split()]

    async def scan_for_attachments(self, uids: list[str]) -> dict[str, bool]:
        """Flag messages whose MIME structure carries a candidate attachment.

        Reads only BODYSTRUCTURE, ``scan_batch_size`` UIDs per round-trip.
        Messages that are missing from the response or whose structure is
        malformed map to ``False``.
        """
        self._require_selected("FETCH BODYSTRUCTURE")
        result: dict[str, bool] = {}
        for chunk in _chunks(uids, self._scan_batch_size):
            flags = await self._call("FETCH BODYSTRUCTURE", self._scan_chunk_sync, chunk)
            for uid in chunk:
                result[uid] = flags.get(uid, False)
            logger.debug("scan_batch_complete", size=len(chunk), flagged=sum(flags.values()))
        return result

    def _scan_chunk_sync(self, chunk: list[str]) -> dict[str, bool]:
        assert self._conn is not None
        status, data = self._conn.uid("FETCH", ",".join(chunk), "(UID BODYSTRUCTURE)")
        if status != "OK":
            raise ProtocolError(f"FETCH BODYSTRUCTURE rejected: {data!r}")
        try:
            items = parse_fetch_response(data)
        except MalformedResponse as exc:
            logger.warning("scan_response_malformed", uids=len(chunk), error=str(exc))
            return {}

        flags: dict[str, bool] = {}
        for attrs in items:
            uid = attrs.get("UID")
            if not isinstance(uid, str) or "BODYSTRUCTURE" not in attrs:
                continue
            try:
                flags[uid] = has_candidate_attachment(build_tree(attrs["BODYSTRUCTURE"]))
            except MalformedResponse as exc:
                logger.debug("bodystructure_malformed", uid=uid, error=str(exc))
                flags[uid] = False
        return flags

    async def fetch_full(self, uids: list[str]) -> list[ParsedEmail]:
        """Fetch and fully parse *uids*, in submission order.

        The network fetch completes first; each message is then parsed on a
        worker thread.  The call returns only after every parse has finished.
        Messages that fail to parse, or that the server did not return, are
        logged and left out of the result.
        """
        if not uids:
            return []
        self._require_selected("FETCH")
        raw = await self._call("FETCH", self._fetch_raw_sync, uids)

        missing = [uid for uid in uids if uid not in raw]
        if missing:
            logger.warning("fetch_messages_missing", uids=missing)

        parsed: dict[str, ParsedEmail] = {}
        async with asyncio.TaskGroup() as tg:
            for uid in uids:
                if uid in raw:
                    tg.create_task(self._parse_into(uid, raw[uid], parsed))
        return [parsed[uid] for uid in uids if uid in parsed]

    def _fetch_raw_sync(self, uids: list[str]) -> dict[str, bytes]:
        assert self._conn is not None
        status, data = self._conn.uid("FETCH", ",".join(uids), "(UID BODY.PEEK[])")
        if status != "OK":
            raise ProtocolError(f"FETCH rejected: {data!r}")
        try:
            items = parse_fetch_response(data)
        except MalformedResponse as exc:
            raise ProtocolError(f"FETCH response malformed: {exc}") from exc

        raw: dict[str, bytes] = {}
        for attrs in items:
            uid = attrs.get("UID")
            body = attrs.get("BODY[]")
            if isinstance(uid, str) and isinstance(body, bytes):
                raw[uid] = body
        return raw

    async def _parse_into(self, uid: str, raw_bytes: bytes, out: dict[str, ParsedEmail]) -> None:
        try:
            out[uid] = await asyncio.to_thread(self._parser.parse, uid, raw_bytes)
        except Exception as exc:
            logger.warning("message_parse_failed", uid=uid, error=str(exc))
