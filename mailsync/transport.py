"""Async IMAP transport wrapping stdlib imaplib with asyncio.to_thread.

This is the only module that speaks to ``imaplib``.  It returns the
server's folder hierarchy as a nested dict, the selected mailbox's status,
and fetch results as a stream of :class:`BodyChunk` / :class:`MessageEnd`
events, one group per message.
"""

from __future__ import annotations

import asyncio
import imaplib
import re
import socket
from collections.abc import Callable, Iterable, Iterator
from dataclasses import dataclass
from datetime import datetime
from typing import Any

import structlog

from .errors import MailConnectionError
from .models import ImapSettings, MailboxStatus, MessageAttributes

logger = structlog.get_logger()

HEADER_FIELDS = (
    "FROM",
    "TO",
    "CC",
    "BCC",
    "REPLY-TO",
    "SUBJECT",
    "DATE",
    "MESSAGE-ID",
    "IN-REPLY-TO",
    "REFERENCES",
)

# Header-only fetch used by incremental sync; never sets \Seen
HEADER_ITEMS = f"(UID FLAGS INTERNALDATE RFC822.SIZE BODY.PEEK[HEADER.FIELDS ({' '.join(HEADER_FIELDS)})])"
# Whole message, used for on-demand body retrieval
FULL_ITEMS = "(UID FLAGS INTERNALDATE RFC822.SIZE BODY.PEEK[])"
# Flag refresh for messages already stored
FLAG_ITEMS = "(UID FLAGS)"


@dataclass
class BodyChunk:
    """Part of a message body section delivered by the server."""

    seqno: int
    section: str
    data: bytes


@dataclass
class MessageEnd:
    """Emitted once per message after all of its chunks."""

    seqno: int
    attributes: MessageAttributes


FetchEvent = BodyChunk | MessageEnd


class ImapTransport:
    """Async-friendly IMAP client.

    All blocking ``imaplib`` operations are wrapped with
    ``asyncio.to_thread()`` to avoid blocking the event loop.  Protocol
    errors surface as ``imaplib.IMAP4.error`` / ``imaplib.IMAP4.abort`` /
    ``OSError``; only :meth:`connect` translates them.
    """

    def __init__(self, settings: ImapSettings, *, timeout: float | None = None) -> None:
        self._settings = settings
        self._timeout = timeout
        self._conn: imaplib.IMAP4_SSL | imaplib.IMAP4 | None = None

    @property
    def connected(self) -> bool:
        return self._conn is not None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def connect(self) -> None:
        """Open the socket and log in."""
        try:
            await asyncio.to_thread(self._connect_sync)
        except (imaplib.IMAP4.error, OSError) as exc:
            self._conn = None
            raise MailConnectionError(
                f"Could not log in to {self._settings.host}:{self._settings.port}: {exc}"
            ) from exc
        logger.info("imap_connected", host=self._settings.host, user=self._settings.username)

    def _connect_sync(self) -> None:
        if self._settings.tls:
            conn = imaplib.IMAP4_SSL(self._settings.host, self._settings.port, timeout=self._timeout)
        else:
            conn = imaplib.IMAP4(self._settings.host, self._settings.port, timeout=self._timeout)
        try:
            conn.login(self._settings.username, self._settings.password.get_secret_value())
        except imaplib.IMAP4.error:
            conn.shutdown()
            raise
        self._conn = conn

    async def logout(self) -> None:
        """Close the selected mailbox (if any) and log out."""
        if self._conn is not None:
            await asyncio.to_thread(self._logout_sync)
            self._conn = None
            logger.info("imap_disconnected", host=self._settings.host)

    def _logout_sync(self) -> None:
        assert self._conn is not None
        if self._conn.state == "SELECTED":
            try:
                self._conn.close()
            except (imaplib.IMAP4.error, OSError):
                pass
        try:
            self._conn.logout()
        except (imaplib.IMAP4.error, OSError):
            pass

    async def abort(self) -> None:
        """Drop the connection without a LOGOUT exchange.

        Used after a timeout or transport error, when a worker thread may
        still be blocked reading from the socket.  Shutting the socket down
        from the loop thread wakes that reader; the remaining close runs in
        a thread.
        """
        conn, self._conn = self._conn, None
        if conn is None:
            return
        try:
            conn.sock.shutdown(socket.SHUT_RDWR)
        except (AttributeError, OSError):
            pass
        try:
            await asyncio.to_thread(conn.shutdown)
        except OSError as exc:
            logger.debug("imap_abort_close_failed", error=str(exc))
        logger.warning("imap_connection_aborted", host=self._settings.host)

    # ------------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------------

    async def list_folders(self) -> dict[str, Any]:
        """Return the server's folder hierarchy as a nested dict."""
        entries = await asyncio.to_thread(self._list_sync)
        return build_folder_hierarchy(entries)

    def _list_sync(self) -> list[tuple[list[str], str | None, str]]:
        assert self._conn is not None, "Not connected"
        status, data = self._conn.list()
        if status != "OK":
            raise imaplib.IMAP4.error(f"LIST failed: {data!r}")
        return list(parse_list_response(data))

    async def open_folder(self, path: str, read_only: bool) -> MailboxStatus:
        """SELECT (or EXAMINE when *read_only*) a folder."""
        return await asyncio.to_thread(self._select_sync, path, read_only)

    def _select_sync(self, path: str, read_only: bool) -> MailboxStatus:
        assert self._conn is not None, "Not connected"
        status, data = self._conn.select(_quote_mailbox(path), readonly=read_only)
        if status != "OK":
            raise imaplib.IMAP4.error(f"SELECT {path} failed: {data!r}")
        untagged = self._conn.untagged_responses
        return MailboxStatus(
            path=path,
            read_only=read_only,
            total=_to_int(data[0] if data else None) or 0,
            recent=_last_int(untagged.get("RECENT")) or 0,
            uidvalidity=_last_int(untagged.get("UIDVALIDITY")),
            uidnext=_last_int(untagged.get("UIDNEXT")),
            flags=_last_flag_list(untagged.get("FLAGS")),
            permanent_flags=_last_flag_list(untagged.get("PERMANENTFLAGS")),
        )

    async def search_uids(self) -> list[int]:
        """UIDs of every message in the selected folder, in sequence order."""
        return await asyncio.to_thread(self._search_uids_sync)

    def _search_uids_sync(self) -> list[int]:
        assert self._conn is not None, "Not connected"
        status, data = self._conn.uid("SEARCH", None, "ALL")
        if status != "OK":
            raise imaplib.IMAP4.error(f"UID SEARCH failed: {data!r}")
        return sorted(int(uid) for chunk in data if chunk for uid in chunk.split())

    async def fetch(
        self,
        range_spec: str,
        items: str,
        on_event: Callable[[FetchEvent], None],
    ) -> None:
        """FETCH *range_spec* by sequence number and dispatch the events."""
        events = await asyncio.to_thread(self._fetch_sync, range_spec, items)
        for event in events:
            on_event(event)

    def _fetch_sync(self, range_spec: str, items: str) -> list[FetchEvent]:
        assert self._conn is not None, "Not connected"
        status, data = self._conn.fetch(range_spec, items)
        if status != "OK":
            raise imaplib.IMAP4.error(f"FETCH {range_spec} failed: {data!r}")
        return list(parse_fetch_response(data))


# ----------------------------------------------------------------------
# Response parsing
# ----------------------------------------------------------------------

_LIST_RE = re.compile(
    rb'^\((?P<flags>[^)]*)\)\s+(?P<delimiter>"(?:[^"\\]|\\.)*"|NIL)\s+(?P<name>.*)$',
    re.IGNORECASE,
)
_MESSAGE_START_RE = re.compile(rb"^(\d+)\s+\(")
_SECTION_RE = re.compile(rb"(BODY\[[^\]]*\](?:<\d+>)?|RFC822(?:\.HEADER|\.TEXT)?)\s+\{\d+\}\s*$", re.IGNORECASE)
_UID_RE = re.compile(rb"\bUID\s+(\d+)", re.IGNORECASE)
_FLAGS_RE = re.compile(rb"\bFLAGS\s+\(([^)]*)\)", re.IGNORECASE)
_INTERNALDATE_RE = re.compile(rb'\bINTERNALDATE\s+"([^"]+)"', re.IGNORECASE)
_SIZE_RE = re.compile(rb"\bRFC822\.SIZE\s+(\d+)", re.IGNORECASE)


def parse_list_response(data: Iterable[Any]) -> Iterator[tuple[list[str], str | None, str]]:
    """Yield ``(attributes, delimiter, name)`` for each LIST response line."""
    for item in data:
        if item is None:
            continue
        literal_name: bytes | None = None
        if isinstance(item, tuple):
            line, literal_name = item[0], item[1]
        else:
            line = item
        match = _LIST_RE.match(line.strip())
        if match is None:
            logger.warning("imap_list_unparsed", line=line)
            continue
        flags = match.group("flags").decode("ascii", "replace").split()
        raw_delim = match.group("delimiter")
        delimiter = None if raw_delim.upper() == b"NIL" else _unquote(raw_delim)
        name = literal_name.decode("utf-8", "replace") if literal_name is not None else _unquote(match.group("name"))
        yield flags, delimiter, name


def build_folder_hierarchy(entries: Iterable[tuple[list[str], str | None, str]]) -> dict[str, Any]:
    """Nest flat LIST entries into ``{name: {attribs, delimiter, children}}``.

    Intermediate levels the server did not list are created as ``\\Noselect``.
    """
    tree: dict[str, Any] = {}
    for flags, delimiter, name in entries:
        parts = name.split(delimiter) if delimiter else [name]
        level = tree
        node: dict[str, Any] = {}
        for index, part in enumerate(parts):
            node = level.setdefault(
                part,
                {"attribs": ["\\Noselect"], "delimiter": delimiter, "children": None},
            )
            if index < len(parts) - 1:
                if node["children"] is None:
                    node["children"] = {}
                level = node["children"]
        node["attribs"] = flags
    return tree


def parse_fetch_response(data: Iterable[Any]) -> Iterator[FetchEvent]:
    """Turn imaplib FETCH data into body chunk and end-of-message events.

    imaplib returns a tuple ``(prefix, literal)`` for every literal and
    plain bytes for the text between and after literals; a new message
    starts with ``b"<seq> ("``.
    """
    current: int | None = None
    attr_text = b""

    for item in data:
        if item is None:
            continue
        literal: bytes | None = None
        if isinstance(item, tuple):
            head, literal = item[0], item[1]
        else:
            head = item

        start = _MESSAGE_START_RE.match(head)
        if start is not None:
            if current is not None:
                yield MessageEnd(seqno=current, attributes=parse_attributes(attr_text))
            current = int(start.group(1))
            attr_text = head[start.end():]
        else:
            attr_text += b" " + head

        if literal is not None and current is not None:
            section = _SECTION_RE.search(head)
            yield BodyChunk(
                seqno=current,
                section=section.group(1).decode("ascii", "replace").upper() if section else "",
                data=literal,
            )

    if current is not None:
        yield MessageEnd(seqno=current, attributes=parse_attributes(attr_text))


def parse_attributes(text: bytes) -> MessageAttributes:
    uid = _UID_RE.search(text)
    flags = _FLAGS_RE.search(text)
    internal_date = _INTERNALDATE_RE.search(text)
    size = _SIZE_RE.search(text)
    return MessageAttributes(
        uid=int(uid.group(1)) if uid else None,
        flags=flags.group(1).decode("ascii", "replace").split() if flags else [],
        internal_date=_parse_internal_date(internal_date.group(1)) if internal_date else None,
        size=int(size.group(1)) if size else None,
    )


def _parse_internal_date(value: bytes) -> datetime | None:
    try:
        return datetime.strptime(value.decode("ascii").strip(), "%d-%b-%Y %H:%M:%S %z")
    except ValueError:
        return None


def _unquote(value: bytes) -> str:
    text = value.decode("utf-8", "replace").strip()
    if len(text) >= 2 and text[0] == '"' and text[-1] == '"':
        text = re.sub(r"\\(.)", r"\1", text[1:-1])
    return text


def _quote_mailbox(name: str) -> str:
    """Quote a mailbox name for the wire; imaplib sends arguments verbatim."""
    if name and not re.search(r'[\s"\\(){%*]', name):
        return name
    return '"' + name.replace("\\", "\\\\").replace('"', '\\"') + '"'


def _to_int(value: Any) -> int | None:
    if value is None:
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def _last_int(values: list[Any] | None) -> int | None:
    return _to_int(values[-1]) if values else None


def _last_flag_list(values: list[Any] | None) -> list[str]:
    if not values or values[-1] is None:
        return []
    raw = values[-1]
    text = raw.decode("ascii", "replace") if isinstance(raw, bytes) else str(raw)
    return text.strip().strip("()").split()
