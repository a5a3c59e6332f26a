"""Delta fetch driver: retrieves only messages newer than a folder's watermark.

Watermark semantics
-------------------
``highest`` is the largest sequence number already seen in the folder.  An
incremental fetch asks for ``highest:*``; the message at ``highest``
itself comes back again and is re-upserted harmlessly.  The new watermark
is reported only after the whole batch and every callback it spawned have
finished; a transport failure raises :class:`FetchError` and reports
nothing, so the stored watermark never moves on a partial batch.
"""

from __future__ import annotations

import asyncio
import inspect
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any

import structlog

from .envelope import parse_envelope
from .errors import FetchError, ParseError
from .models import FetchedMessage, MailboxStatus, MessageAttributes
from .session import SessionManager
from .transport import FLAG_ITEMS, FULL_ITEMS, HEADER_ITEMS, BodyChunk, FetchEvent, MessageEnd

logger = structlog.get_logger()

OnMessage = Callable[[int, FetchedMessage], Awaitable[Any] | Any]


@dataclass
class FetchBatchResult:
    """Outcome of one fetch batch for one folder."""

    folder: str
    status: MailboxStatus
    previous_highest: int
    highest: int
    fetched: list[int] = field(default_factory=list)
    parse_failures: list[int] = field(default_factory=list)
    skipped: bool = False


class _Batch:
    """Collects streamed events for one FETCH command."""

    def __init__(self, folder: str, low: int, high: int | None, on_message: OnMessage) -> None:
        self.folder = folder
        self.low = low
        self.high = high
        self.on_message = on_message
        self.buffers: dict[int, list[bytes]] = {}
        self.fetched: list[int] = []
        self.parse_failures: list[int] = []
        self.pending: list[asyncio.Future[Any]] = []
        self.callback_errors: list[BaseException] = []

    def wanted(self, seqno: int) -> bool:
        return seqno >= self.low and (self.high is None or seqno <= self.high)

    def __call__(self, event: FetchEvent) -> None:
        if isinstance(event, BodyChunk):
            self.buffers.setdefault(event.seqno, []).append(event.data)
        elif isinstance(event, MessageEnd):
            self._finish(event)

    def _finish(self, event: MessageEnd) -> None:
        raw = b"".join(self.buffers.pop(event.seqno, []))
        if not self.wanted(event.seqno):
            # Unsolicited FETCH (flag update) for a message outside the range
            logger.debug("fetch_unsolicited_ignored", folder=self.folder, seqno=event.seqno)
            return

        self.fetched.append(event.seqno)
        try:
            envelope = parse_envelope(raw, seqno=event.seqno)
        except ParseError as exc:
            self.parse_failures.append(event.seqno)
            logger.warning("message_parse_failed", folder=self.folder, seqno=event.seqno, error=str(exc))
            return

        message = FetchedMessage(
            seqno=event.seqno,
            envelope=envelope,
            attributes=event.attributes,
            raw=raw,
        )
        try:
            result = self.on_message(event.seqno, message)
        except Exception as exc:
            self.callback_errors.append(exc)
            return
        if inspect.isawaitable(result):
            self.pending.append(asyncio.ensure_future(result))

    async def drain(self) -> None:
        """Wait for every spawned callback and collect their failures."""
        if not self.pending:
            return
        results = await asyncio.gather(*self.pending, return_exceptions=True)
        self.callback_errors.extend(r for r in results if isinstance(r, BaseException))


class DeltaFetchDriver:
    """Runs header or body fetch batches over a :class:`SessionManager`."""

    def __init__(self, session: SessionManager) -> None:
        self._session = session

    async def fetch_newer(
        self,
        folder: str,
        highest: int,
        on_message: OnMessage,
        *,
        read_only: bool = True,
    ) -> FetchBatchResult:
        """Fetch headers for every message at or above *highest*."""
        highest = max(highest, 1)
        opened = await self._session.open_folder(folder, read_only=read_only)
        status = opened.status
        log = logger.bind(folder=folder, highest=highest, total=status.total)

        if status.total == 0 or highest > status.total:
            log.debug("fetch_nothing_newer")
            return FetchBatchResult(
                folder=folder,
                status=status,
                previous_highest=highest,
                highest=highest,
                skipped=True,
            )

        batch = _Batch(folder, low=highest, high=None, on_message=on_message)
        await self._run(batch, f"{highest}:*", HEADER_ITEMS)

        new_highest = max([highest, *batch.fetched])
        log.info(
            "fetch_batch_complete",
            new_highest=new_highest,
            fetched=len(batch.fetched),
            parse_failures=len(batch.parse_failures),
        )
        return FetchBatchResult(
            folder=folder,
            status=status,
            previous_highest=highest,
            highest=new_highest,
            fetched=sorted(batch.fetched),
            parse_failures=sorted(batch.parse_failures),
        )

    async def fetch_one(
        self,
        folder: str,
        seqno: int,
        on_message: OnMessage,
        *,
        full: bool = True,
        read_only: bool = True,
    ) -> FetchBatchResult:
        """Fetch a single message by sequence number (whole message by default)."""
        opened = await self._session.open_folder(folder, read_only=read_only)
        status = opened.status
        if seqno < 1 or seqno > status.total:
            logger.info("fetch_one_out_of_range", folder=folder, seqno=seqno, total=status.total)
            return FetchBatchResult(
                folder=folder,
                status=status,
                previous_highest=seqno,
                highest=seqno,
                skipped=True,
            )

        batch = _Batch(folder, low=seqno, high=seqno, on_message=on_message)
        await self._run(batch, str(seqno), FULL_ITEMS if full else HEADER_ITEMS)
        return FetchBatchResult(
            folder=folder,
            status=status,
            previous_highest=seqno,
            highest=seqno,
            fetched=batch.fetched,
            parse_failures=batch.parse_failures,
        )

    async def fetch_flags(self, folder: str, low: int, high: int) -> dict[int, MessageAttributes]:
        """Current ``UID``/``FLAGS`` for sequence numbers *low* to *high*.

        Messages past the end of the folder are silently left out.
        """
        opened = await self._session.open_folder(folder, read_only=True)
        high = min(high, opened.status.total)
        if low < 1 or high < low:
            return {}

        collected: dict[int, MessageAttributes] = {}

        def on_event(event: FetchEvent) -> None:
            if isinstance(event, MessageEnd) and low <= event.seqno <= high:
                collected[event.seqno] = event.attributes

        await self._session.fetch_range(f"{low}:{high}", FLAG_ITEMS, on_event)
        logger.debug("fetch_flags_complete", folder=folder, low=low, high=high, received=len(collected))
        return collected

    async def server_uids(self, folder: str) -> list[int]:
        await self._session.open_folder(folder, read_only=True)
        return await self._session.search_uids()

    async def _run(self, batch: _Batch, range_spec: str, items: str) -> None:
        try:
            await self._session.fetch_range(range_spec, items, batch)
        except FetchError:
            # Let in-flight upserts finish; they are idempotent on retry
            await batch.drain()
            logger.error("fetch_failed", folder=batch.folder, range=range_spec, persisted=len(batch.fetched))
            raise
        await batch.drain()
        if batch.callback_errors:
            first = batch.callback_errors[0]
            logger.error(
                "fetch_callback_failed",
                folder=batch.folder,
                failures=len(batch.callback_errors),
                error=str(first),
            )
            raise FetchError(
                f"{len(batch.callback_errors)} message callback(s) failed in {batch.folder}: {first}",
                folder=batch.folder,
            ) from first
