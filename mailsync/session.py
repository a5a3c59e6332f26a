"""SessionManager: one logical IMAP connection for one account.

State machine::

    DISCONNECTED -> CONNECTING -> AUTHENTICATED -> IDLE <-> FETCHING
                                                    |
                                        DISCONNECTED | ERROR

There is no automatic reconnection.  A transport failure moves the session
to ``ERROR`` and every later call raises :class:`SessionClosedError`; the
caller has to build a fresh session.
"""

from __future__ import annotations

import asyncio
import imaplib
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum
from typing import Any

import structlog

from .errors import FetchError, MailConnectionError, SessionClosedError
from .models import ImapSettings, MailboxStatus
from .transport import FetchEvent, ImapTransport

logger = structlog.get_logger()


class SessionState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    AUTHENTICATED = "authenticated"
    IDLE = "idle"
    FETCHING = "fetching"
    ERROR = "error"


@dataclass(frozen=True)
class OpenFolder:
    """Handle for the folder currently selected on a session."""

    path: str
    read_only: bool
    status: MailboxStatus

    def satisfies(self, path: str, read_only: bool) -> bool:
        # A read-write selection also serves read-only callers
        return self.path == path and (read_only or not self.read_only)


class SessionManager:
    """Owns the transport for one account and enforces the state machine."""

    def __init__(
        self,
        settings: ImapSettings,
        *,
        transport: ImapTransport | None = None,
        connect_timeout: float | None = None,
        fetch_timeout: float | None = None,
    ) -> None:
        self._settings = settings
        self._transport = transport or ImapTransport(settings, timeout=connect_timeout)
        self._fetch_timeout = fetch_timeout
        self._state = SessionState.DISCONNECTED
        self._current: OpenFolder | None = None
        self._log = logger.bind(account=settings.username, host=settings.host)

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def current_folder(self) -> OpenFolder | None:
        return self._current

    @property
    def usable(self) -> bool:
        return self._state in (SessionState.AUTHENTICATED, SessionState.IDLE)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def connect(self) -> None:
        if self._state is not SessionState.DISCONNECTED or self._transport.connected:
            raise SessionClosedError(f"Session cannot connect from state {self._state.value}")
        self._state = SessionState.CONNECTING
        try:
            await self._transport.connect()
        except MailConnectionError:
            self._state = SessionState.ERROR
            self._log.error("session_connect_failed")
            raise
        self._state = SessionState.AUTHENTICATED
        self._log.info("session_authenticated")

    async def close(self) -> None:
        """Log out (best effort) and mark the session disconnected.

        An errored session may still have a worker thread reading the
        socket, so it is aborted without a LOGOUT exchange.
        """
        was_error = self._state is SessionState.ERROR
        try:
            if was_error:
                await self._transport.abort()
            else:
                await self._transport.logout()
        except (imaplib.IMAP4.error, OSError) as exc:
            self._log.warning("session_logout_failed", error=str(exc))
        self._current = None
        # An errored session stays errored so it is never reused
        self._state = SessionState.ERROR if was_error else SessionState.DISCONNECTED
        self._log.debug("session_closed")

    async def __aenter__(self) -> SessionManager:
        await self.connect()
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()

    # ------------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------------

    async def list_folders(self) -> dict[str, Any]:
        self._ensure_usable()
        try:
            return await self._transport.list_folders()
        except imaplib.IMAP4.abort as exc:
            self._fail("list_folders", exc)
            raise MailConnectionError(f"Connection lost while listing folders: {exc}") from exc
        except OSError as exc:
            self._fail("list_folders", exc)
            raise MailConnectionError(f"Connection lost while listing folders: {exc}") from exc
        except imaplib.IMAP4.error as exc:
            raise MailConnectionError(f"Server refused to list folders: {exc}") from exc

    async def open_folder(self, path: str, read_only: bool = True) -> OpenFolder:
        """Select *path*, skipping the round trip if it is already open."""
        self._ensure_usable()
        if self._current is not None and self._current.satisfies(path, read_only):
            return self._current

        try:
            status = await self._transport.open_folder(path, read_only)
        except (imaplib.IMAP4.abort, OSError) as exc:
            self._fail("open_folder", exc)
            raise FetchError(f"Connection lost while opening {path}: {exc}", folder=path) from exc
        except imaplib.IMAP4.error as exc:
            # The previous selection is gone after a failed SELECT
            self._current = None
            self._state = SessionState.IDLE
            raise FetchError(f"Could not open {path}: {exc}", folder=path) from exc

        self._current = OpenFolder(path=path, read_only=read_only, status=status)
        self._state = SessionState.IDLE
        self._log.debug("folder_opened", folder=path, read_only=read_only, total=status.total)
        return self._current

    async def search_uids(self) -> list[int]:
        """UIDs of the open folder in sequence order (``UID SEARCH ALL``)."""
        self._ensure_usable()
        if self._current is None:
            raise FetchError("No folder is open")
        folder = self._current.path
        try:
            return await asyncio.wait_for(self._transport.search_uids(), timeout=self._fetch_timeout)
        except TimeoutError as exc:
            self._fail("search_uids", exc)
            raise FetchError(f"UID search in {folder} timed out", folder=folder) from exc
        except (imaplib.IMAP4.abort, OSError) as exc:
            self._fail("search_uids", exc)
            raise FetchError(f"Connection lost during UID search in {folder}: {exc}", folder=folder) from exc
        except imaplib.IMAP4.error as exc:
            raise FetchError(f"Server rejected UID search in {folder}: {exc}", folder=folder) from exc

    async def fetch_range(
        self,
        range_spec: str,
        items: str,
        on_event: Callable[[FetchEvent], None],
    ) -> None:
        """FETCH from the currently open folder, dispatching events to *on_event*."""
        self._ensure_usable()
        if self._current is None:
            raise FetchError("No folder is open")
        folder = self._current.path

        self._state = SessionState.FETCHING
        try:
            await asyncio.wait_for(
                self._transport.fetch(range_spec, items, on_event),
                timeout=self._fetch_timeout,
            )
        except TimeoutError as exc:
            self._fail("fetch", exc)
            raise FetchError(f"Fetch {range_spec} in {folder} timed out", folder=folder) from exc
        except (imaplib.IMAP4.abort, OSError) as exc:
            self._fail("fetch", exc)
            raise FetchError(f"Connection lost during fetch {range_spec} in {folder}: {exc}", folder=folder) from exc
        except imaplib.IMAP4.error as exc:
            raise FetchError(f"Server rejected fetch {range_spec} in {folder}: {exc}", folder=folder) from exc
        finally:
            if self._state is SessionState.FETCHING:
                self._state = SessionState.IDLE

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _ensure_usable(self) -> None:
        if not self.usable:
            raise SessionClosedError(f"Session is {self._state.value}; open a new session")

    def _fail(self, operation: str, exc: BaseException) -> None:
        self._state = SessionState.ERROR
        self._current = None
        self._log.error("session_transport_error", operation=operation, error=str(exc))
