"""Sync orchestrator: one end-to-end synchronization pass per account.

A pass logs in, lists and merges the folder tree, fetches every selectable
folder's new headers deepest-first, rebuilds threads, prunes orphaned
bodies and finally writes the updated folder tree (with its watermarks)
back to the account registry.
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable, Iterable
from datetime import UTC, datetime
from typing import Any

import structlog

from .config import MailSyncConfig
from .errors import (
    AccountExistsError,
    DecryptionError,
    FetchError,
    MailConnectionError,
    MailSyncError,
    ParseError,
    VaultError,
)
from .fetch import DeltaFetchDriver
from .folders import (
    compile_path,
    get_folder_node,
    is_selectable,
    linear_folders,
    merge_folder_tree,
    pick_default_folder,
    record_status,
)
from .models import (
    Account,
    FetchedMessage,
    FolderSegment,
    FolderSyncResult,
    ImapServer,
    ImapSettings,
    MailboxStatus,
    MessageAttributes,
    MessageRecord,
    SyncReport,
)
from .parser import MimeParser
from .registry import AccountRegistry
from .session import SessionManager
from .store import LocalMailStore, MailStoreRegistry
from .threads import rebuild_threads
from .vault import CredentialVault, decrypt, encrypt

logger = structlog.get_logger()

SessionFactory = Callable[[ImapSettings], SessionManager]


class SyncOrchestrator:
    """Composes session, fetch driver, store and thread builder per account."""

    def __init__(
        self,
        config: MailSyncConfig,
        *,
        registry: AccountRegistry,
        stores: MailStoreRegistry,
        vault: CredentialVault,
        session_factory: SessionFactory | None = None,
        parser: MimeParser | None = None,
    ) -> None:
        self._config = config
        self._registry = registry
        self._stores = stores
        self._vault = vault
        self._session_factory = session_factory or self._default_session
        self._parser = parser or MimeParser()

    def _default_session(self, settings: ImapSettings) -> SessionManager:
        return SessionManager(
            settings,
            connect_timeout=self._config.sync.connect_timeout_seconds,
            fetch_timeout=self._config.sync.fetch_timeout_seconds,
        )

    # ------------------------------------------------------------------
    # Accounts
    # ------------------------------------------------------------------

    async def add_account(self, user: str, password: str, imap: ImapServer) -> Account:
        """Test the login, encrypt the password and register the account."""
        if await self._registry.find(user) is not None:
            raise AccountExistsError(f"Account {user} is already registered")

        settings = ImapSettings(**imap.model_dump(), username=user, password=password)
        session = self._session_factory(settings)
        await session.connect()
        await session.close()

        # First account on this installation adopts its password as passphrase
        key = await self._vault.unlock(password)
        account = Account(user=user, password=encrypt(key, password), imap=imap)
        await self._registry.insert(account)
        return account

    async def login_settings(self, account: Account) -> ImapSettings:
        """Decrypt the stored login; raises :class:`DecryptionError` on a bad secret."""
        key = await self._vault.unlock()
        password = decrypt(key, account.password)
        if not isinstance(password, str):
            raise DecryptionError(f"Stored secret for {account.user} is not a password")
        return ImapSettings(**account.imap.model_dump(), username=account.user, password=password)

    # ------------------------------------------------------------------
    # Sync passes
    # ------------------------------------------------------------------

    async def sync_all(self, users: Iterable[str] | None = None) -> list[SyncReport]:
        """Sync several accounts in parallel, bounded by ``max_parallel_accounts``."""
        if users is None:
            users = [account.user for account in await self._registry.list_accounts()]
        users = list(users)
        semaphore = asyncio.Semaphore(self._config.sync.max_parallel_accounts)

        async def _guarded(user: str) -> SyncReport:
            async with semaphore:
                return await self.sync_account(user)

        results = await asyncio.gather(*(_guarded(u) for u in users), return_exceptions=True)
        reports: list[SyncReport] = []
        for user, result in zip(users, results, strict=True):
            if isinstance(result, MailSyncError):
                reports.append(SyncReport(account=user, finished_at=datetime.now(UTC), error=str(result)))
            elif isinstance(result, BaseException):
                raise result
            else:
                reports.append(result)
        return reports

    async def sync_account(self, user: str) -> SyncReport:
        """Run one pass for *user*.

        Login and connection failures end the pass and are reported on the
        returned :class:`SyncReport`; a failing folder is reported and the
        remaining folders are still synced.
        """
        report = SyncReport(account=user)
        log = logger.bind(account=user)
        account = await self._registry.get(user)

        try:
            settings = await self.login_settings(account)
        except (DecryptionError, VaultError) as exc:
            log.error("account_login_blocked", error=str(exc))
            return _finish(report, error=str(exc))

        store = await self._stores.open_store(user)
        session = self._session_factory(settings)
        try:
            await session.connect()
            observed = await session.list_folders()
        except MailConnectionError as exc:
            await session.close()
            log.error("account_connect_failed", error=str(exc))
            return _finish(report, error=str(exc))

        tree = merge_folder_tree(account.folders, observed)
        default = pick_default_folder(tree)
        report.default_folder = compile_path(default) if default else None
        try:
            for path in linear_folders(tree):
                node = get_folder_node(tree, path)
                if not is_selectable(node):
                    continue
                if not session.usable:
                    # The previous folder broke the connection
                    await session.close()
                    session = self._session_factory(settings)
                    try:
                        await session.connect()
                    except MailConnectionError as exc:
                        log.error("account_reconnect_failed", error=str(exc))
                        report.error = str(exc)
                        break
                report.folders.append(await self._sync_folder(session, store, user, path, node))
        finally:
            await session.close()

        thread_map = await rebuild_threads(store)
        report.threads = len(thread_map)
        await store.prune_bodies()
        await self._registry.update_fields(user, {"folders": tree})

        _finish(report, error=report.error)
        log.info(
            "account_sync_complete",
            folders=len(report.folders),
            failed=report.failed_folders,
            threads=report.threads,
            ok=report.ok,
        )
        return report

    async def _sync_folder(
        self,
        session: SessionManager,
        store: LocalMailStore,
        user: str,
        path: list[FolderSegment],
        node: dict[str, Any],
    ) -> FolderSyncResult:
        folder = compile_path(path)
        previous = int(node.get("highest") or 1)
        result = FolderSyncResult(folder=folder, previous_highest=previous, highest=previous)
        log = logger.bind(account=user, folder=folder)

        try:
            status = (await session.open_folder(folder, read_only=True)).status
            driver = DeltaFetchDriver(session)
            highest = previous
            if _uidvalidity_changed(node, status):
                log.warning(
                    "folder_cache_invalidated",
                    stored_uidvalidity=node.get("uidvalidity"),
                    uidvalidity=status.uidvalidity,
                    total=status.total,
                    previous_highest=previous,
                )
                await store.delete_folder(folder)
                highest = 1
                node["highest"] = 1
                node["uidvalidity"] = status.uidvalidity
                result.reset = True
            elif _expunge_suspected(node, status, previous):
                outcome = await store.reconcile_folder(folder, await driver.server_uids(folder))
                highest = outcome.highest
                node["highest"] = highest
                result.removed = len(outcome.removed)

            if highest > 1:
                attributes = await driver.fetch_flags(folder, 1, highest - 1)
                result.flags_updated = await _refresh_flags(store, folder, attributes)

            inserted = 0

            async def on_message(seqno: int, message: FetchedMessage) -> None:
                nonlocal inserted
                record = MessageRecord.from_fetched(
                    message, user=user, folder=folder, uidvalidity=status.uidvalidity
                )
                if await store.upsert_message(record):
                    inserted += 1

            batch = await driver.fetch_newer(folder, highest, on_message)
        except FetchError as exc:
            result.error = str(exc)
            log.error("folder_sync_failed", error=str(exc), highest=node.get("highest", previous))
            return result

        node["highest"] = batch.highest
        record_status(node, batch.status)
        result.highest = batch.highest
        result.fetched = len(batch.fetched)
        result.new_messages = inserted
        result.parse_failures = batch.parse_failures
        log.info(
            "folder_sync_complete",
            previous_highest=previous,
            highest=batch.highest,
            fetched=result.fetched,
            new=inserted,
            removed=result.removed,
            flags_updated=result.flags_updated,
        )
        return result

    # ------------------------------------------------------------------
    # Bodies
    # ------------------------------------------------------------------

    async def fetch_body(self, user: str, key: str) -> dict[str, Any] | None:
        """Fetch, parse and store the full body of one message.

        Returns the stored blob, or ``None`` if the message is unknown or no
        longer at its recorded position on the server.
        """
        account = await self._registry.get(user)
        store = await self._stores.open_store(user)
        record = await store.find_by_key(key)
        if record is None:
            logger.info("body_record_missing", account=user, key=key)
            return None

        settings = await self.login_settings(account)
        async with self._session_factory(settings) as session:
            return await self._retrieve_body(session, store, record)

    async def retrieve_missing_bodies(self, user: str, limit: int | None = None) -> int:
        """Retrieve bodies for records not fetched yet, over a single session."""
        account = await self._registry.get(user)
        store = await self._stores.open_store(user)
        records = await store.find_not_retrieved(limit or self._config.sync.body_batch_size)
        if not records:
            return 0

        settings = await self.login_settings(account)
        retrieved = 0
        async with self._session_factory(settings) as session:
            for record in records:
                try:
                    if await self._retrieve_body(session, store, record) is not None:
                        retrieved += 1
                except ParseError as exc:
                    logger.warning("body_parse_failed", account=user, key=record.key, error=str(exc))
                except FetchError as exc:
                    logger.error("body_fetch_failed", account=user, key=record.key, error=str(exc))
                    if not session.usable:
                        break
        logger.info("bodies_retrieved", account=user, retrieved=retrieved, requested=len(records))
        return retrieved

    async def _retrieve_body(
        self,
        session: SessionManager,
        store: LocalMailStore,
        record: MessageRecord,
    ) -> dict[str, Any] | None:
        captured: list[FetchedMessage] = []
        await DeltaFetchDriver(session).fetch_one(
            record.folder,
            record.seqno,
            lambda seqno, message: captured.append(message),
        )
        if not captured:
            logger.warning("body_not_on_server", key=record.key, seqno=record.seqno)
            return None

        message = captured[0]
        if record.uid is not None and message.attributes.uid not in (None, record.uid):
            logger.warning("body_uid_mismatch", key=record.key, expected=record.uid, got=message.attributes.uid)
            return None

        parsed = self._parser.parse(message.raw)
        blob = parsed.to_blob(key=record.key, seqno=record.seqno, uid=message.attributes.uid)
        await store.store_body(record.key, blob)
        await store.update_fields(record.key, {"retrieved": True, "flags": message.attributes.flags})
        return blob

    async def close(self) -> None:
        await self._stores.close_all()


def _uidvalidity_changed(node: dict[str, Any], status: MailboxStatus) -> bool:
    stored = node.get("uidvalidity")
    return stored is not None and status.uidvalidity is not None and stored != status.uidvalidity


def _expunge_suspected(node: dict[str, Any], status: MailboxStatus, highest: int) -> bool:
    """True when messages stored locally may have been expunged on the server.

    Every arrival consumes at least one UID, so without expunges the total
    grows by exactly the number of UIDs handed out since the last pass.
    """
    if "highest" not in node:
        return False
    if status.total < highest:
        return True
    stored_total = (node.get("messages") or {}).get("total")
    stored_next = node.get("uidnext")
    if stored_total is None or stored_next is None or status.uidnext is None:
        return False
    return status.total != stored_total + (status.uidnext - stored_next)


async def _refresh_flags(
    store: LocalMailStore,
    folder: str,
    attributes: dict[int, MessageAttributes],
) -> int:
    """Copy server flags onto stored records; returns the number changed."""
    changes: dict[str, dict[str, Any]] = {}
    for doc in await store.find_by_folder(folder, projection=("seqno", "uid", "flags")):
        current = attributes.get(doc["seqno"])
        if current is None:
            continue
        if current.uid is not None and doc.get("uid") not in (None, current.uid):
            # A different message sits at this position now
            continue
        if sorted(current.flags) != sorted(doc.get("flags") or []):
            changes[doc["key"]] = {"flags": current.flags}
    return await store.update_many(changes)


def _finish(report: SyncReport, *, error: str | None) -> SyncReport:
    report.error = error
    report.finished_at = datetime.now(UTC)
    return report
