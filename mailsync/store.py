"""Local mail store: per-account message metadata plus body blobs.

Each account has its own SQLite database (SQLAlchemy asyncio over
aiosqlite).  Writes go through a per-store lock, so an insert that hits
an existing key is turned into an update before any other writer runs.
"""

from __future__ import annotations

import asyncio
from collections.abc import Sequence
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any

import structlog
from pydantic import TypeAdapter
from sqlalchemy import delete, func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from .bodies import BodyStore, digest
from .config import StorageConfig
from .db import MessageRow, create_tables, make_engine, make_session_factory, sqlite_url
from .models import MessageRecord, message_key

logger = structlog.get_logger()

# Local-only state kept when the same message is upserted again
LOCAL_FIELDS = ("retrieved",)

_DATETIME = TypeAdapter(datetime)


@dataclass
class FolderReconciliation:
    """What :meth:`LocalMailStore.reconcile_folder` changed."""

    removed: list[str] = field(default_factory=list)
    moved: dict[str, str] = field(default_factory=dict)
    highest: int = 1


class LocalMailStore:
    """Metadata index and body blobs for one account."""

    def __init__(self, account: str, db_path: Path, bodies: BodyStore) -> None:
        self.account = account
        self._db_path = db_path
        self._bodies = bodies
        self._engine: AsyncEngine | None = None
        self._session_factory: async_sessionmaker[AsyncSession] | None = None
        self._write_lock = asyncio.Lock()
        self._log = logger.bind(account=account)

    @property
    def bodies(self) -> BodyStore:
        return self._bodies

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def init(self) -> None:
        await asyncio.to_thread(self._db_path.parent.mkdir, parents=True, exist_ok=True)
        self._engine = make_engine(sqlite_url(self._db_path))
        self._session_factory = make_session_factory(self._engine)
        await create_tables(self._engine, MessageRow)
        self._log.info("mail_store_opened", path=str(self._db_path))

    async def close(self) -> None:
        if self._engine is not None:
            await self._engine.dispose()
            self._engine = None
            self._session_factory = None
            self._log.info("mail_store_closed")

    def _session(self) -> AsyncSession:
        assert self._session_factory is not None, "Mail store not initialized"
        return self._session_factory()

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    async def upsert_message(self, record: MessageRecord) -> bool:
        """Insert *record*, or update the stored record with the same key.

        Returns ``True`` when a new record was inserted.
        """
        document = record.to_document()
        async with self._write_lock:
            async with self._session() as session:
                session.add(_row(document))
                try:
                    await session.commit()
                    return True
                except IntegrityError:
                    await session.rollback()

                existing = await session.get(MessageRow, record.key)
                assert existing is not None, "duplicate key vanished under the write lock"
                replaced = existing.document.get("uid") != document.get("uid")
                if not replaced:
                    for name in LOCAL_FIELDS:
                        document[name] = existing.document.get(name, document[name])
                _assign(existing, document)
                await session.commit()
            if replaced:
                # The body on disk belongs to the message that used to hold this key
                await self._bodies.delete([record.key])
            return False

    async def update_fields(self, key: str, fields: dict[str, Any]) -> bool:
        """Merge *fields* into the stored record.  Returns ``False`` if *key* is unknown."""
        return await self.update_many({key: fields}) == 1

    async def update_many(self, changes: dict[str, dict[str, Any]]) -> int:
        """Merge field changes into several records in one transaction."""
        if not changes:
            return 0
        async with self._write_lock:
            async with self._session() as session:
                result = await session.execute(select(MessageRow).where(MessageRow.key.in_(list(changes))))
                rows = list(result.scalars())
                for row in rows:
                    _assign(row, {**row.document, **changes[row.key]})
                await session.commit()
        return len(rows)

    async def delete_folder(self, folder: str) -> list[str]:
        """Remove every record in *folder* and its body blobs."""
        async with self._write_lock:
            async with self._session() as session:
                result = await session.execute(select(MessageRow.key).where(MessageRow.folder == folder))
                keys = list(result.scalars())
                await session.execute(delete(MessageRow).where(MessageRow.folder == folder))
                await session.commit()
        await self._bodies.delete(keys)
        self._log.info("folder_records_purged", folder=folder, removed=len(keys))
        return keys

    async def reconcile_folder(self, folder: str, server_uids: Sequence[int]) -> FolderReconciliation:
        """Align *folder* with the server after messages were expunged.

        *server_uids* are the folder's UIDs in sequence order.  Records
        whose UID is no longer on the server are deleted together with their
        bodies.  Survivors move to the key of their current sequence
        number, bodies included, so retrieved state is kept.
        ``highest`` is the largest sequence number still stored.
        """
        position = {uid: seqno for seqno, uid in enumerate(server_uids, start=1)}
        outcome = FolderReconciliation()
        relocated: list[tuple[str, dict[str, Any]]] = []

        async with self._write_lock:
            async with self._session() as session:
                result = await session.execute(select(MessageRow.document).where(MessageRow.folder == folder))
                documents = sorted(result.scalars(), key=lambda doc: doc["seqno"])
                taken: set[int] = set()
                for doc in documents:
                    seqno = position.get(doc.get("uid"))
                    if seqno is None or seqno in taken:
                        outcome.removed.append(doc["key"])
                        continue
                    taken.add(seqno)
                    if seqno != doc["seqno"]:
                        new_key = message_key(folder, seqno)
                        outcome.moved[doc["key"]] = new_key
                        relocated.append((doc["key"], {**doc, "key": new_key, "seqno": seqno}))
                outcome.highest = max(taken, default=1)

                stale = [*outcome.removed, *outcome.moved]
                if stale:
                    await session.execute(delete(MessageRow).where(MessageRow.key.in_(stale)))
                    session.add_all(_row(doc) for _, doc in relocated)
                    await session.commit()

            # Read every moved body before writing any, targets may overlap sources
            bodies = {old: await self._bodies.load(old) for old in outcome.moved}
            await self._bodies.delete([*outcome.removed, *outcome.moved])
            for old_key, doc in relocated:
                if bodies[old_key] is not None:
                    await self._bodies.save(doc["key"], {**bodies[old_key], "key": doc["key"], "seqno": doc["seqno"]})

        self._log.info(
            "folder_reconciled",
            folder=folder,
            removed=len(outcome.removed),
            moved=len(outcome.moved),
            highest=outcome.highest,
        )
        return outcome

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def find_by_key(self, key: str) -> MessageRecord | None:
        async with self._session() as session:
            row = await session.get(MessageRow, key)
            return MessageRecord.model_validate(row.document) if row is not None else None

    async def find_by_folder(
        self,
        folder: str,
        projection: Sequence[str] | None = None,
        skip: int = 0,
        limit: int | None = None,
    ) -> list[dict[str, Any]]:
        """Documents in *folder*, newest first, optionally reduced to *projection*."""
        stmt = (
            select(MessageRow.document)
            .where(MessageRow.folder == folder)
            .order_by(MessageRow.date.desc(), MessageRow.key)
            .offset(skip)
        )
        if limit is not None:
            stmt = stmt.limit(limit)
        async with self._session() as session:
            result = await session.execute(stmt)
            return [_project(doc, projection) for doc in result.scalars()]

    async def find_all(self, projection: Sequence[str] | None = None) -> list[dict[str, Any]]:
        async with self._session() as session:
            result = await session.execute(select(MessageRow.document).order_by(MessageRow.key))
            return [_project(doc, projection) for doc in result.scalars()]

    async def find_not_retrieved(self, limit: int | None = None) -> list[MessageRecord]:
        stmt = (
            select(MessageRow.document)
            .where(MessageRow.retrieved.is_(False))
            .order_by(MessageRow.date.desc(), MessageRow.key)
        )
        if limit is not None:
            stmt = stmt.limit(limit)
        async with self._session() as session:
            result = await session.execute(stmt)
            return [MessageRecord.model_validate(doc) for doc in result.scalars()]

    async def count_by_folder(self, folder: str) -> int:
        async with self._session() as session:
            result = await session.execute(
                select(func.count()).select_from(MessageRow).where(MessageRow.folder == folder)
            )
            return result.scalar_one()

    async def all_keys(self) -> set[str]:
        async with self._session() as session:
            result = await session.execute(select(MessageRow.key))
            return set(result.scalars())

    # ------------------------------------------------------------------
    # Bodies
    # ------------------------------------------------------------------

    async def store_body(self, key: str, blob: dict[str, Any]) -> None:
        await self._bodies.save(key, blob)

    async def load_body(self, key: str) -> dict[str, Any] | None:
        return await self._bodies.load(key)

    async def prune_bodies(self) -> int:
        return await self._bodies.prune(await self.all_keys())


class MailStoreRegistry:
    """Creates one :class:`LocalMailStore` per account and owns their lifetime."""

    def __init__(self, config: StorageConfig) -> None:
        self._config = config
        self._stores: dict[str, LocalMailStore] = {}
        self._lock = asyncio.Lock()

    async def open_store(self, account: str) -> LocalMailStore:
        """Return the account's store, initializing it on first request."""
        async with self._lock:
            store = self._stores.get(account)
            if store is None:
                name = digest(account)
                store = LocalMailStore(
                    account,
                    self._config.db_dir / f"{name}.db",
                    BodyStore(self._config.mail_dir, account),
                )
                await store.init()
                self._stores[account] = store
            return store

    async def close_store(self, account: str) -> None:
        async with self._lock:
            store = self._stores.pop(account, None)
        if store is not None:
            await store.close()

    async def close_all(self) -> None:
        async with self._lock:
            stores = list(self._stores.values())
            self._stores.clear()
        for store in stores:
            await store.close()

    def __contains__(self, account: str) -> bool:
        return account in self._stores


# ----------------------------------------------------------------------
# Helpers
# ----------------------------------------------------------------------


def _columns(document: dict[str, Any]) -> dict[str, Any]:
    """Column values lifted out of a record document."""
    return {
        "folder": document["folder"],
        "date": _timestamp(document.get("date")),
        "retrieved": bool(document.get("retrieved")),
        "document": document,
    }


def _row(document: dict[str, Any]) -> MessageRow:
    return MessageRow(key=document["key"], **_columns(document))


def _assign(row: MessageRow, document: dict[str, Any]) -> None:
    for name, value in _columns(document).items():
        setattr(row, name, value)


def _timestamp(value: Any) -> float | None:
    if value is None:
        return None
    # Documents hold ISO strings after a JSON dump
    return _DATETIME.validate_python(value).timestamp()


def _project(document: dict[str, Any], projection: Sequence[str] | None) -> dict[str, Any]:
    if not projection:
        return document
    fields = {"key", *projection}
    return {name: document[name] for name in fields if name in document}
