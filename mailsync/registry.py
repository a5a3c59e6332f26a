"""Account registry: one record per mail account in a shared SQLite database."""

from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Any

import structlog
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from .config import StorageConfig
from .db import AccountRow, create_tables, make_engine, make_session_factory
from .errors import AccountExistsError, AccountNotFoundError
from .models import Account

logger = structlog.get_logger()


class AccountRegistry:
    """Durable store keyed by login identifier.

    Holds the encrypted login secret and the persisted folder tree for
    every account.
    """

    def __init__(self, config: StorageConfig) -> None:
        self._config = config
        self._engine: AsyncEngine | None = None
        self._session_factory: async_sessionmaker[AsyncSession] | None = None
        self._write_lock = asyncio.Lock()

    async def init(self) -> None:
        db_dir: Path = self._config.db_dir
        await asyncio.to_thread(db_dir.mkdir, parents=True, exist_ok=True)
        self._engine = make_engine(self._config.registry_url)
        self._session_factory = make_session_factory(self._engine)
        await create_tables(self._engine, AccountRow)
        logger.info("account_registry_opened", path=str(db_dir / self._config.registry_filename))

    async def close(self) -> None:
        if self._engine is not None:
            await self._engine.dispose()
            self._engine = None
            self._session_factory = None

    def _session(self) -> AsyncSession:
        assert self._session_factory is not None, "Account registry not initialized"
        return self._session_factory()

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    async def find(self, user: str) -> Account | None:
        async with self._session() as session:
            row = await session.get(AccountRow, user)
            return Account.model_validate(row.document) if row is not None else None

    async def get(self, user: str) -> Account:
        """Like :meth:`find` but raises :class:`AccountNotFoundError`."""
        account = await self.find(user)
        if account is None:
            raise AccountNotFoundError(f"No account registered for {user}")
        return account

    async def list_accounts(self) -> list[Account]:
        async with self._session() as session:
            result = await session.execute(select(AccountRow.document).order_by(AccountRow.user))
            return [Account.model_validate(doc) for doc in result.scalars()]

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    async def insert(self, account: Account) -> None:
        async with self._write_lock:
            async with self._session() as session:
                session.add(AccountRow(user=account.user, document=account.model_dump(mode="json")))
                try:
                    await session.commit()
                except IntegrityError as exc:
                    await session.rollback()
                    raise AccountExistsError(f"Account {account.user} is already registered") from exc
        logger.info("account_registered", user=account.user, host=account.imap.host)

    async def update_fields(self, user: str, fields: dict[str, Any]) -> Account:
        """Replace top-level fields of the stored account and return the result."""
        async with self._write_lock:
            async with self._session() as session:
                row = await session.get(AccountRow, user)
                if row is None:
                    raise AccountNotFoundError(f"No account registered for {user}")
                account = Account.model_validate({**row.document, **fields})
                row.document = account.model_dump(mode="json")
                await session.commit()
        logger.debug("account_updated", user=user, fields=sorted(fields))
        return account
