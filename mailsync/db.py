"""SQLAlchemy ORM models and async engine helpers for the SQLite stores.

Every account gets its own metadata database holding :class:`MessageRow`;
the account registry lives in a separate database holding
:class:`AccountRow`.  Both keep the full record as a JSON document and
lift the columns they are queried by.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any

from sqlalchemy import JSON, Boolean, Float, Text
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    pass


class MessageRow(Base):
    __tablename__ = "messages"

    key: Mapped[str] = mapped_column(Text, primary_key=True)
    folder: Mapped[str] = mapped_column(Text, nullable=False, index=True)
    date: Mapped[float | None] = mapped_column(Float, index=True)
    retrieved: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, index=True)
    document: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False)


class AccountRow(Base):
    __tablename__ = "accounts"

    user: Mapped[str] = mapped_column(Text, primary_key=True)
    document: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False)


def sqlite_url(path: Path) -> str:
    return f"sqlite+aiosqlite:///{path}"


def make_engine(url: str) -> AsyncEngine:
    return create_async_engine(url, echo=False)


def make_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


async def create_tables(engine: AsyncEngine, *models: type[Base]) -> None:
    """Create the tables for *models* if they do not exist yet."""
    tables = [model.__table__ for model in models]
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all, tables=tables)
