"""Database engine and session management."""
from __future__ import annotations

from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from ..core.config import Settings
from ..models.base import Base


def build_engine(settings: Settings) -> AsyncEngine:
    """Create the async engine for the configured database.

    SQLite has no row locks, so every transaction is opened with
    ``BEGIN IMMEDIATE``: ledger writes then queue on the database write lock
    instead of failing with "database is locked" halfway through.
    """

    connect_args: dict[str, object] = {}
    if settings.is_sqlite:
        connect_args["timeout"] = 30

    engine = create_async_engine(
        settings.database_url,
        echo=settings.database_echo,
        pool_pre_ping=not settings.is_sqlite,
        connect_args=connect_args,
    )

    if settings.is_sqlite:

        @event.listens_for(engine.sync_engine, "connect")
        def _disable_driver_begin(dbapi_connection, connection_record):  # noqa: ANN001
            dbapi_connection.isolation_level = None

        @event.listens_for(engine.sync_engine, "begin")
        def _begin_immediate(conn):  # noqa: ANN001
            conn.exec_driver_sql("BEGIN IMMEDIATE")

    return engine


def build_sessionmaker(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """Return the session factory used by the ledger."""

    return async_sessionmaker(engine, expire_on_commit=False, class_=AsyncSession)


async def create_schema(engine: AsyncEngine) -> None:
    """Create tables that do not exist yet."""

    from .. import models  # noqa: F401 - register mappers

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
