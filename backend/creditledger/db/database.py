"""Database connection and transaction management."""

import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import declarative_base

from ..core.config import Settings, get_settings

logger = logging.getLogger(__name__)

# Base class for SQLAlchemy models
Base = declarative_base()


def normalize_database_url(url: str) -> str:
    """Rewrite Heroku-style and sync PostgreSQL URLs to the asyncpg driver."""
    if url.startswith("postgres://"):
        return url.replace("postgres://", "postgresql+asyncpg://", 1)
    if url.startswith("postgresql://") and "+asyncpg" not in url:
        return url.replace("postgresql://", "postgresql+asyncpg://", 1)
    return url


class Database:
    """
    Explicit storage handle shared by the ledger components.

    Owns the async engine and session factory. Components receive an instance
    at construction time instead of reaching for a module-level engine.

    Every transaction runs at the strictest isolation the backend offers:
    PostgreSQL uses SERIALIZABLE and honours SELECT ... FOR UPDATE row locks.
    SQLite has no row locks, so each transaction is opened with
    BEGIN IMMEDIATE, which takes the database write lock up front and
    serializes writers the same way.
    """

    def __init__(self, settings: Optional[Settings] = None, url: Optional[str] = None):
        self.settings = settings or get_settings()
        self.url = normalize_database_url(url or self.settings.database_url)
        self.is_sqlite = self.url.startswith("sqlite")
        self.engine: AsyncEngine = self._create_engine()
        self.sessionmaker = async_sessionmaker(
            self.engine,
            class_=AsyncSession,
            expire_on_commit=False,
        )

    def _create_engine(self) -> AsyncEngine:
        if self.is_sqlite:
            engine = create_async_engine(
                self.url,
                echo=self.settings.database_echo,
                connect_args={
                    "check_same_thread": False,
                    "timeout": self.settings.sqlite_busy_timeout_seconds,
                },
            )

            # Take over transaction control from the sqlite3 driver so that
            # BEGIN IMMEDIATE is emitted at the start of every transaction.
            @event.listens_for(engine.sync_engine, "connect")
            def _disable_driver_transactions(dbapi_connection, connection_record):
                dbapi_connection.isolation_level = None

            @event.listens_for(engine.sync_engine, "begin")
            def _begin_immediate(conn):
                conn.exec_driver_sql("BEGIN IMMEDIATE")

            return engine

        return create_async_engine(
            self.url,
            echo=self.settings.database_echo,
            isolation_level="SERIALIZABLE",
        )

    @asynccontextmanager
    async def session(self) -> AsyncIterator[AsyncSession]:
        """Plain session for read-only queries."""
        async with self.sessionmaker() as session:
            yield session

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[AsyncSession]:
        """
        Unit of work around a single database transaction.

        Commits on normal exit and rolls back if the block raises. A block
        that decides to abort may call ``await session.rollback()`` itself;
        nothing is committed afterwards.
        """
        async with self.sessionmaker() as session:
            try:
                yield session
                if session.in_transaction():
                    await session.commit()
            except BaseException:
                if session.in_transaction():
                    await session.rollback()
                raise

    async def init(self) -> None:
        """
        Create all tables.

        Call this on application startup if not using Alembic migrations.
        For production, prefer using Alembic migrations instead.
        """
        # Import models so they register on Base.metadata
        from . import models  # noqa: F401

        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        logger.info("Database schema ready")

    async def close(self) -> None:
        """Dispose of pooled connections. Call this on application shutdown."""
        await self.engine.dispose()
