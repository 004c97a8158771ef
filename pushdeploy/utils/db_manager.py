"""
Run store connection management.

``DatabaseManager`` owns the async engine and hands out short-lived
sessions. Services receive ``get_async_session_context`` as their session
factory, so tests and the CLI can point them at another database.
"""

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any

from sqlalchemy import event
from sqlalchemy.engine import make_url
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlmodel import SQLModel

from ..settings import Settings, settings
from ..utils.logger import logger

# Seconds a writer waits for the SQLite write lock before failing
SQLITE_BUSY_TIMEOUT = 30


def _enable_sqlite_wal(dbapi_connection: Any, _record: Any) -> None:
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA journal_mode=WAL")
    cursor.close()


class DatabaseManager:
    """
    Lazily created async engine and session factory for the run store.

    Args:
        url: Async database URL; ``config.database_url`` when omitted
        config: Settings providing the URL and the debug flag
    """

    def __init__(self, url: str | None = None, config: Settings | None = None) -> None:
        self.config = config or settings
        self.url = url or self.config.database_url
        self._async_engine: AsyncEngine | None = None
        self._async_session_factory: async_sessionmaker[AsyncSession] | None = None

    @property
    def is_sqlite(self) -> bool:
        return self.url.startswith("sqlite")

    def _create_async_engine(self) -> AsyncEngine:
        if self.is_sqlite:
            database = make_url(self.url).database
            if database and database != ":memory:":
                Path(database).parent.mkdir(parents=True, exist_ok=True)
            engine = create_async_engine(
                self.url,
                connect_args={"check_same_thread": False, "timeout": SQLITE_BUSY_TIMEOUT},
                echo=self.config.debug,
            )
            # Readers keep working while a run commits its stage results
            event.listen(engine.sync_engine, "connect", _enable_sqlite_wal)
        else:
            engine = create_async_engine(
                self.url,
                echo=self.config.debug,
                pool_size=20,
                max_overflow=0,
                pool_pre_ping=True,
            )

        logger.info(f"Run store engine created: {make_url(self.url).render_as_string(hide_password=True)}")
        return engine

    @property
    def async_engine(self) -> AsyncEngine:
        if self._async_engine is None:
            self._async_engine = self._create_async_engine()
        return self._async_engine

    @property
    def async_session_factory(self) -> async_sessionmaker[AsyncSession]:
        if self._async_session_factory is None:
            self._async_session_factory = async_sessionmaker(
                self.async_engine,
                class_=AsyncSession,
                expire_on_commit=False,
            )
        return self._async_session_factory

    async def create_db_and_tables_async(self) -> None:
        """Create the run store tables if they do not exist."""
        # Registers every table on the metadata
        from .. import models  # noqa: F401

        async with self.async_engine.begin() as conn:
            await conn.run_sync(SQLModel.metadata.create_all)
        logger.debug("Run store tables are present")

    @asynccontextmanager
    async def get_async_session_context(self) -> AsyncGenerator[AsyncSession]:
        """
        Open a session that commits on success and rolls back on database errors.

        Usage:
            async with db_manager.get_async_session_context() as session:
                run = await RunRepository(session).get(run_id)
        """
        async with self.async_session_factory() as session:
            try:
                yield session
                await session.commit()
            except SQLAlchemyError as e:
                logger.error(f"Database error: {e}")
                await session.rollback()
                raise

    async def get_async_session(self) -> AsyncGenerator[AsyncSession]:
        """Session for a FastAPI dependency."""
        async with self.get_async_session_context() as session:
            yield session

    async def close(self) -> None:
        """Dispose the engine; the next session creates a new one."""
        if self._async_engine:
            await self._async_engine.dispose()
            self._async_engine = None
            self._async_session_factory = None
            logger.debug("Run store engine disposed")

    def __repr__(self) -> str:
        return (
            f"<DatabaseManager(url={make_url(self.url).render_as_string(hide_password=True)!r}, "
            f"connected={self._async_engine is not None})>"
        )


db_manager = DatabaseManager()
