"""
Database manager for the event log and client request tables.
"""

import asyncio
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any

from sqlalchemy import event, text
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import StaticPool

from .models import Base

logger = logging.getLogger(__name__)


class DatabaseError(Exception):
    """Base database error."""


class DatabaseManager:
    """Manages the async engine and sessions for a service."""

    def __init__(
        self,
        url: str,
        echo: bool = False,
        pool_size: int = 5,
        max_overflow: int = 10,
        pool_recycle: int = 3600,
        service_name: str = "hms-service",
    ):
        self.url = url
        self.echo = echo
        self.pool_size = pool_size
        self.max_overflow = max_overflow
        self.pool_recycle = pool_recycle
        self.service_name = service_name

        self._engine: AsyncEngine | None = None
        self._session_factory: async_sessionmaker[AsyncSession] | None = None
        self._initialized = False
        self._init_lock = asyncio.Lock()

    @property
    def is_sqlite(self) -> bool:
        return self.url.startswith("sqlite")

    def _engine_options(self) -> dict[str, Any]:
        options: dict[str, Any] = {"echo": self.echo}
        if self.is_sqlite:
            if ":memory:" in self.url or self.url.rstrip("/").endswith("sqlite+aiosqlite:"):
                options["poolclass"] = StaticPool
            options["connect_args"] = {"timeout": 30}
        else:
            options.update(
                pool_size=self.pool_size,
                max_overflow=self.max_overflow,
                pool_recycle=self.pool_recycle,
                pool_pre_ping=True,
            )
        return options

    async def initialize(self) -> None:
        """Initialize the database manager."""
        async with self._init_lock:
            if self._initialized:
                return

            try:
                self._engine = create_async_engine(self.url, **self._engine_options())
                self._session_factory = async_sessionmaker(
                    self._engine,
                    class_=AsyncSession,
                    expire_on_commit=False,
                )
                self._setup_event_listeners()

                async with self._engine.connect() as conn:
                    await conn.execute(text("SELECT 1"))

                self._initialized = True
                logger.info(
                    "Database manager initialized for service %s at %s",
                    self.service_name,
                    self.masked_url(),
                )

            except Exception as e:
                logger.error("Failed to initialize database manager: %s", e)
                if self._engine is not None:
                    await self._engine.dispose()
                    self._engine = None
                raise DatabaseError(f"Failed to initialize database: {e}") from e

    def _setup_event_listeners(self) -> None:
        if not self.is_sqlite:
            return

        @event.listens_for(self._engine.sync_engine, "connect")
        def set_sqlite_pragma(dbapi_connection, connection_record):
            """Set SQLite pragmas for concurrent readers and a single writer."""
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.execute("PRAGMA journal_mode=WAL")
            cursor.execute("PRAGMA synchronous=NORMAL")
            cursor.execute("PRAGMA busy_timeout=30000")
            cursor.close()

    async def close(self) -> None:
        """Close all database connections."""
        if self._engine is not None:
            await self._engine.dispose()
            self._engine = None
        self._session_factory = None
        self._initialized = False
        logger.info("Database manager closed for service: %s", self.service_name)

    @asynccontextmanager
    async def session(self) -> AsyncIterator[AsyncSession]:
        """Get an async database session."""
        if not self._initialized:
            await self.initialize()

        session = self._session_factory()
        try:
            yield session
        except Exception as e:
            await session.rollback()
            logger.debug("Database session error: %s", e)
            raise
        finally:
            await session.close()

    async def create_tables(self, metadata=None) -> None:
        """Create all tables defined in the metadata."""
        if not self._initialized:
            await self.initialize()

        target_metadata = metadata or Base.metadata
        try:
            async with self._engine.begin() as conn:
                await conn.run_sync(target_metadata.create_all)
            logger.info("Database tables created for service: %s", self.service_name)
        except Exception as e:
            logger.error("Failed to create tables: %s", e)
            raise DatabaseError(f"Failed to create tables: {e}") from e

    def masked_url(self) -> str:
        """Get connection URL with masked password."""
        url = self.url
        if "://" in url:
            scheme, rest = url.split("://", 1)
            if "@" in rest:
                auth, host_part = rest.split("@", 1)
                if ":" in auth:
                    user, _ = auth.split(":", 1)
                    auth = f"{user}:***"
                return f"{scheme}://{auth}@{host_part}"
        return url

    @property
    def is_initialized(self) -> bool:
        return self._initialized

    @property
    def engine(self) -> AsyncEngine:
        """Get the async engine."""
        if self._engine is None:
            raise DatabaseError("Database not initialized")
        return self._engine
