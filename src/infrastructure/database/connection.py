# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Local database connection management using SQLAlchemy async.

The analytics client keeps pending events and batch metadata in an
on-device SQLite file, accessed through SQLAlchemy 2.0 Core with the
aiosqlite driver.

A LocalDatabase instance is created once by the application and handed
to every component that needs storage; there is no module-level engine.
All writes go through write(), which holds a single asyncio.Lock so that
exactly one mutation is in flight at a time.

Example:
    from src.infrastructure.database.connection import LocalDatabase

    database = LocalDatabase(settings.local_db)
    await database.init()

    async with database.write() as conn:
        await conn.execute(analytics_events.insert().values(...))

    async with database.read() as conn:
        rows = (await conn.execute(select(analytics_events))).all()

    await database.close()
"""

import asyncio
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING, AsyncIterator, Optional

from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine, create_async_engine

from src.infrastructure.database.tables import metadata

if TYPE_CHECKING:
    from src.core.config.settings import LocalDatabaseSettings


class DatabaseError(Exception):
    """Base exception for database operations.

    Attributes:
        message: Human-readable error description.
        original_error: The underlying SQLAlchemy or database error.
    """

    def __init__(self, message: str, original_error: Optional[Exception] = None) -> None:
        """Initialize the database error.

        Args:
            message: Human-readable error description.
            original_error: The underlying exception that caused this error.
        """
        super().__init__(message)
        self.message = message
        self.original_error = original_error

    def __str__(self) -> str:
        """Return string representation of the error."""
        if self.original_error:
            return f"{self.message}: {self.original_error}"
        return self.message


class LocalDatabase:
    """Handle on the local analytics database.

    Attributes:
        url: SQLAlchemy connection URL.
        echo: Whether SQL statements are logged.
    """

    def __init__(self, settings: "LocalDatabaseSettings") -> None:
        """Initialize the handle without connecting.

        Args:
            settings: Local database settings.
        """
        self.url = settings.url
        self.echo = settings.echo
        self._engine: Optional[AsyncEngine] = None
        self._write_lock = asyncio.Lock()

    async def init(self) -> None:
        """Create the engine and ensure the schema exists.

        Raises:
            DatabaseError: If the engine or schema cannot be created.
        """
        if self._engine is not None:
            return

        try:
            self._engine = create_async_engine(self.url, echo=self.echo)
            async with self._engine.begin() as conn:
                await conn.run_sync(metadata.create_all)
        except SQLAlchemyError as e:
            raise DatabaseError("Failed to initialize local database", e) from e

    async def close(self) -> None:
        """Dispose of the engine and its pooled connections."""
        if self._engine is not None:
            await self._engine.dispose()
            self._engine = None

    @property
    def engine(self) -> AsyncEngine:
        """Get the async engine.

        Raises:
            DatabaseError: If init() has not been called.
        """
        if self._engine is None:
            raise DatabaseError("Local database not initialized. Call init() first.")
        return self._engine

    @asynccontextmanager
    async def read(self) -> AsyncIterator[AsyncConnection]:
        """Open a connection for queries.

        Yields:
            AsyncConnection for read operations.

        Raises:
            DatabaseError: If the query fails.
        """
        try:
            async with self.engine.connect() as conn:
                yield conn
        except SQLAlchemyError as e:
            raise DatabaseError("Database read failed", e) from e

    @asynccontextmanager
    async def write(self) -> AsyncIterator[AsyncConnection]:
        """Open a transaction under the single-writer lock.

        The transaction commits when the block exits normally and rolls
        back on any exception, including cancellation.

        Yields:
            AsyncConnection inside a transaction.

        Raises:
            DatabaseError: If the write fails.
        """
        async with self._write_lock:
            try:
                async with self.engine.begin() as conn:
                    yield conn
            except SQLAlchemyError as e:
                raise DatabaseError("Database write failed", e) from e

    async def check_connection(self) -> bool:
        """Check that the database file is reachable.

        Returns:
            True if a trivial query succeeds, False otherwise.
        """
        if self._engine is None:
            return False

        try:
            async with self._engine.connect() as conn:
                await conn.execute(text("SELECT 1"))
            return True
        except SQLAlchemyError:
            return False
