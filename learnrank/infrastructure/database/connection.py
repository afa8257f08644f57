# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Aggregate store connection management using SQLAlchemy async.

Uses SQLAlchemy 2.0 async API with the asyncpg driver in production and
aiosqlite for local runs and tests.

Example:
    from learnrank.infrastructure.database.connection import (
        init_database,
        get_session,
    )

    # Initialize at application startup
    await init_database(settings)

    async with get_session() as session:
        result = await session.execute(select(LearnerAggregateRow))
        rows = result.scalars().all()
"""

from contextlib import asynccontextmanager
from typing import TYPE_CHECKING, Any, AsyncIterator, Optional

from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from learnrank.infrastructure.database.models import Base

if TYPE_CHECKING:
    from learnrank.core.config.settings import DatabaseSettings, Settings

# Module-level state for the aggregate store connection
_engine: Optional[AsyncEngine] = None
_sessionmaker: Optional[async_sessionmaker[AsyncSession]] = None


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


def create_engine(db_settings: "DatabaseSettings", echo: bool = False) -> AsyncEngine:
    """Create an async engine for the configured database.

    SQLite engines get no pool sizing and a generous busy timeout, since
    concurrent writers wait on the database file lock.

    Args:
        db_settings: Database configuration.
        echo: Log emitted SQL.

    Returns:
        A new AsyncEngine.
    """
    if db_settings.is_sqlite:
        return create_async_engine(
            db_settings.url,
            connect_args={"timeout": 30},
            echo=echo,
        )

    engine_kwargs: dict[str, Any] = {
        "pool_size": db_settings.pool_size,
        "max_overflow": db_settings.max_overflow,
        "pool_pre_ping": True,
        "pool_recycle": 1800,
    }
    return create_async_engine(db_settings.url, echo=echo, **engine_kwargs)


def create_sessionmaker(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """Create the sessionmaker used by repositories and the bulk executor."""
    return async_sessionmaker(
        bind=engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


async def init_database(settings: "Settings", create_schema: bool = False) -> None:
    """Initialize the aggregate store connection pool.

    This should be called once at application or worker startup.

    Args:
        settings: Application settings containing database configuration.
        create_schema: Create missing tables (local runs and tests; production
            schemas are provisioned outside this package).

    Raises:
        DatabaseError: If connection pool creation fails.
    """
    global _engine, _sessionmaker

    try:
        _engine = create_engine(settings.db, echo=settings.debug and settings.is_development)
        _sessionmaker = create_sessionmaker(_engine)
        if create_schema:
            await create_tables(_engine)
    except SQLAlchemyError as e:
        raise DatabaseError("Failed to initialize database connection", e) from e


async def create_tables(engine: AsyncEngine) -> None:
    """Create every aggregate store table that does not exist yet."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def close_database() -> None:
    """Close the connection pool.

    This should be called at shutdown to properly close all connections.
    """
    global _engine, _sessionmaker

    if _engine is not None:
        await _engine.dispose()
        _engine = None
        _sessionmaker = None


def get_engine() -> AsyncEngine:
    """Get the async engine.

    Returns:
        The SQLAlchemy async engine.

    Raises:
        DatabaseError: If the database has not been initialized.
    """
    if _engine is None:
        raise DatabaseError("Database not initialized. Call init_database() first.")
    return _engine


def get_sessionmaker() -> async_sessionmaker[AsyncSession]:
    """Get the sessionmaker.

    Returns:
        The SQLAlchemy async sessionmaker.

    Raises:
        DatabaseError: If the database has not been initialized.
    """
    if _sessionmaker is None:
        raise DatabaseError("Database not initialized. Call init_database() first.")
    return _sessionmaker


@asynccontextmanager
async def get_session() -> AsyncIterator[AsyncSession]:
    """Get an async session.

    The session is automatically committed on success and rolled back
    on exception.

    Yields:
        AsyncSession for database operations.

    Raises:
        DatabaseError: If the database has not been initialized or
            if a database operation fails.
    """
    sessionmaker = get_sessionmaker()

    async with sessionmaker() as session:
        try:
            yield session
            await session.commit()
        except SQLAlchemyError as e:
            await session.rollback()
            raise DatabaseError("Database operation failed", e) from e
        except Exception:
            await session.rollback()
            raise


async def check_database_connection() -> bool:
    """Check if the database is reachable.

    Returns:
        True if the database is reachable, False otherwise.
    """
    if _engine is None:
        return False

    try:
        async with _engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
        return True
    except SQLAlchemyError:
        return False
