"""
Async SQLAlchemy database setup.

Supports PostgreSQL (production) and SQLite (development).
"""
from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator, AsyncIterator

from sqlalchemy import event
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase

from stemhub.config import settings as settings
from stemhub.services.errors import TransactionError, WorkflowError

logger = logging.getLogger(__name__)


class Base(DeclarativeBase):
    """Base class for SQLAlchemy models."""
    pass


# Global engine and session factory (initialized on startup)
_engine: AsyncEngine | None = None
_async_session_factory: async_sessionmaker[AsyncSession] | None = None

# Key in ``AsyncSession.info`` tracking how many units of work are open.
_UOW_DEPTH_KEY = "stemhub_uow_depth"


def get_database_url() -> str:
    """Get the database URL from settings."""
    url = settings.database_url
    if not url:
        # Default to SQLite for development
        url = "sqlite+aiosqlite:///./stemhub.db"
        logger.warning(f"No database URL configured, using SQLite: {url}")
    return url


def enable_sqlite_foreign_keys(engine: AsyncEngine) -> None:
    """Turn on FK enforcement for every SQLite connection of *engine*.

    SQLite ignores ``FOREIGN KEY`` clauses unless the pragma is set per
    connection; without it an orphaned VersionStem would go unnoticed.
    """

    @event.listens_for(engine.sync_engine, "connect")
    def _set_pragma(dbapi_connection: Any, _record: Any) -> None:
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()


async def init_db() -> None:
    """Initialize database engine and session factory.

    Schema is managed by Alembic (``alembic upgrade head``).  This function
    only creates the async engine and session factory.
    """
    global _engine, _async_session_factory

    database_url = get_database_url()
    logger.info(f"Initializing database: {database_url.split('@')[-1] if '@' in database_url else database_url}")

    connect_args: dict[str, Any] = {}
    if database_url.startswith("sqlite"):
        connect_args["check_same_thread"] = False

    _engine = create_async_engine(
        database_url,
        echo=settings.debug,
        connect_args=connect_args,
    )
    if database_url.startswith("sqlite"):
        enable_sqlite_foreign_keys(_engine)

    _async_session_factory = async_sessionmaker(
        bind=_engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )

    # Import models so the mapper registry is complete even though Alembic owns DDL.
    from stemhub.db import models  # noqa: F401

    logger.info("Database initialized successfully")


async def close_db() -> None:
    """Close database connection."""
    global _engine, _async_session_factory

    if _engine:
        await _engine.dispose()
        _engine = None
        _async_session_factory = None
        logger.info("Database connection closed")


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """
    Dependency for getting async database sessions.

    Usage:
        @app.get("/tracks")
        async def get_tracks(db: AsyncSession = Depends(get_db)):
            ...
    """
    if _async_session_factory is None:
        raise RuntimeError("Database not initialized. Call init_db() first.")

    async with _async_session_factory() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


def AsyncSessionLocal() -> AsyncSession:
    """
    Get a new async session directly (for non-FastAPI contexts).

    Usage:
        async with AsyncSessionLocal() as session:
            ...
    """
    if _async_session_factory is None:
        raise RuntimeError("Database not initialized. Call init_db() first.")
    return _async_session_factory()


@asynccontextmanager
async def unit_of_work(session: AsyncSession) -> AsyncIterator[AsyncSession]:
    """Run a workflow operation as one all-or-nothing transaction.

    The outermost unit of work commits on success and rolls the session back
    on any error, so a failed merge, rollback or decision leaves no trace.
    Nested units of work (``record_decision`` calling ``merge_upstream``)
    join the outer one and never commit on their own.

    Raw ``SQLAlchemyError`` is re-raised as ``TransactionError``; typed
    workflow errors propagate unchanged.
    """
    depth: int = session.info.get(_UOW_DEPTH_KEY, 0)
    session.info[_UOW_DEPTH_KEY] = depth + 1
    try:
        yield session
        if depth == 0:
            await session.commit()
    except WorkflowError:
        if depth == 0:
            await session.rollback()
        raise
    except SQLAlchemyError as exc:
        if depth == 0:
            await session.rollback()
            logger.error("❌ Transaction rolled back: %s", exc)
            raise TransactionError(f"Transaction could not commit: {exc}") from exc
        raise
    except BaseException:
        if depth == 0:
            await session.rollback()
        raise
    finally:
        session.info[_UOW_DEPTH_KEY] = depth
