"""
Database configuration and session management

Sessions retry once the engine has been reset after a dropped connection.
"""
import asyncio
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

import structlog
from sqlalchemy import text
from sqlalchemy.exc import DisconnectionError, InterfaceError, OperationalError
from sqlalchemy.ext.asyncio import (
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase

from iplicensing.config import settings

logger = structlog.get_logger()


class Base(DeclarativeBase):
    """Base class for all database models."""
    pass


# Lazy initialization of engine and session factory
_engine = None
_async_session_factory = None
_engine_lock = asyncio.Lock()

CONNECTION_ERROR_PATTERNS = [
    "connection was closed",
    "connection is closed",
    "server closed the connection",
    "connection refused",
    "connection reset",
    "connection timed out",
    "terminating connection",
    "too many connections",
]

MAX_RETRIES = 3
RETRY_DELAY_SECONDS = 1.0


def _is_connection_error(error: Exception) -> bool:
    """Check if an exception is a connection-related error."""
    error_str = str(error).lower()
    return any(pattern in error_str for pattern in CONNECTION_ERROR_PATTERNS)


def _create_engine():
    url = settings.async_database_url
    if url.startswith("sqlite"):
        return create_async_engine(url, echo=settings.debug)

    return create_async_engine(
        url,
        pool_size=settings.database_pool_size,
        max_overflow=settings.database_max_overflow,
        pool_pre_ping=True,
        pool_recycle=300,
        pool_timeout=30,
        echo=settings.debug,
    )


def get_engine():
    """Get or create the database engine."""
    global _engine
    if _engine is None:
        _engine = _create_engine()
    return _engine


def get_session_factory():
    """Get or create the session factory."""
    global _async_session_factory
    if _async_session_factory is None:
        _async_session_factory = async_sessionmaker(
            get_engine(),
            class_=AsyncSession,
            expire_on_commit=False,
            autoflush=False,
        )
    return _async_session_factory


async def reset_engine() -> None:
    """Dispose and recreate the engine (for connection recovery)."""
    global _engine, _async_session_factory

    async with _engine_lock:
        if _engine is not None:
            logger.warning("db_engine_disposing")
            try:
                await _engine.dispose()
            except (OperationalError, InterfaceError, DisconnectionError) as e:
                logger.error("db_engine_dispose_failed", error=str(e))
        _engine = _create_engine()
        _async_session_factory = async_sessionmaker(
            _engine,
            class_=AsyncSession,
            expire_on_commit=False,
            autoflush=False,
        )
        logger.info("db_engine_recreated")


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """
    Dependency for getting database sessions with automatic retry.

    The session is committed when the request handler returns and rolled
    back when it raises. Connection failures while opening the session
    reset the engine and retry; after the last attempt a 503 is raised.
    """
    from fastapi import HTTPException

    last_error: Exception | None = None

    for attempt in range(MAX_RETRIES):
        factory = get_session_factory()
        try:
            session = factory()
            await session.execute(text("SELECT 1"))
        except (OperationalError, InterfaceError, DisconnectionError) as e:
            last_error = e
            logger.warning(
                "db_connect_failed",
                attempt=attempt + 1,
                error=f"{type(e).__name__}: {e}",
            )
            if _is_connection_error(e) and attempt < MAX_RETRIES - 1:
                await reset_engine()
                await asyncio.sleep(RETRY_DELAY_SECONDS * (attempt + 1))
                continue
            break

        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise
        finally:
            await session.close()
        return

    logger.error("db_unavailable", attempts=MAX_RETRIES, error=str(last_error))
    raise HTTPException(
        status_code=503,
        detail="Database temporarily unavailable. Please try again in a few seconds.",
    )


@asynccontextmanager
async def get_db_context() -> AsyncGenerator[AsyncSession, None]:
    """Context manager for database sessions, used by workers and jobs."""
    factory = get_session_factory()
    async with factory() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


async def init_db() -> None:
    """Create tables for all registered models."""
    # Register every model on Base.metadata
    import iplicensing.models  # noqa: F401

    engine = get_engine()
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def close_db() -> None:
    """Close database connections."""
    engine = get_engine()
    await engine.dispose()
