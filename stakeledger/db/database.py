"""
Database connection and session management.
"""

import uuid
from contextlib import asynccontextmanager
from typing import AsyncGenerator, Optional

from sqlalchemy.exc import InterfaceError, OperationalError, TimeoutError as PoolTimeoutError
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import StaticPool

from stakeledger.config import settings
from stakeledger.db.models import Base
from stakeledger.services.base import TransientIOError
from stakeledger.utils.logging import get_logger

logger = get_logger(__name__)

# Global engine and session factory
_engine: Optional[AsyncEngine] = None
_session_factory: Optional[async_sessionmaker[AsyncSession]] = None

# Driver failures that mean "store unavailable" rather than "bad request"
CONNECTIVITY_ERRORS = (OperationalError, InterfaceError, PoolTimeoutError, ConnectionError)


def generate_id() -> str:
    """Generate a unique ID."""
    return str(uuid.uuid4())


async def init_db(database_url: Optional[str] = None) -> None:
    """Initialize database connection."""
    global _engine, _session_factory

    if database_url is None:
        database_url = settings.async_database_url

    # Convert postgres:// to postgresql+asyncpg://
    if database_url.startswith("postgres://"):
        database_url = database_url.replace("postgres://", "postgresql+asyncpg://", 1)
    elif database_url.startswith("postgresql://"):
        database_url = database_url.replace("postgresql://", "postgresql+asyncpg://", 1)

    if database_url.startswith("sqlite"):
        engine_kwargs: dict = {"connect_args": {"check_same_thread": False}}
        if ":memory:" in database_url or database_url.endswith("://"):
            # One shared connection so every session sees the same in-memory database
            engine_kwargs["poolclass"] = StaticPool
    else:
        engine_kwargs = {
            "pool_size": settings.db_pool_size,
            "max_overflow": settings.db_max_overflow,
            "pool_pre_ping": True,
        }

    _engine = create_async_engine(database_url, echo=False, **engine_kwargs)

    _session_factory = async_sessionmaker(
        _engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )

    logger.info("Database connection initialized", dialect=_engine.dialect.name)


async def create_tables() -> None:
    """Create all database tables."""
    if _engine is None:
        raise RuntimeError("Database not initialized")

    async with _engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    logger.info("Database tables created")


async def drop_tables() -> None:
    """Drop all database tables."""
    if _engine is None:
        raise RuntimeError("Database not initialized")

    async with _engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)


async def close_db() -> None:
    """Close database connection."""
    global _engine, _session_factory

    if _engine:
        await _engine.dispose()
        _engine = None
        _session_factory = None
        logger.info("Database connection closed")


def is_initialized() -> bool:
    return _session_factory is not None


@asynccontextmanager
async def get_session() -> AsyncGenerator[AsyncSession, None]:
    """
    Get an async database session (context manager for internal use).

    Commits on success and rolls back on any error. Connectivity failures
    are raised as TransientIOError so callers can retry.
    """
    if _session_factory is None:
        raise RuntimeError("Database not initialized")

    async with _session_factory() as session:
        try:
            yield session
            await session.commit()
        except CONNECTIVITY_ERRORS as e:
            await session.rollback()
            logger.warning("Database unavailable", error=str(e))
            raise TransientIOError(f"Database unavailable: {e}") from e
        except Exception:
            await session.rollback()
            raise


async def get_session_dependency() -> AsyncGenerator[AsyncSession, None]:
    """Get an async database session (FastAPI dependency)."""
    async with get_session() as session:
        yield session
