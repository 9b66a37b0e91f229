"""Async SQLAlchemy engine and session factory."""

from __future__ import annotations

import logging
import os

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

logger = logging.getLogger(__name__)

_engine: AsyncEngine | None = None
_session_factory: async_sessionmaker[AsyncSession] | None = None


def get_database_url(config_url: str | None = None) -> str | None:
    """Resolve database URL: env var > config > None."""
    url = os.environ.get("CASE_RAG_DATABASE_URL") or config_url
    if not url:
        return None
    # Ensure asyncpg driver prefix
    if url.startswith("postgresql://"):
        url = url.replace("postgresql://", "postgresql+asyncpg://", 1)
    elif url.startswith("sqlite://"):
        url = url.replace("sqlite://", "sqlite+aiosqlite://", 1)
    return url


def init_engine(url: str) -> async_sessionmaker[AsyncSession]:
    """Create the async engine and session factory."""
    global _engine, _session_factory

    kwargs: dict = {"echo": False}
    if not url.startswith("sqlite"):
        kwargs.update(pool_size=5, max_overflow=10)
    _engine = create_async_engine(url, **kwargs)
    _session_factory = async_sessionmaker(_engine, expire_on_commit=False)
    logger.info("Database engine initialized")
    return _session_factory


async def create_schema() -> None:
    """Create all tables (used for SQLite and tests; Postgres uses Alembic)."""
    from case_rag.db.models import Base

    if _engine is None:
        raise RuntimeError("Database not initialised; call init_engine() first")
    async with _engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def close_engine() -> None:
    """Dispose the engine and release all connections."""
    global _engine, _session_factory

    if _engine is not None:
        await _engine.dispose()
        _engine = None
        _session_factory = None
        logger.info("Database engine closed")


def get_session() -> AsyncSession:
    """Return a new async session. Must be used as async context manager."""
    if _session_factory is None:
        raise RuntimeError("Database not initialised; call init_engine() first")
    return _session_factory()
