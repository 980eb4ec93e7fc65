"""
Async engine and session lifecycle.

The engine is built on first use from DATABASE_URL and torn down by
close_db(), after which the next caller builds a fresh one. Services only
flush; the commit belongs to whoever opened the session, which is what
session_scope() and get_db() do.
"""
from collections.abc import AsyncGenerator, AsyncIterator
from contextlib import asynccontextmanager
from typing import Any

import structlog
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from giftledger.config import Settings, get_settings
from giftledger.database.models import Base

logger = structlog.get_logger(__name__)

_engine: AsyncEngine | None = None
_sessions: async_sessionmaker[AsyncSession] | None = None


def _build_engine(settings: Settings) -> AsyncEngine:
    options: dict[str, Any] = {"echo": settings.database_echo}
    # SQLite (tests, local runs) has no server-side pool to tune
    if not settings.is_sqlite:
        options.update(
            pool_size=settings.database_pool_size,
            max_overflow=settings.database_max_overflow,
            pool_pre_ping=True,
            pool_recycle=1800,
        )
    engine = create_async_engine(settings.database_url, **options)
    logger.info("database_engine_created", dialect=engine.dialect.name, pooled=not settings.is_sqlite)
    return engine


def get_engine() -> AsyncEngine:
    global _engine
    if _engine is None:
        _engine = _build_engine(get_settings())
    return _engine


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    """
    Shared session factory.

    Rows stay readable after commit (ledger results are serialized after the
    transaction closes) and nothing flushes until a service asks for it.
    """
    global _sessions
    if _sessions is None:
        _sessions = async_sessionmaker(get_engine(), expire_on_commit=False, autoflush=False)
    return _sessions


@asynccontextmanager
async def session_scope() -> AsyncIterator[AsyncSession]:
    """One unit of work: commit when the block exits cleanly, roll back otherwise."""
    async with get_session_factory()() as session:
        try:
            yield session
        except Exception:
            await session.rollback()
            raise
        await session.commit()


async def get_db() -> AsyncGenerator[AsyncSession, Any]:
    """FastAPI dependency wrapping each portal request in session_scope()."""
    async with session_scope() as session:
        yield session


async def init_db() -> None:
    """Create missing tables. Production schemas are managed by the alembic migrations."""
    async with get_engine().begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def close_db() -> None:
    global _engine, _sessions
    if _engine is None:
        return
    await _engine.dispose()
    _engine, _sessions = None, None
    logger.info("database_engine_disposed")
