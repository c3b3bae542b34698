"""
Async engine and sessions for SqlChatRepository.

settings.database.url is written with a plain scheme (postgresql://,
sqlite://) and rewritten to its async driver here: asyncpg for PostgreSQL,
aiosqlite for SQLite. URLs that already name a driver are used as given.

Lifecycle: init_db() at API startup creates missing tables, close_db() at
shutdown disposes the pool. Tests call configure_database() first to point
the engine at a throwaway SQLite file.
"""
from __future__ import annotations

import structlog
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

from sqlalchemy.engine import URL, make_url
from sqlalchemy.ext.asyncio import (
    AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine,
)

from config.settings import get_settings
from database.models import Base

logger = structlog.get_logger()

_ASYNC_DRIVERS = {
    "postgresql": "postgresql+asyncpg",
    "postgres": "postgresql+asyncpg",
    "sqlite": "sqlite+aiosqlite",
}

# Webhook handlers and timer callbacks share one pool per process
_POSTGRES_POOL = {
    "pool_size": 10,
    "max_overflow": 20,
    "pool_recycle": 1800,
    "pool_pre_ping": True,
}

_engine: Optional[AsyncEngine] = None
_sessions: Optional[async_sessionmaker[AsyncSession]] = None
_configured_url: Optional[str] = None


def async_url(raw_url: str) -> URL:
    url = make_url(raw_url)
    driver = _ASYNC_DRIVERS.get(url.drivername)
    return url.set(drivername=driver) if driver else url


def configure_database(url: str) -> None:
    """Use this URL instead of settings.database.url for the next engine."""
    global _configured_url
    _configured_url = url


def get_engine() -> AsyncEngine:
    global _engine, _sessions
    if _engine is not None:
        return _engine

    settings = get_settings()
    url = async_url(_configured_url or settings.database.url)
    pool = {} if url.get_backend_name() == "sqlite" else _POSTGRES_POOL
    _engine = create_async_engine(url, echo=settings.debug, **pool)
    _sessions = async_sessionmaker(_engine, expire_on_commit=False)
    logger.info("database_engine_created",
                dialect=_engine.dialect.name,
                url=url.render_as_string(hide_password=True))
    return _engine


@asynccontextmanager
async def get_session() -> AsyncIterator[AsyncSession]:
    """One transaction: committed on normal exit, rolled back on error."""
    get_engine()
    async with _sessions() as session:
        async with session.begin():
            yield session


async def init_db() -> None:
    async with get_engine().begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("database_initialized", tables=sorted(Base.metadata.tables))


async def close_db() -> None:
    global _engine, _sessions, _configured_url
    if _engine is not None:
        await _engine.dispose()
        logger.info("database_closed")
    _engine = None
    _sessions = None
    _configured_url = None
