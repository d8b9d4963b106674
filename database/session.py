"""
Async SQLAlchemy engine and sessions for the SQL execution store.

URLs in settings use the plain scheme; the async driver is filled in here:
  postgresql:// → asyncpg, mysql:// → aiomysql, sqlite:// → aiosqlite

    await init_db("sqlite:///./flow_engine.db")
    async with get_session() as db:
        await db.execute(...)
    await close_db()
"""
from __future__ import annotations

import structlog
from contextlib import asynccontextmanager
from typing import AsyncGenerator, Optional

from sqlalchemy.ext.asyncio import (
    AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine,
)
from sqlalchemy.engine import make_url

from config.settings import get_settings
from database.models import Base

logger = structlog.get_logger()

_ASYNC_DRIVERS = {
    "postgresql": "postgresql+asyncpg",
    "postgres": "postgresql+asyncpg",
    "mysql": "mysql+aiomysql",
    "mysql+pymysql": "mysql+aiomysql",
    "sqlite": "sqlite+aiosqlite",
}

# Server databases share a pool across the store's short transactions
_POOL_OPTIONS = {
    "pool_size": 10,
    "max_overflow": 20,
    "pool_recycle": 1800,
    "pool_pre_ping": True,
}

_engine: Optional[AsyncEngine] = None
_sessions: Optional[async_sessionmaker[AsyncSession]] = None


def async_url(db_url: str) -> str:
    scheme, sep, rest = db_url.partition("://")
    if not sep:
        raise ValueError(f"Not a database URL: {db_url!r}")
    return f"{_ASYNC_DRIVERS.get(scheme, scheme)}://{rest}"


def get_engine(db_url: Optional[str] = None) -> AsyncEngine:
    global _engine
    if _engine is not None:
        return _engine

    url = async_url(db_url or get_settings().database.url)
    options = {"echo": get_settings().debug}
    if not url.startswith("sqlite"):
        options.update(_POOL_OPTIONS)
    _engine = create_async_engine(url, **options)
    logger.info("database_engine_created",
                dialect=_engine.dialect.name,
                database=make_url(url).render_as_string(hide_password=True))
    return _engine


@asynccontextmanager
async def get_session() -> AsyncGenerator[AsyncSession, None]:
    """One transaction: committed on exit, rolled back if the block raises."""
    global _sessions
    if _sessions is None:
        _sessions = async_sessionmaker(get_engine(), expire_on_commit=False)
    async with _sessions.begin() as session:
        yield session


async def init_db(db_url: Optional[str] = None) -> None:
    """Create the flow and execution tables if they do not exist."""
    engine = get_engine(db_url)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("database_initialized", tables=sorted(Base.metadata.tables))


async def close_db() -> None:
    global _engine, _sessions
    if _engine is None:
        return
    await _engine.dispose()
    _engine = None
    _sessions = None
    logger.info("database_closed")
