"""
SQL engine and transaction scope behind SqlSessionStore.

`database.url` is written in its sync form and mapped to an async driver:
  postgresql:// → postgresql+asyncpg://
  mysql://      → mysql+aiomysql://
  sqlite://     → sqlite+aiosqlite://

    await init_db()                       # once, before the first turn
    async with get_db_session() as db:    # one transaction per store call
        ...
    await close_db()
"""
from __future__ import annotations

import structlog
from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator

from sqlalchemy.ext.asyncio import (
    AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine,
)

from config.settings import DatabaseConfig, get_settings
from database.models import Base

logger = structlog.get_logger()

_ASYNC_DRIVERS = {
    "postgresql": "postgresql+asyncpg",
    "postgres": "postgresql+asyncpg",
    "mysql": "mysql+aiomysql",
    "mysql+pymysql": "mysql+aiomysql",
    "sqlite": "sqlite+aiosqlite",
}

_engine: AsyncEngine | None = None
_session_factory: async_sessionmaker[AsyncSession] | None = None


def _to_async_url(db_url: str) -> str:
    scheme, sep, rest = db_url.partition("://")
    if not sep:
        return db_url
    return f"{_ASYNC_DRIVERS.get(scheme, scheme)}://{rest}"


def _engine_kwargs(db_url: str, config: DatabaseConfig, debug: bool) -> dict[str, Any]:
    if db_url.startswith("sqlite"):
        # Claims on one SQLite file serialize on its write lock
        return {
            "echo": debug,
            "connect_args": {"check_same_thread": False, "timeout": config.sqlite_busy_timeout},
        }
    return {
        "echo": debug,
        "pool_size": config.pool_size,
        "max_overflow": config.max_overflow,
        "pool_recycle": config.pool_recycle,
        "pool_pre_ping": True,
    }


def get_engine() -> AsyncEngine:
    global _engine
    if _engine is None:
        settings = get_settings()
        db_url = _to_async_url(settings.database.url)
        _engine = create_async_engine(db_url, **_engine_kwargs(db_url, settings.database, settings.debug))
        logger.info("database_engine_created",
                    dialect=_engine.dialect.name,
                    url=_engine.url.render_as_string(hide_password=True))
    return _engine


def _get_session_factory() -> async_sessionmaker[AsyncSession]:
    global _session_factory
    if _session_factory is None:
        _session_factory = async_sessionmaker(get_engine(), expire_on_commit=False)
    return _session_factory


@asynccontextmanager
async def get_db_session() -> AsyncGenerator[AsyncSession, None]:
    """Commits when the block exits cleanly, rolls back and re-raises otherwise."""
    async with _get_session_factory().begin() as session:
        yield session


async def init_db() -> None:
    """Create the session tables if they do not exist."""
    engine = get_engine()
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("session_schema_ready",
                dialect=engine.dialect.name,
                tables=sorted(Base.metadata.tables))


async def close_db() -> None:
    global _engine, _session_factory
    if _engine is None:
        return
    await _engine.dispose()
    _engine = None
    _session_factory = None
    logger.info("database_closed")
