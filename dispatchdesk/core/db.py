from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from typing import AsyncIterator

from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker

from .config import get_settings
from dispatchdesk.models import Base


_ENGINE_LOCK = asyncio.Lock()
_ENGINE: AsyncEngine | None = None
_SESSION_FACTORY: sessionmaker[AsyncSession] | None = None


def _enable_sqlite_foreign_keys(dbapi_connection, connection_record) -> None:
    # Join rows rely on ON DELETE CASCADE, which SQLite only honours per connection.
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


def create_engine() -> AsyncEngine:
    settings = get_settings()
    engine = create_async_engine(settings.resolved_database_url, future=True, echo=False)
    if engine.dialect.name == "sqlite":
        event.listen(engine.sync_engine, "connect", _enable_sqlite_foreign_keys)
    return engine


def create_session_factory(engine: AsyncEngine) -> sessionmaker:
    return sessionmaker(bind=engine, class_=AsyncSession, expire_on_commit=False)


async def init_db(engine: AsyncEngine) -> None:
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def get_engine() -> AsyncEngine:
    global _ENGINE, _SESSION_FACTORY

    if _ENGINE is None:
        async with _ENGINE_LOCK:
            if _ENGINE is None:
                engine = create_engine()
                await init_db(engine)
                _ENGINE = engine
                _SESSION_FACTORY = create_session_factory(engine)
    assert _ENGINE is not None
    return _ENGINE


async def dispose_engine() -> None:
    global _ENGINE, _SESSION_FACTORY
    if _ENGINE is not None:
        await _ENGINE.dispose()
        _ENGINE = None
        _SESSION_FACTORY = None


async def get_session_factory() -> sessionmaker:
    await get_engine()
    assert _SESSION_FACTORY is not None
    return _SESSION_FACTORY


@asynccontextmanager
async def open_session() -> AsyncIterator[AsyncSession]:
    """Open a standalone session for work that outlives a request."""

    factory = await get_session_factory()
    async with factory() as session:
        yield session


async def get_session() -> AsyncIterator[AsyncSession]:
    async with open_session() as session:
        yield session
