"""Async SQLAlchemy engine and the session factory behind both stores.

The repositories take ``get_session`` as their session factory and
consume it with ``async for session in factory()``. Size the pool to the
worker's ``max_workers``: every in-flight task may hold one connection.
"""

from __future__ import annotations

from collections.abc import AsyncGenerator

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, create_async_engine
from sqlalchemy.orm import DeclarativeBase

from src.bridge.config import get_settings

_engine: AsyncEngine | None = None


class Base(DeclarativeBase):
    """Declarative base for ``sync_processes`` and ``sync_mappings``."""


def get_engine() -> AsyncEngine:
    global _engine
    if _engine is None:
        settings = get_settings()
        _engine = create_async_engine(
            settings.DATABASE_URL,
            pool_size=settings.DB_POOL_SIZE,
            max_overflow=settings.DB_MAX_OVERFLOW,
            pool_pre_ping=True,
        )
    return _engine


async def get_session() -> AsyncGenerator[AsyncSession, None]:
    """Yield one session; the caller commits."""
    async with AsyncSession(get_engine(), expire_on_commit=False) as session:
        yield session


async def init_db() -> None:
    """Create the sync tables for local runs; deployments use Alembic."""
    from src.bridge.sync import models  # noqa: F401

    async with get_engine().begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def close_db() -> None:
    global _engine
    if _engine is not None:
        await _engine.dispose()
        _engine = None
