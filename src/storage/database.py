"""
Async engine and session factory for the description and cluster tables.

The engine is created at import time; the worker and the CLI each run
inside a fresh event loop and dispose of it when they are done so pooled
connections never outlive their loop.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from sqlalchemy import text
from sqlalchemy.ext.asyncio import (
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import NullPool

from src.core.config import settings

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncEngine


def _engine_options() -> dict[str, Any]:
    options: dict[str, Any] = {"echo": settings.SQL_ECHO, "pool_pre_ping": True}
    if settings.is_development:
        # Unpooled locally so stale connections never hide schema changes.
        options["poolclass"] = NullPool
    else:
        options.update(
            pool_size=settings.DATABASE_POOL_SIZE,
            max_overflow=settings.DATABASE_MAX_OVERFLOW,
            pool_timeout=settings.DATABASE_POOL_TIMEOUT_SECONDS,
        )
    return options


def create_engine() -> AsyncEngine:
    """Create the async engine for ``DATABASE_URL``."""
    return create_async_engine(settings.DATABASE_URL, **_engine_options())


engine = create_engine()

async_session_maker = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False,
    autoflush=False,
)


async def init_db() -> None:
    """
    Create the pgvector extension and all model tables if missing.

    Deployments run Alembic instead; this serves tests and local setup.
    """
    from src.storage.models import Base

    async with engine.begin() as conn:
        await conn.execute(text("CREATE EXTENSION IF NOT EXISTS vector"))
        await conn.run_sync(Base.metadata.create_all)
