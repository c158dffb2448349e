"""
Integration fixtures: a real PostgreSQL (pgvector) database that is
emptied around every test.
"""

from __future__ import annotations

from collections.abc import AsyncIterator
from dataclasses import dataclass

import pytest_asyncio
from sqlalchemy import text
from sqlalchemy.engine import make_url

from src.core.config import settings
from src.storage.database import async_session_maker, engine, init_db
from src.storage.models import Base

LOCAL_DB_HOSTS = frozenset({"", "localhost", "127.0.0.1", "::1"})


@dataclass(frozen=True, slots=True)
class TruncateTarget:
    rendered_url: str
    database: str | None
    host: str | None

    @property
    def is_test_database(self) -> bool:
        name = (self.database or "").strip().lower()
        return name == "test" or name.startswith("test_") or name.endswith("_test")

    @property
    def is_local(self) -> bool:
        return (self.host or "").strip().lower() in LOCAL_DB_HOSTS


def resolve_truncate_target() -> TruncateTarget:
    parsed = make_url(settings.DATABASE_URL_SYNC.strip() or settings.DATABASE_URL.strip())
    return TruncateTarget(
        rendered_url=parsed.render_as_string(hide_password=True),
        database=parsed.database,
        host=parsed.host,
    )


def assert_safe_truncate_target() -> TruncateTarget:
    target = resolve_truncate_target()
    if not target.is_test_database and not settings.INTEGRATION_DB_TRUNCATE_ALLOWED:
        msg = (
            f"Refusing to truncate non-test database {target.database!r} ({target.rendered_url}). "
            "Point DATABASE_URL at a *_test database or set INTEGRATION_DB_TRUNCATE_ALLOWED=true."
        )
        raise RuntimeError(msg)
    if not target.is_local and not settings.INTEGRATION_DB_TRUNCATE_ALLOW_REMOTE:
        msg = (
            f"Refusing to truncate database on non-local host {target.host!r} "
            f"({target.rendered_url}). Set INTEGRATION_DB_TRUNCATE_ALLOW_REMOTE=true to override."
        )
        raise RuntimeError(msg)
    return target


async def _truncate_discovery_tables() -> None:
    assert_safe_truncate_target()
    table_names = ", ".join(f'"{table.name}"' for table in Base.metadata.sorted_tables)
    async with async_session_maker() as session:
        await session.execute(text(f"TRUNCATE TABLE {table_names} CASCADE"))
        await session.commit()


# Pooled asyncpg connections are bound to the loop of the test that opened them.
@pytest_asyncio.fixture(autouse=True)
async def reset_integration_database() -> AsyncIterator[None]:
    assert_safe_truncate_target()
    await init_db()
    await _truncate_discovery_tables()
    yield
    await _truncate_discovery_tables()
    await engine.dispose()
