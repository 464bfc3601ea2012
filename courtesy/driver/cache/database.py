"""SQLite storage setup for the response cache.

The cache runs over a single aiosqlite connection (StaticPool) in WAL
mode. ResponseCache serializes its sessions on that connection, so no
pool sizing is needed here.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any

import sqlalchemy as sa
from sqlalchemy import event
from sqlalchemy.ext.asyncio import (
    AsyncConnection,
    AsyncEngine,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import StaticPool
from sqlmodel import SQLModel

from courtesy.driver.cache.models import CachedResponse, SchemaInfo

CACHE_SCHEMA_VERSION = 1

_CACHE_TABLES = [
    CachedResponse.__table__,  # type: ignore[attr-defined]
    SchemaInfo.__table__,  # type: ignore[attr-defined]
]


def _enable_wal(dbapi_conn: Any, connection_record: Any) -> None:
    cursor = dbapi_conn.cursor()
    cursor.execute("PRAGMA journal_mode=WAL")
    cursor.close()


async def cache_schema_version(conn: AsyncConnection) -> int:
    """Highest schema version stamped into the cache file, 0 if none."""
    version = await conn.scalar(sa.select(sa.func.max(SchemaInfo.version)))
    return version or 0


async def open_cache_database(
    db_path: Path,
) -> tuple[AsyncEngine, async_sessionmaker]:
    """Open (creating if needed) the cache file at db_path.

    Creates the cache tables on first use and stamps the schema version.

    Returns:
        The engine and a session factory bound to it.
    """
    db_path.parent.mkdir(parents=True, exist_ok=True)
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{db_path}",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    event.listen(engine.sync_engine, "connect", _enable_wal)

    async with engine.begin() as conn:
        await conn.run_sync(SQLModel.metadata.create_all, tables=_CACHE_TABLES)
        if await cache_schema_version(conn) < CACHE_SCHEMA_VERSION:
            await conn.execute(
                sa.insert(SchemaInfo).values(version=CACHE_SCHEMA_VERSION)
            )

    return engine, async_sessionmaker(engine, expire_on_commit=False)
