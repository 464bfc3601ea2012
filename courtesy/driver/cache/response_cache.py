"""On-disk response cache addressed by request fingerprint.

ResponseCache stores responses in SQLite, one row per cache key, with the
body zstd-compressed. Each write is a single upsert in its own
transaction, so readers see either the old entry or the new one, never a
mix.

Caching is best-effort. Storage failures never reach the caller: reads
degrade to a miss and writes are logged and dropped.
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import sqlalchemy as sa
import zstandard as zstd
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncEngine, async_sessionmaker
from sqlmodel import select

from courtesy.common.exceptions import CacheStorageError
from courtesy.data_types import CacheEntry
from courtesy.driver.cache.compression import compress, decompress
from courtesy.driver.cache.database import open_cache_database
from courtesy.driver.cache.models import CachedResponse

logger = logging.getLogger(__name__)

# Errors from the storage stack that mean "the cache is unusable right now"
_STORAGE_ERRORS = (
    sa.exc.SQLAlchemyError,
    OSError,
    zstd.ZstdError,
    ValueError,
)


@dataclass
class CacheStats:
    """Summary of the cache contents.

    Attributes:
        entries: Total rows, fresh or not.
        expired: Rows past their TTL that have not been evicted yet.
        bytes_original: Sum of uncompressed body sizes.
        bytes_compressed: Sum of compressed body sizes.
    """

    entries: int
    expired: int
    bytes_original: int
    bytes_compressed: int

    @property
    def compression_ratio(self) -> float:
        if self.bytes_compressed == 0:
            return 1.0
        return self.bytes_original / self.bytes_compressed


class ResponseCache:
    """Content-addressed response store with TTL freshness.

    Example::

        async with ResponseCache.open(Path("cache/responses.db")) as cache:
            entry = await cache.get(request.cache_key())
            if entry is None:
                ...  # fetch, then
                await cache.put(key, new_entry)
    """

    def __init__(
        self,
        engine: AsyncEngine,
        session_factory: async_sessionmaker,
        clock: Callable[[], float] = time.time,
    ) -> None:
        """Initialize the cache.

        Args:
            engine: Async engine for the cache database.
            session_factory: Session factory bound to engine.
            clock: Wall-clock time source used for freshness. Injected in
                tests.
        """
        self._engine = engine
        self._session_factory = session_factory
        self._clock = clock
        # Single connection (StaticPool): serialize sessions on it
        self._lock = asyncio.Lock()

    @classmethod
    @asynccontextmanager
    async def open(
        cls,
        db_path: Path,
        clock: Callable[[], float] = time.time,
    ) -> AsyncIterator[ResponseCache]:
        """Open the cache database as an async context manager.

        Args:
            db_path: Path to the SQLite database file.
            clock: Wall-clock time source.

        Yields:
            An initialized ResponseCache.
        """
        cache = await cls.create(db_path, clock=clock)
        try:
            yield cache
        finally:
            await cache.close()

    @classmethod
    async def create(
        cls,
        db_path: Path,
        clock: Callable[[], float] = time.time,
    ) -> ResponseCache:
        """Create a cache without a context manager. Call close() when done."""
        engine, session_factory = await open_cache_database(db_path)
        logger.info(f"Response cache opened at {db_path}")
        return cls(engine, session_factory, clock=clock)

    async def close(self) -> None:
        """Dispose of the database engine."""
        await self._engine.dispose()

    # --- Public operations (never raise storage errors) ---

    async def get(self, key: str) -> CacheEntry | None:
        """Look up a fresh entry.

        Args:
            key: Request fingerprint.

        Returns:
            The entry, or None if it is missing, expired, or unreadable.
        """
        try:
            entry = await self._load(key)
        except CacheStorageError as e:
            logger.warning(
                f"Cache read failed for {key[:12]}, treating as miss: {e}"
            )
            return None

        if entry is None:
            return None
        if not entry.is_fresh(self._clock()):
            logger.debug(f"Cache entry {key[:12]} expired")
            return None
        return entry

    async def put(self, key: str, entry: CacheEntry) -> None:
        """Store an entry, replacing any existing entry for key.

        The write is atomic: a concurrent get() sees the old entry or the
        new one. Failures are logged and swallowed.

        Args:
            key: Request fingerprint.
            entry: The entry to store.
        """
        try:
            await self._store(key, entry)
        except CacheStorageError as e:
            logger.warning(
                f"Cache write failed for {key[:12]}, skipping: {e}"
            )

    async def evict_expired(self) -> int:
        """Remove every entry past its TTL.

        Runs as one DELETE transaction, so it never removes an entry that
        is being written with a fresh timestamp.

        Returns:
            Number of entries removed (0 if the storage failed).
        """
        try:
            removed = await self._delete_expired()
        except CacheStorageError as e:
            logger.warning(f"Cache eviction failed: {e}")
            return 0
        if removed:
            logger.info(f"Evicted {removed} expired cache entries")
        return removed

    async def count(self) -> int:
        """Number of stored entries, fresh or not (0 if unreadable)."""
        try:
            async with self._lock, self._session_factory() as session:
                result = await session.execute(
                    sa.select(sa.func.count()).select_from(CachedResponse)
                )
                return int(result.scalar_one())
        except _STORAGE_ERRORS as e:
            logger.warning(f"Cache count failed: {e}")
            return 0

    async def stats(self) -> CacheStats:
        """Entry and size totals for the whole cache."""
        now = self._clock()
        try:
            async with self._lock, self._session_factory() as session:
                result = await session.execute(
                    sa.select(
                        sa.func.count(),
                        sa.func.coalesce(
                            sa.func.sum(
                                sa.case(
                                    (CachedResponse.expires_at < now, 1),
                                    else_=0,
                                )
                            ),
                            0,
                        ),
                        sa.func.coalesce(
                            sa.func.sum(CachedResponse.content_size_original),
                            0,
                        ),
                        sa.func.coalesce(
                            sa.func.sum(
                                CachedResponse.content_size_compressed
                            ),
                            0,
                        ),
                    ).select_from(CachedResponse)
                )
                row = result.one()
        except _STORAGE_ERRORS as e:
            logger.warning(f"Cache stats failed: {e}")
            return CacheStats(0, 0, 0, 0)
        return CacheStats(
            entries=int(row[0]),
            expired=int(row[1]),
            bytes_original=int(row[2]),
            bytes_compressed=int(row[3]),
        )

    # --- Storage layer (raises CacheStorageError) ---

    async def _load(self, key: str) -> CacheEntry | None:
        try:
            async with self._lock, self._session_factory() as session:
                result = await session.execute(
                    select(CachedResponse).where(CachedResponse.key == key)
                )
                row = result.scalar_one_or_none()
                if row is None:
                    return None
                return self._to_entry(row)
        except _STORAGE_ERRORS as e:
            raise CacheStorageError(str(e)) from e

    async def _store(self, key: str, entry: CacheEntry) -> None:
        try:
            content_compressed = compress(entry.body) if entry.body else None
            headers_json = (
                json.dumps(dict(entry.headers), sort_keys=True)
                if entry.headers
                else None
            )
            values: dict[str, Any] = {
                "key": key,
                "url": entry.url,
                "status_code": entry.status_code,
                "headers_json": headers_json,
                "content_compressed": content_compressed,
                "content_size_original": len(entry.body),
                "content_size_compressed": len(content_compressed or b""),
                "stored_at": entry.stored_at,
                "ttl": entry.ttl,
                "expires_at": entry.expires_at,
            }
            stmt = sqlite_insert(CachedResponse).values(**values)
            stmt = stmt.on_conflict_do_update(
                index_elements=["key"],
                set_={
                    name: getattr(stmt.excluded, name)
                    for name in values
                    if name != "key"
                },
            )
            async with self._lock, self._session_factory() as session:
                await session.execute(stmt)
                await session.commit()
        except _STORAGE_ERRORS as e:
            raise CacheStorageError(str(e)) from e

    async def _delete_expired(self) -> int:
        now = self._clock()
        try:
            async with self._lock, self._session_factory() as session:
                result = await session.execute(
                    sa.delete(CachedResponse).where(
                        CachedResponse.expires_at < now  # type: ignore[arg-type]
                    )
                )
                await session.commit()
                return result.rowcount or 0
        except _STORAGE_ERRORS as e:
            raise CacheStorageError(str(e)) from e

    @staticmethod
    def _to_entry(row: CachedResponse) -> CacheEntry:
        body = b""
        if row.content_compressed:
            body = decompress(row.content_compressed)
        headers: dict[str, str] = {}
        if row.headers_json:
            headers = json.loads(row.headers_json)
        return CacheEntry(
            key=row.key,
            url=row.url,
            status_code=row.status_code,
            headers=headers,
            body=body,
            stored_at=row.stored_at,
            ttl=row.ttl,
        )
