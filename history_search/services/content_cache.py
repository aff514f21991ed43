"""Content cache — fetched pages persisted in SQLite, keyed by URL hash.

The cache key is a content address: the SHA-256 of the normalized URL, so
the same page maps to the same row on every run and in every process.
Entries carry the time they were fetched; callers decide freshness with
``is_fresh`` and expire old rows with ``clean``.
"""

from __future__ import annotations

import asyncio
import hashlib
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from enum import StrEnum
from pathlib import Path
from urllib.parse import urlsplit, urlunsplit

from sqlalchemy import delete, func, select
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncEngine

from history_search.core.logging import get_logger
from history_search.database import build_engine, build_session_maker, init_db
from history_search.models.page_cache import PageCache

logger = get_logger(__name__)


class EntryStatus(StrEnum):
    """Where an entry's content came from."""

    FRESH = "fresh"  # written by this run's fetch
    CACHED_HIT = "cached_hit"  # read back from the store
    ERROR = "error"  # recorded failure, no content


@dataclass(frozen=True)
class CacheEntry:
    content_address: str
    url: str
    raw_content: bytes | None
    fetched_at: datetime
    status: EntryStatus
    size_bytes: int
    content_type: str | None = None


@dataclass(frozen=True)
class CacheStats:
    entry_count: int
    total_bytes: int
    oldest: datetime | None
    newest: datetime | None


# ── Addressing ────────────────────────────────────────────────────


def normalize_url(url: str) -> str:
    """Canonical form used for addressing.

    Scheme and host are lower-cased, the fragment is dropped, an empty
    path becomes ``/`` and one trailing slash is removed from any other
    path. The query string is kept as-is.
    """
    parts = urlsplit(url.strip())
    path = parts.path or "/"
    if len(path) > 1 and path.endswith("/"):
        path = path[:-1]
    return urlunsplit((parts.scheme.lower(), parts.netloc.lower(), path, parts.query, ""))


def content_address(url: str) -> str:
    """Deterministic SHA-256 hex digest of the normalized URL."""
    return hashlib.sha256(normalize_url(url).encode("utf-8")).hexdigest()


# ── Time helpers (SQLite stores naive UTC) ────────────────────────


def _to_db_time(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value
    return value.astimezone(UTC).replace(tzinfo=None)


def _from_db_time(value: datetime | None) -> datetime | None:
    if value is None:
        return None
    return value.replace(tzinfo=UTC)


def is_fresh(entry: CacheEntry, max_age: timedelta, now: datetime | None = None) -> bool:
    """True iff the entry was fetched less than ``max_age`` ago."""
    now = now or datetime.now(UTC)
    return now - entry.fetched_at < max_age


# ── Cache ─────────────────────────────────────────────────────────


class ContentCache:
    """Persistent page store with point lookup/upsert, age cleanup and stats."""

    def __init__(self, engine: AsyncEngine) -> None:
        self._engine = engine
        self._session_maker = build_session_maker(engine)
        self._write_lock = asyncio.Lock()

    @classmethod
    async def open(cls, path: Path | str) -> ContentCache:
        """Open (creating if needed) the cache database at ``path``."""
        path = Path(path).expanduser()
        path.parent.mkdir(parents=True, exist_ok=True)
        engine = build_engine(f"sqlite+aiosqlite:///{path}")
        await init_db(engine)
        logger.debug("content_cache_opened", path=str(path))
        return cls(engine)

    async def close(self) -> None:
        await self._engine.dispose()

    async def __aenter__(self) -> ContentCache:
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    is_fresh = staticmethod(is_fresh)

    async def lookup(self, url: str) -> CacheEntry | None:
        """Return the stored entry for ``url`` or None. Never touches the network."""
        address = content_address(url)
        async with self._session_maker() as db:
            result = await db.execute(
                select(PageCache).where(PageCache.content_address == address)
            )
            row = result.scalar_one_or_none()

        if row is None:
            return None

        status = EntryStatus(row.status)
        return CacheEntry(
            content_address=row.content_address,
            url=row.url,
            raw_content=row.content,
            fetched_at=_from_db_time(row.fetched_at),
            status=EntryStatus.CACHED_HIT if status == EntryStatus.FRESH else status,
            size_bytes=row.size_bytes,
            content_type=row.content_type,
        )

    async def store(
        self,
        url: str,
        content: bytes | None,
        status: EntryStatus = EntryStatus.FRESH,
        *,
        content_type: str | None = None,
        fetched_at: datetime | None = None,
    ) -> CacheEntry:
        """Upsert the entry for ``url``, replacing any previous one in a single transaction."""
        if status == EntryStatus.CACHED_HIT:
            raise ValueError("cached_hit is a read-side status and cannot be stored")

        address = content_address(url)
        fetched_at = fetched_at or datetime.now(UTC)
        size = len(content) if content is not None else 0
        values = {
            "url": url,
            "content": content,
            "content_type": content_type,
            "status": status.value,
            "size_bytes": size,
            "fetched_at": _to_db_time(fetched_at),
        }

        stmt = (
            sqlite_insert(PageCache)
            .values(content_address=address, **values)
            .on_conflict_do_update(index_elements=[PageCache.content_address], set_=values)
        )
        async with self._write_lock:
            async with self._session_maker() as db:
                await db.execute(stmt)
                await db.commit()

        logger.debug("content_cache_stored", url=url[:120], status=status.value, size_bytes=size)

        return CacheEntry(
            content_address=address,
            url=url,
            raw_content=content,
            fetched_at=_from_db_time(_to_db_time(fetched_at)),
            status=status,
            size_bytes=size,
            content_type=content_type,
        )

    async def clean(self, older_than_days: float, now: datetime | None = None) -> int:
        """Delete entries fetched before ``now - older_than_days``. Returns the count removed."""
        if older_than_days < 0:
            raise ValueError("older_than_days must not be negative")

        now = now or datetime.now(UTC)
        cutoff = _to_db_time(now - timedelta(days=older_than_days))

        async with self._write_lock:
            async with self._session_maker() as db:
                result = await db.execute(
                    delete(PageCache).where(PageCache.fetched_at < cutoff)
                )
                await db.commit()

        removed = result.rowcount or 0
        logger.info("content_cache_cleaned", removed=removed, older_than_days=older_than_days)
        return removed

    async def stats(self) -> CacheStats:
        async with self._session_maker() as db:
            result = await db.execute(
                select(
                    func.count(PageCache.content_address),
                    func.coalesce(func.sum(PageCache.size_bytes), 0),
                    func.min(PageCache.fetched_at),
                    func.max(PageCache.fetched_at),
                )
            )
            count, total, oldest, newest = result.one()

        return CacheStats(
            entry_count=count,
            total_bytes=total,
            oldest=_from_db_time(oldest),
            newest=_from_db_time(newest),
        )
