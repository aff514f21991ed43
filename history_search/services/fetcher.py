"""Fetcher — bounded-concurrency retrieval of pages missing from the cache.

A dispatcher hands URLs to fetch tasks, waiting for a free slot before each
one and sleeping a short pacing delay between dispatches. Each task streams
the response, enforcing an overall deadline and a byte ceiling, and writes
successful bodies to the cache. Failures are reported but never cached, so
the next run retries them.

Outcomes are yielded in completion order; every outcome carries its URL.
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator, Iterable
from dataclasses import dataclass
from datetime import timedelta

import httpx
from sqlalchemy.exc import SQLAlchemyError

from history_search.config import Settings
from history_search.core.exceptions import ConfigurationError
from history_search.core.logging import get_logger
from history_search.services.content_cache import (
    CacheEntry,
    ContentCache,
    EntryStatus,
    content_address,
    is_fresh,
)

logger = get_logger(__name__)

_ACCEPT = "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8"
_ACCEPT_LANGUAGE = "en-US,en;q=0.9"


# ── Result model ──────────────────────────────────────────────────


@dataclass(frozen=True)
class FetchOutcome:
    """Result of one retrieval. ``entry`` is set only on success."""

    url: str
    ok: bool
    entry: CacheEntry | None = None
    error: str | None = None


class FetchFailed(Exception):
    """A single retrieval was rejected (bad status, oversize, empty body)."""


# ── Fetcher ───────────────────────────────────────────────────────


class Fetcher:
    def __init__(
        self,
        cache: ContentCache,
        *,
        concurrency: int = 5,
        timeout: float = 10.0,
        max_bytes: int = 10 * 1024 * 1024,
        connect_timeout: float = 5.0,
        pacing_delay: float = 0.1,
        max_age: timedelta = timedelta(days=7),
        force_refresh: bool = False,
        user_agent: str = "Mozilla/5.0",
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        if concurrency < 1:
            raise ConfigurationError(f"concurrency must be at least 1, got {concurrency}")
        if timeout <= 0:
            raise ConfigurationError(f"timeout must be positive, got {timeout}")
        if max_bytes < 1:
            raise ConfigurationError(f"max_bytes must be positive, got {max_bytes}")

        self.cache = cache
        self.concurrency = concurrency
        self.timeout = timeout
        self.max_bytes = max_bytes
        self.connect_timeout = min(connect_timeout, timeout)
        self.pacing_delay = pacing_delay
        self.max_age = max_age
        self.force_refresh = force_refresh
        self.user_agent = user_agent
        self._transport = transport

        self._in_flight = 0
        self.max_in_flight = 0  # peak concurrent requests seen so far

    @classmethod
    def from_settings(cls, cache: ContentCache, settings: Settings, **kwargs) -> Fetcher:
        return cls(
            cache,
            concurrency=settings.concurrency,
            timeout=settings.request_timeout_seconds,
            max_bytes=settings.max_response_bytes,
            connect_timeout=settings.connect_timeout_seconds,
            pacing_delay=settings.pacing_delay_seconds,
            max_age=timedelta(hours=settings.cache_max_age_hours),
            force_refresh=settings.force_refresh,
            user_agent=settings.user_agent,
            **kwargs,
        )

    # ── Planning ──────────────────────────────────────────────────

    async def _needs_fetch(self, url: str) -> bool:
        if self.force_refresh:
            return True
        entry = await self.cache.lookup(url)
        if entry is None or entry.status == EntryStatus.ERROR:
            return True
        return not is_fresh(entry, self.max_age)

    async def _plan(self, urls: Iterable[str]) -> list[str]:
        """Unique URLs (by content address) that have no fresh entry."""
        seen: set[str] = set()
        submitted: list[str] = []
        for url in urls:
            address = content_address(url)
            if address in seen:
                continue
            seen.add(address)
            if await self._needs_fetch(url):
                submitted.append(url)
            else:
                logger.debug("fetch_skipped_fresh", url=url[:120])
        return submitted

    # ── Single retrieval ──────────────────────────────────────────

    def _build_client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            timeout=httpx.Timeout(self.timeout, connect=self.connect_timeout),
            follow_redirects=True,
            headers={
                "User-Agent": self.user_agent,
                "Accept": _ACCEPT,
                "Accept-Language": _ACCEPT_LANGUAGE,
            },
            transport=self._transport,
        )

    async def _download(self, client: httpx.AsyncClient, url: str) -> tuple[bytes, str | None]:
        chunks: list[bytes] = []
        received = 0

        async with asyncio.timeout(self.timeout):
            async with client.stream("GET", url) as resp:
                if not 200 <= resp.status_code < 400:
                    raise FetchFailed(f"HTTP {resp.status_code}")

                declared = resp.headers.get("content-length", "")
                if declared.isdigit() and int(declared) > self.max_bytes:
                    raise FetchFailed(f"response too large ({declared} bytes)")

                async for chunk in resp.aiter_bytes():
                    received += len(chunk)
                    if received > self.max_bytes:
                        raise FetchFailed(f"response exceeded {self.max_bytes} bytes")
                    chunks.append(chunk)

                content_type = resp.headers.get("content-type")

        if not received:
            raise FetchFailed("empty response")
        return b"".join(chunks), content_type

    async def _fetch_one(self, client: httpx.AsyncClient, url: str) -> FetchOutcome:
        self._in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self._in_flight)
        try:
            body, content_type = await self._download(client, url)
        except TimeoutError:
            logger.debug("fetch_timeout", url=url[:120], timeout=self.timeout)
            return FetchOutcome(url=url, ok=False, error="timeout")
        except (httpx.HTTPError, httpx.InvalidURL, FetchFailed) as e:
            error = str(e) or type(e).__name__
            logger.debug("fetch_failed", url=url[:120], error=error)
            return FetchOutcome(url=url, ok=False, error=error)
        finally:
            self._in_flight -= 1

        try:
            entry = await self.cache.store(url, body, EntryStatus.FRESH, content_type=content_type)
        except SQLAlchemyError as e:
            logger.warning("fetch_store_failed", url=url[:120], error=str(e))
            return FetchOutcome(url=url, ok=False, error=f"cache write failed: {e}")

        logger.debug("fetch_succeeded", url=url[:120], size_bytes=entry.size_bytes)
        return FetchOutcome(url=url, ok=True, entry=entry)

    # ── Batch ─────────────────────────────────────────────────────

    async def fetch_missing(self, urls: Iterable[str]) -> AsyncIterator[FetchOutcome]:
        """Fetch every URL lacking a fresh cache entry, yielding outcomes as they complete.

        At most ``concurrency`` requests are in flight. Closing or cancelling
        the iterator stops dispatch and cancels the requests still running.
        """
        submitted = await self._plan(urls)
        if not submitted:
            return

        logger.info(
            "fetch_batch_started",
            count=len(submitted),
            concurrency=self.concurrency,
            timeout=self.timeout,
        )

        slots = asyncio.Semaphore(self.concurrency)
        outcomes: asyncio.Queue[FetchOutcome] = asyncio.Queue()
        tasks: set[asyncio.Task] = set()

        async with self._build_client() as client:

            async def _run(url: str) -> None:
                try:
                    outcome = await self._fetch_one(client, url)
                except Exception as e:
                    logger.warning("fetch_unexpected_error", url=url[:120], error=repr(e))
                    outcome = FetchOutcome(url=url, ok=False, error=repr(e))
                finally:
                    slots.release()
                outcomes.put_nowait(outcome)

            async def _dispatch() -> None:
                last = len(submitted) - 1
                for i, url in enumerate(submitted):
                    await slots.acquire()
                    task = asyncio.create_task(_run(url))
                    tasks.add(task)
                    task.add_done_callback(tasks.discard)
                    if self.pacing_delay and i < last:
                        await asyncio.sleep(self.pacing_delay)

            dispatcher = asyncio.create_task(_dispatch())
            try:
                for _ in range(len(submitted)):
                    yield await outcomes.get()
            finally:
                dispatcher.cancel()
                pending = [task for task in tasks if not task.done()]
                for task in pending:
                    task.cancel()
                await asyncio.gather(dispatcher, *pending, return_exceptions=True)
                if pending:
                    logger.info("fetch_batch_aborted", cancelled=len(pending))

        logger.info("fetch_batch_finished", count=len(submitted), max_in_flight=self.max_in_flight)
