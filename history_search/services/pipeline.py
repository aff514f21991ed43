"""Search pipeline: cache lookup -> fetch missing -> extract -> match -> aggregate.

Per-URL problems never abort a run; they are tallied in ``RunSummary``.
A run stops early only on bad input (``ConfigurationError``) or when no
page content is available at all (``NoContentError``).
"""

from __future__ import annotations

import time
from collections.abc import Sequence
from dataclasses import asdict, dataclass, field
from datetime import timedelta
from uuid import uuid4

from pydantic import ValidationError

from history_search.config import Settings, get_settings
from history_search.core.exceptions import ConfigurationError, NoContentError
from history_search.core.keyword_matcher import KeywordMatcher, MatchResult
from history_search.core.logging import get_logger, run_id_var
from history_search.core.text_extractor import TextExtractor
from history_search.schemas.search import HistoryRecord, KeywordQuery, MatchRecord
from history_search.services.aggregator import aggregate
from history_search.services.content_cache import (
    CacheEntry,
    ContentCache,
    EntryStatus,
    content_address,
)
from history_search.services.fetcher import FetchOutcome, Fetcher

logger = get_logger(__name__)


# ── Result model ──────────────────────────────────────────────────


@dataclass
class RunSummary:
    """Counters for one run, fed from per-URL outcomes."""

    attempted: int = 0
    cache_hits: int = 0
    fetched: int = 0
    failed: int = 0
    extraction_failed: int = 0
    matched: int = 0

    def record_fetch(self, outcome: FetchOutcome) -> None:
        if outcome.ok:
            self.fetched += 1
        else:
            self.failed += 1

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class SearchReport:
    results: list[MatchRecord] = field(default_factory=list)
    summary: RunSummary = field(default_factory=RunSummary)

    def to_json_list(self) -> list[dict]:
        return [record.to_dict() for record in self.results]


# ── Helpers ───────────────────────────────────────────────────────


def build_query(keywords: str | Sequence[str], *, match_any: bool = False) -> KeywordQuery:
    """Parse a keyword list, turning validation failures into ConfigurationError."""
    try:
        if isinstance(keywords, str):
            return KeywordQuery.parse(keywords, match_any=match_any)
        return KeywordQuery(terms=tuple(keywords), mode="any" if match_any else "all")
    except ValidationError as e:
        raise ConfigurationError("At least one non-blank keyword is required") from e


def unique_urls(records: Sequence[HistoryRecord]) -> list[str]:
    """First URL seen per content address, in history order."""
    seen: set[str] = set()
    urls: list[str] = []
    for record in records:
        address = content_address(record.url)
        if address not in seen:
            seen.add(address)
            urls.append(record.url)
    return urls


# ── Pipeline ──────────────────────────────────────────────────────


async def run_search(
    records: Sequence[HistoryRecord],
    query: KeywordQuery,
    settings: Settings | None = None,
    *,
    cache: ContentCache,
    fetcher: Fetcher | None = None,
    extractor: TextExtractor | None = None,
    matcher: KeywordMatcher | None = None,
) -> SearchReport:
    """Search the pages behind ``records`` for ``query``.

    Args:
        records: History visits, most recent first; duplicates allowed.
        query: Validated keyword query.
        settings: Run configuration (defaults to the environment settings).
        cache: Open content cache.
        fetcher: Optional pre-built fetcher (tests inject transports here).
        extractor: Optional text extractor override.
        matcher: Optional keyword matcher override.

    Returns:
        SearchReport with ordered match records and run counters.
    """
    settings = settings or get_settings()
    if not records:
        raise ConfigurationError("No history records to search")
    if not query.terms:
        raise ConfigurationError("At least one keyword is required")

    fetcher = fetcher or Fetcher.from_settings(cache, settings)
    extractor = extractor or TextExtractor(
        min_length=settings.text_min_length,
        max_length=settings.text_max_length,
    )
    matcher = matcher or KeywordMatcher(context_chars=settings.context_chars)

    token = run_id_var.set(uuid4().hex[:12])
    try:
        return await _run(records, query, settings, cache, fetcher, extractor, matcher)
    finally:
        run_id_var.reset(token)


async def _run(
    records: Sequence[HistoryRecord],
    query: KeywordQuery,
    settings: Settings,
    cache: ContentCache,
    fetcher: Fetcher,
    extractor: TextExtractor,
    matcher: KeywordMatcher,
) -> SearchReport:
    t0 = time.perf_counter()
    summary = RunSummary()
    urls = unique_urls(records)
    summary.attempted = len(urls)

    logger.info(
        "search_started",
        urls=len(urls),
        terms=list(query.terms),
        mode=query.mode.value,
        cache_only=settings.cache_only,
        force_refresh=settings.force_refresh,
    )

    # 1) Cache lookup
    max_age = timedelta(hours=settings.cache_max_age_hours)
    usable: dict[str, CacheEntry] = {}
    missing: list[str] = []
    for url in urls:
        entry = await cache.lookup(url)
        has_content = entry is not None and entry.status != EntryStatus.ERROR
        if has_content and settings.cache_only:
            usable[url] = entry
        elif has_content and not settings.force_refresh and cache.is_fresh(entry, max_age):
            usable[url] = entry
        else:
            missing.append(url)
    summary.cache_hits = len(usable)

    # 2) Fetch what is missing or stale
    if settings.cache_only:
        if missing:
            logger.info("search_cache_only_skipped", skipped=len(missing))
    elif missing:
        async for outcome in fetcher.fetch_missing(missing):
            summary.record_fetch(outcome)
            if outcome.ok and outcome.entry is not None:
                usable[outcome.url] = outcome.entry

    t_fetch = time.perf_counter()

    if summary.cache_hits == 0 and summary.fetched == 0:
        logger.error("search_no_content", attempted=summary.attempted, failed=summary.failed)
        raise NoContentError(attempted=summary.attempted, failed=summary.failed)

    # 3) Extract + match, in history order
    matches: dict[str, MatchResult] = {}
    for url in urls:
        entry = usable.get(url)
        if entry is None:
            continue
        extracted = extractor.extract(
            entry.raw_content,
            content_type=entry.content_type,
            content_address=entry.content_address,
        )
        if extracted is None:
            summary.extraction_failed += 1
            continue
        result = matcher.matches(extracted.text, query)
        if result is not None:
            matches[url] = result

    # 4) Aggregate
    results = aggregate(matches, records)
    summary.matched = len(results)

    t_end = time.perf_counter()
    logger.info(
        "search_completed",
        **summary.to_dict(),
        fetch_ms=round((t_fetch - t0) * 1000),
        total_ms=round((t_end - t0) * 1000),
    )
    return SearchReport(results=results, summary=summary)
