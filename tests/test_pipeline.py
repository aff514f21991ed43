"""Tests for the search pipeline: cache reuse, match logic end to end, run summaries."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta

import pytest

from history_search.config import Settings
from history_search.core.exceptions import ConfigurationError, NoContentError
from history_search.schemas.search import HistoryRecord, MatchMode
from history_search.services.content_cache import EntryStatus
from history_search.services.fetcher import Fetcher
from history_search.services.pipeline import build_query, run_search, unique_urls

from tests.conftest import html_page

FILLER = "This paragraph is long enough to pass the minimum text length check easily. "


def _settings(tmp_path, **overrides) -> Settings:
    values = {"cache_path": tmp_path / "cache.db", "pacing_delay_seconds": 0}
    values.update(overrides)
    return Settings(**values)


def _record(url: str, ts: int, title: str = "") -> HistoryRecord:
    return HistoryRecord(url=url, title=title or url, visit_timestamp=ts)


async def _search(records, keywords, settings, cache, transport, *, match_any=False):
    query = build_query(keywords, match_any=match_any)
    fetcher = Fetcher.from_settings(cache, settings, transport=transport)
    return await run_search(records, query, settings, cache=cache, fetcher=fetcher)


@pytest.fixture
def site(page_transport):
    page_transport.pages.update(
        {
            "https://example.com/both": html_page(FILLER + "alpha and beta together"),
            "https://example.com/alpha": html_page(FILLER + "only alpha here, alpha twice"),
            "https://example.com/beta": html_page(FILLER + "only beta here"),
            "https://example.com/neither": html_page(FILLER + "nothing relevant"),
            "https://example.com/short": html_page("alpha"),
        }
    )
    return page_transport


def _history() -> list[HistoryRecord]:
    return [
        _record("https://example.com/both", 4_000_000, "Both"),
        _record("https://example.com/alpha", 5_000_000, "Alpha"),
        _record("https://example.com/beta", 3_000_000, "Beta"),
        _record("https://example.com/neither", 2_000_000, "Neither"),
    ]


# ── Helpers ───────────────────────────────────────────────────────


class TestBuildQuery:
    def test_comma_separated(self):
        query = build_query(" alpha , beta ,, ")
        assert query.terms == ("alpha", "beta")
        assert query.mode == MatchMode.ALL

    def test_match_any(self):
        assert build_query("alpha", match_any=True).mode == MatchMode.ANY

    def test_sequence_input(self):
        assert build_query(["alpha", " beta "]).terms == ("alpha", "beta")

    @pytest.mark.parametrize("keywords", ["", " , ,", []])
    def test_blank_keywords_rejected(self, keywords):
        with pytest.raises(ConfigurationError):
            build_query(keywords)


class TestUniqueUrls:
    def test_dedupes_by_address_keeping_first(self):
        records = [
            _record("https://example.com/a", 3),
            _record("https://EXAMPLE.com/a/", 2),
            _record("https://example.com/b", 1),
        ]
        assert unique_urls(records) == ["https://example.com/a", "https://example.com/b"]


# ── End to end ────────────────────────────────────────────────────


class TestRunSearch:
    @pytest.mark.asyncio
    async def test_all_mode(self, tmp_path, cache, site):
        report = await _search(_history(), "alpha,beta", _settings(tmp_path), cache, site)

        assert [r.url for r in report.results] == ["https://example.com/both"]
        assert report.results[0].title == "Both"
        assert report.results[0].match_count == 2
        assert report.summary.fetched == 4
        assert report.summary.matched == 1

    @pytest.mark.asyncio
    async def test_any_mode_ordered_by_visit(self, tmp_path, cache, site):
        report = await _search(_history(), "alpha,beta", _settings(tmp_path), cache, site, match_any=True)

        assert [r.url for r in report.results] == [
            "https://example.com/alpha",
            "https://example.com/both",
            "https://example.com/beta",
        ]
        assert report.results[0].match_count == 2

    @pytest.mark.asyncio
    async def test_second_run_served_from_cache(self, tmp_path, cache, site):
        settings = _settings(tmp_path)
        first = await _search(_history(), "alpha", settings, cache, site)
        requests_after_first = len(site.requests)

        second = await _search(_history(), "alpha", settings, cache, site)

        assert len(site.requests) == requests_after_first
        assert second.summary.cache_hits == 4
        assert second.summary.fetched == 0
        assert second.to_json_list() == first.to_json_list()

    @pytest.mark.asyncio
    async def test_failures_counted_not_cached(self, tmp_path, cache, site):
        history = _history() + [_record("https://example.com/gone", 1_000_000)]

        report = await _search(history, "alpha", _settings(tmp_path), cache, site)

        assert report.summary.attempted == 5
        assert report.summary.failed == 1
        assert await cache.lookup("https://example.com/gone") is None

        await _search(history, "alpha", _settings(tmp_path), cache, site)
        assert site.requests.count("https://example.com/gone") == 2

    @pytest.mark.asyncio
    async def test_short_pages_counted_as_extraction_failures(self, tmp_path, cache, site):
        history = [_record("https://example.com/short", 2), _record("https://example.com/alpha", 1)]

        report = await _search(history, "alpha", _settings(tmp_path), cache, site)

        assert report.summary.extraction_failed == 1
        assert [r.url for r in report.results] == ["https://example.com/alpha"]

    @pytest.mark.asyncio
    async def test_script_and_comment_words_not_matched(self, tmp_path, cache, site):
        report = await _search(
            _history(), "scriptword,commentword", _settings(tmp_path), cache, site, match_any=True
        )
        assert report.results == []

    @pytest.mark.asyncio
    async def test_duplicate_visits_collapse_to_latest(self, tmp_path, cache, site):
        history = [
            _record("https://example.com/alpha", 1_000_000, "Old"),
            _record("https://example.com/alpha", 9_000_000, "New"),
        ]
        report = await _search(history, "alpha", _settings(tmp_path), cache, site)

        assert site.requests == ["https://example.com/alpha"]
        assert len(report.results) == 1
        assert report.results[0].title == "New"
        assert report.results[0].visit_timestamp == 9_000_000

    @pytest.mark.asyncio
    async def test_url_variants_collapse_to_latest(self, tmp_path, cache, site):
        history = [
            _record("https://example.com/alpha", 1_000_000, "Old"),
            _record("https://EXAMPLE.com/alpha/", 9_000_000, "New"),
        ]
        report = await _search(history, "alpha", _settings(tmp_path), cache, site)

        assert site.requests == ["https://example.com/alpha"]
        assert len(report.results) == 1
        assert report.results[0].title == "New"
        assert report.results[0].visit_timestamp == 9_000_000

    @pytest.mark.asyncio
    async def test_force_refresh_refetches(self, tmp_path, cache, site):
        await _search(_history(), "alpha", _settings(tmp_path), cache, site)
        site.pages["https://example.com/neither"] = html_page(FILLER + "now it mentions alpha")

        report = await _search(_history(), "alpha", _settings(tmp_path, force_refresh=True), cache, site)

        assert report.summary.fetched == 4
        assert report.summary.cache_hits == 0
        assert "https://example.com/neither" in [r.url for r in report.results]

    @pytest.mark.asyncio
    async def test_stale_entry_refetched(self, tmp_path, cache, site):
        await cache.store(
            "https://example.com/neither",
            html_page(FILLER + "old copy mentioning alpha"),
            fetched_at=datetime.now(UTC) - timedelta(days=30),
        )

        report = await _search(
            [_record("https://example.com/neither", 1)], "alpha", _settings(tmp_path), cache, site
        )

        assert report.summary.fetched == 1
        assert report.results == []

    @pytest.mark.asyncio
    async def test_cache_only_uses_stale_entries_and_no_network(self, tmp_path, cache, site):
        await cache.store(
            "https://example.com/old",
            html_page(FILLER + "stale alpha"),
            fetched_at=datetime.now(UTC) - timedelta(days=365),
        )
        await cache.store("https://example.com/broken", None, EntryStatus.ERROR)
        history = [
            _record("https://example.com/old", 3),
            _record("https://example.com/broken", 2),
            _record("https://example.com/alpha", 1),
        ]

        report = await _search(history, "alpha", _settings(tmp_path, cache_only=True), cache, site)

        assert site.requests == []
        assert [r.url for r in report.results] == ["https://example.com/old"]
        assert report.summary.cache_hits == 1
        assert report.summary.fetched == 0

    @pytest.mark.asyncio
    async def test_result_dict_shape(self, tmp_path, cache, site):
        report = await _search(_history(), "beta", _settings(tmp_path), cache, site)
        row = report.to_json_list()[0]
        assert set(row) == {"url", "title", "timestamp", "date", "match_count", "contexts"}
        assert row["url"] == "https://example.com/both"
        assert isinstance(row["contexts"], list)


# ── Fatal conditions ──────────────────────────────────────────────


class TestFatalErrors:
    @pytest.mark.asyncio
    async def test_empty_history_is_configuration_error(self, tmp_path, cache, site):
        with pytest.raises(ConfigurationError):
            await _search([], "alpha", _settings(tmp_path), cache, site)

    @pytest.mark.asyncio
    async def test_all_failures_is_no_content(self, tmp_path, cache, site):
        history = [_record("https://example.com/missing-1", 2), _record("https://example.com/missing-2", 1)]

        with pytest.raises(NoContentError) as exc_info:
            await _search(history, "alpha", _settings(tmp_path), cache, site)

        assert exc_info.value.attempted == 2
        assert exc_info.value.failed == 2

    @pytest.mark.asyncio
    async def test_cache_only_with_empty_cache_is_no_content(self, tmp_path, cache, site):
        with pytest.raises(NoContentError):
            await _search(_history(), "alpha", _settings(tmp_path, cache_only=True), cache, site)
        assert site.requests == []

    @pytest.mark.asyncio
    async def test_no_matches_is_not_an_error(self, tmp_path, cache, site):
        report = await _search(_history(), "zebra", _settings(tmp_path), cache, site)
        assert report.results == []
        assert report.summary.matched == 0
