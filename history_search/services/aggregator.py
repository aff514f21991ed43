"""Joins keyword matches with their history records."""

from __future__ import annotations

from collections.abc import Iterable, Mapping

from history_search.core.keyword_matcher import MatchResult
from history_search.schemas.search import HistoryRecord, MatchRecord
from history_search.services.content_cache import content_address


def latest_visits(history: Iterable[HistoryRecord]) -> dict[str, HistoryRecord]:
    """Most recent record per content address; on equal timestamps the first one seen wins.

    URL variants that normalize to the same address (host case, trailing
    slash, fragment) are the same page and collapse together.
    """
    latest: dict[str, HistoryRecord] = {}
    for record in history:
        address = content_address(record.url)
        current = latest.get(address)
        if current is None or record.visit_timestamp > current.visit_timestamp:
            latest[address] = record
    return latest


def aggregate(
    matches: Mapping[str, MatchResult],
    history: Iterable[HistoryRecord],
) -> list[MatchRecord]:
    """Build match records ordered by visit time, most recent first.

    ``matches`` is keyed by any URL variant of the page. Only pages present
    in ``matches`` are emitted, with the URL, title and time of their most
    recent visit. Ties keep history order.
    """
    by_address = {content_address(url): result for url, result in matches.items()}
    latest = latest_visits(history)

    records = [
        MatchRecord(
            url=visit.url,
            title=visit.title,
            visit_timestamp=visit.visit_timestamp,
            match_count=by_address[address].match_count,
            contexts=by_address[address].contexts,
        )
        for address, visit in latest.items()
        if address in by_address
    ]
    records.sort(key=lambda r: r.visit_timestamp, reverse=True)
    return records
