"""Pydantic schemas for search input and output."""

from history_search.schemas.search import (
    HistoryRecord,
    KeywordQuery,
    MatchMode,
    MatchRecord,
    format_visit_date,
)

__all__ = [
    "HistoryRecord",
    "KeywordQuery",
    "MatchMode",
    "MatchRecord",
    "format_visit_date",
]
