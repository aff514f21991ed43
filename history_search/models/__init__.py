"""SQLAlchemy models package."""

from history_search.models.page_cache import PageCache

__all__ = [
    "PageCache",
]
