"""Search schemas (history input, keyword query, match output)."""

from datetime import datetime
from enum import StrEnum

from pydantic import BaseModel, ConfigDict, Field, field_validator

# ── History input ────────────────────────────────────────────────────


class HistoryRecord(BaseModel):
    """One visit from the browser history."""

    model_config = ConfigDict(frozen=True)

    url: str
    title: str
    visit_timestamp: int  # microseconds since the epoch


# ── Keyword query ────────────────────────────────────────────────────


class MatchMode(StrEnum):
    """How the terms of a query combine."""

    ALL = "all"
    ANY = "any"


class KeywordQuery(BaseModel):
    model_config = ConfigDict(frozen=True)

    terms: tuple[str, ...] = Field(min_length=1)
    mode: MatchMode = MatchMode.ALL

    @field_validator("terms", mode="before")
    @classmethod
    def _strip_terms(cls, value):
        if isinstance(value, str):
            value = value.split(",")
        return tuple(t.strip() for t in value if t and t.strip())

    @classmethod
    def parse(cls, keywords: str, *, match_any: bool = False) -> "KeywordQuery":
        """Build a query from a comma-separated keyword list."""
        return cls(terms=keywords, mode=MatchMode.ANY if match_any else MatchMode.ALL)


# ── Match output ─────────────────────────────────────────────────────


def format_visit_date(visit_timestamp: int) -> str:
    """Render a microsecond timestamp as local ``YYYY-MM-DD HH:MM:SS``."""
    try:
        return datetime.fromtimestamp(visit_timestamp / 1_000_000).strftime("%Y-%m-%d %H:%M:%S")
    except (OverflowError, OSError, ValueError):
        return "Unknown"


class MatchRecord(BaseModel):
    """A history entry whose page satisfied the keyword query."""

    model_config = ConfigDict(frozen=True)

    url: str
    title: str
    visit_timestamp: int
    match_count: int = Field(ge=0)
    contexts: tuple[str, ...] = ()

    @property
    def date(self) -> str:
        return format_visit_date(self.visit_timestamp)

    def to_dict(self) -> dict:
        """Interchange form consumed by report renderers."""
        return {
            "url": self.url,
            "title": self.title,
            "timestamp": self.visit_timestamp,
            "date": self.date,
            "match_count": self.match_count,
            "contexts": list(self.contexts),
        }
