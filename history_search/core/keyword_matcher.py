"""ALL/ANY substring search with context snippets."""

from __future__ import annotations

import re
from dataclasses import dataclass

from history_search.core.text_extractor import normalize_whitespace
from history_search.schemas.search import KeywordQuery, MatchMode

DEFAULT_CONTEXT_CHARS = 100


@dataclass(frozen=True)
class MatchResult:
    match_count: int
    contexts: tuple[str, ...]


class KeywordMatcher:
    """Case-insensitive substring matching (not word boundaries).

    ``match_count`` sums, per term, the non-overlapping occurrences; terms
    are counted independently, so a hit for "py" inside "python" counts for
    both terms. Each term present in the text contributes one context snippet:
    its first occurrence plus up to ``context_chars`` characters each side.
    """

    def __init__(self, context_chars: int = DEFAULT_CONTEXT_CHARS) -> None:
        if context_chars < 0:
            raise ValueError("context_chars must not be negative")
        self.context_chars = context_chars

    @staticmethod
    def _pattern(term: str) -> re.Pattern[str]:
        return re.compile(re.escape(term), re.IGNORECASE)

    @classmethod
    def count_occurrences(cls, text: str, term: str) -> int:
        return sum(1 for _ in cls._pattern(term).finditer(text))

    def context_for(self, text: str, term: str) -> str | None:
        match = self._pattern(term).search(text)
        if match is None:
            return None
        start = max(0, match.start() - self.context_chars)
        end = match.end() + self.context_chars
        return normalize_whitespace(text[start:end])

    def matches(self, text: str, query: KeywordQuery) -> MatchResult | None:
        """Evaluate ``query`` against ``text``; None when the predicate fails."""
        if not query.terms:
            raise ValueError("query has no terms")

        counts = [self.count_occurrences(text, term) for term in query.terms]
        present = [count > 0 for count in counts]

        if query.mode == MatchMode.ALL:
            satisfied = all(present)
        else:
            satisfied = any(present)
        if not satisfied:
            return None

        contexts: list[str] = []
        for term, found in zip(query.terms, present):
            if not found:
                continue
            snippet = self.context_for(text, term)
            if snippet:
                contexts.append(snippet)

        return MatchResult(match_count=sum(counts), contexts=tuple(contexts))
