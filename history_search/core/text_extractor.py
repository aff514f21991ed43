"""Text extractor — plain-text approximation of fetched markup.

Regex based: script/style blocks and comments go first, then the remaining
tags, so script bodies never leak into the text. Entities are decoded and
whitespace collapsed. Output is hard-truncated to a maximum length; pages
with less text than the minimum are rejected.
"""

from __future__ import annotations

import codecs
import html
import re
from dataclasses import dataclass

from history_search.core.logging import get_logger

logger = get_logger(__name__)

DEFAULT_MIN_LENGTH = 50
DEFAULT_MAX_LENGTH = 10_000

_SCRIPT_RE = re.compile(r"<script[^>]*>.*?</script>", re.IGNORECASE | re.DOTALL)
_STYLE_RE = re.compile(r"<style[^>]*>.*?</style>", re.IGNORECASE | re.DOTALL)
_COMMENT_RE = re.compile(r"<!--.*?-->", re.DOTALL)
_TAG_RE = re.compile(r"<[^>]+>")
_WHITESPACE_RE = re.compile(r"\s+")
_CHARSET_RE = re.compile(r"charset\s*=\s*[\"']?([\w.:-]+)", re.IGNORECASE)


@dataclass(frozen=True)
class ExtractedText:
    text: str
    length: int
    content_address: str | None = None


def _charset_from_content_type(content_type: str | None) -> str:
    if content_type:
        match = _CHARSET_RE.search(content_type)
        if match:
            try:
                return codecs.lookup(match.group(1)).name
            except LookupError:
                pass
    return "utf-8"


def normalize_whitespace(text: str) -> str:
    return _WHITESPACE_RE.sub(" ", text).strip()


def markup_to_text(markup: str) -> str:
    content = _SCRIPT_RE.sub("", markup)
    content = _STYLE_RE.sub("", content)
    content = _COMMENT_RE.sub("", content)
    content = _TAG_RE.sub("", content)
    content = html.unescape(content)
    return normalize_whitespace(content)


class TextExtractor:
    def __init__(
        self,
        *,
        min_length: int = DEFAULT_MIN_LENGTH,
        max_length: int = DEFAULT_MAX_LENGTH,
    ) -> None:
        if max_length < 1:
            raise ValueError("max_length must be positive")
        self.min_length = min_length
        self.max_length = max_length

    def extract(
        self,
        raw_content: bytes | str | None,
        *,
        content_type: str | None = None,
        content_address: str | None = None,
    ) -> ExtractedText | None:
        """Return the page text, or None when there is too little of it."""
        if not raw_content:
            return None

        if isinstance(raw_content, bytes):
            markup = raw_content.decode(_charset_from_content_type(content_type), errors="ignore")
        else:
            markup = raw_content

        text = markup_to_text(markup)
        if len(text) < self.min_length:
            logger.debug("text_too_short", length=len(text), content_address=content_address)
            return None

        text = text[: self.max_length]
        return ExtractedText(text=text, length=len(text), content_address=content_address)
