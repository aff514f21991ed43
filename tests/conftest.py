"""Shared fixtures: a throwaway cache database and fake HTTP transports."""

from __future__ import annotations

import httpx
import pytest
import pytest_asyncio

from history_search.services.content_cache import ContentCache


@pytest_asyncio.fixture
async def cache(tmp_path):
    cache = await ContentCache.open(tmp_path / "cache.db")
    try:
        yield cache
    finally:
        await cache.close()


def html_page(body: str) -> bytes:
    """A small page whose visible text is ``body`` (plus a script to be stripped)."""
    return (
        "<html><head><title>ignored title</title>"
        "<script>var hidden = 'scriptword';</script>"
        "<style>.x { color: red }</style></head>"
        f"<body><!-- commentword --><p>{body}</p></body></html>"
    ).encode()


@pytest.fixture
def page_transport():
    """Serves ``pages[url]`` as HTML, 404 for unknown URLs, and records every request."""

    class _PageTransport(httpx.MockTransport):
        def __init__(self) -> None:
            self.pages: dict[str, bytes] = {}
            self.requests: list[str] = []
            super().__init__(self._handle)

        def _handle(self, request: httpx.Request) -> httpx.Response:
            url = str(request.url)
            self.requests.append(url)
            body = self.pages.get(url)
            if body is None:
                return httpx.Response(404, content=b"not found")
            return httpx.Response(
                200,
                content=body,
                headers={"content-type": "text/html; charset=utf-8"},
            )

    return _PageTransport()
