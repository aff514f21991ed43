"""Domain exceptions.

Per-URL problems (fetch failures, pages with no usable text) are never
raised; they are counted in the run summary. Only the errors below stop
a run.
"""


class HistorySearchError(Exception):
    """Base class for errors that abort a search run."""


class ConfigurationError(HistorySearchError):
    """Invalid settings, keyword list or input, detected before any work."""


class NoContentError(HistorySearchError):
    """Nothing was fetched and nothing was cached, so there is nothing to search."""

    def __init__(self, attempted: int, failed: int) -> None:
        self.attempted = attempted
        self.failed = failed
        super().__init__(
            f"No content available: {failed} of {attempted} URLs failed "
            f"to fetch and none were cached"
        )


class HistorySourceError(HistorySearchError):
    """The browser profile or history database could not be read."""
