"""Allow ``python -m history_search``."""

from history_search.cli import cli

cli()
