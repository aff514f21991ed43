"""history-search CLI application using Typer.

Search the pages behind your recent Firefox history for keywords, and
inspect or prune the local page cache. Match results are printed to stdout
as JSON (or written to --output); progress and summaries go to stderr.
"""

import asyncio
import json
from pathlib import Path

import typer
from rich.console import Console
from rich.table import Table

from history_search.config import Settings, load_settings
from history_search.core.exceptions import HistorySearchError
from history_search.core.logging import setup_logging
from history_search.schemas.search import HistoryRecord, KeywordQuery
from history_search.services.content_cache import ContentCache
from history_search.services.history import (
    find_firefox_profile,
    read_firefox_history,
    read_history_tsv,
)
from history_search.services.pipeline import SearchReport, build_query, run_search

app = typer.Typer(
    name="history-search",
    help="Search the pages in your browsing history for keywords.",
    no_args_is_help=True,
)
console = Console(stderr=True)


cache_app = typer.Typer(
    name="cache",
    help="Inspect and prune the local page cache",
    no_args_is_help=True,
)
app.add_typer(cache_app)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _flag(value: bool) -> bool | None:
    """Unset boolean flags fall through to the environment settings."""
    return True if value else None


async def _load_history(settings: Settings, history_file: Path | None) -> list[HistoryRecord]:
    if history_file is not None:
        return read_history_tsv(history_file, settings.exclude_patterns, days_back=settings.days_back)
    profile = find_firefox_profile(settings.firefox_profile_dir)
    return await read_firefox_history(profile, settings.days_back, settings.exclude_patterns)


async def _search(
    settings: Settings,
    query: KeywordQuery,
    history_file: Path | None,
) -> SearchReport:
    records = await _load_history(settings, history_file)
    async with await ContentCache.open(settings.cache_path) as cache:
        return await run_search(records, query, settings, cache=cache)


def _print_summary(report: SearchReport, query: KeywordQuery) -> None:
    summary = report.summary
    table = Table(title="Search summary", show_header=False)
    table.add_column("metric", style="cyan")
    table.add_column("value", justify="right")
    table.add_row("Keywords", ", ".join(query.terms))
    table.add_row("Match logic", "ANY (OR)" if query.mode == "any" else "ALL (AND)")
    table.add_row("URLs", str(summary.attempted))
    table.add_row("Cache hits", str(summary.cache_hits))
    table.add_row("Fetched", str(summary.fetched))
    table.add_row("Failed", str(summary.failed))
    table.add_row("No usable text", str(summary.extraction_failed))
    table.add_row("Matches", f"[bold green]{summary.matched}[/bold green]")
    console.print(table)


def _fail(error: Exception) -> typer.Exit:
    console.print(f"[red]Error:[/red] {error}")
    return typer.Exit(code=1)


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------


@app.command("search")
def search(
    keywords: str = typer.Argument(..., help="Comma-separated keywords"),
    days: int | None = typer.Option(None, "--days", "-d", help="Days of history to search"),
    exclude: list[str] | None = typer.Option(
        None, "--exclude", "-e", help="URL wildcard pattern to skip (repeatable)"
    ),
    match_any: bool = typer.Option(False, "--match-any", help="Match any keyword instead of all"),
    context: int | None = typer.Option(None, "--context", "-c", help="Context characters around matches"),
    concurrency: int | None = typer.Option(None, "--concurrency", "-p", help="Parallel fetches (1-20)"),
    timeout: float | None = typer.Option(None, "--timeout", "-t", help="Per-request timeout in seconds"),
    max_size: int | None = typer.Option(None, "--max-size", "-s", help="Maximum response size in bytes"),
    cache_max_age: float | None = typer.Option(None, "--cache-max-age", help="Cache freshness in hours"),
    cache_only: bool = typer.Option(False, "--cache-only", help="Use cached pages only, even stale ones"),
    force: bool = typer.Option(False, "--force", "-f", help="Re-fetch pages even when cached"),
    history_file: Path | None = typer.Option(
        None, "--history-file", help="TSV of URL, title, timestamp instead of Firefox"
    ),
    profile_dir: Path | None = typer.Option(None, "--profile-dir", help="Firefox profiles directory"),
    cache_path: Path | None = typer.Option(None, "--cache-path", help="Cache database file"),
    output: Path | None = typer.Option(None, "--output", "-o", help="Write JSON results to this file"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Debug logging"),
) -> None:
    """Fetch the pages in your history and search them for KEYWORDS."""
    try:
        settings = load_settings(
            days_back=days,
            exclude_patterns=exclude or None,
            match_any=_flag(match_any),
            context_chars=context,
            concurrency=concurrency,
            request_timeout_seconds=timeout,
            max_response_bytes=max_size,
            cache_max_age_hours=cache_max_age,
            cache_only=_flag(cache_only),
            force_refresh=_flag(force),
            firefox_profile_dir=profile_dir,
            cache_path=cache_path,
            debug=_flag(verbose),
            log_level="DEBUG" if verbose else None,
        )
        query = build_query(keywords, match_any=settings.match_any)
    except HistorySearchError as e:
        raise _fail(e) from e

    setup_logging(settings)

    try:
        report = asyncio.run(_search(settings, query, history_file))
    except HistorySearchError as e:
        raise _fail(e) from e

    payload = json.dumps(report.to_json_list(), indent=2, ensure_ascii=False)
    if output is not None:
        output.write_text(payload + "\n", encoding="utf-8")
        console.print(f"[green]Results saved to[/green] {output}")
    else:
        typer.echo(payload)

    _print_summary(report, query)


@cache_app.command("stats")
def cache_stats(
    cache_path: Path | None = typer.Option(None, "--cache-path", help="Cache database file"),
) -> None:
    """Show the number, size and age range of cached pages."""
    try:
        settings = load_settings(cache_path=cache_path)
    except HistorySearchError as e:
        raise _fail(e) from e

    async def _stats():
        async with await ContentCache.open(settings.cache_path) as cache:
            return await cache.stats()

    stats = asyncio.run(_stats())

    table = Table(title=f"Cache {settings.cache_path}", show_header=False)
    table.add_column("metric", style="cyan")
    table.add_column("value", justify="right")
    table.add_row("Entries", str(stats.entry_count))
    table.add_row("Total bytes", f"{stats.total_bytes:,}")
    table.add_row("Oldest", stats.oldest.isoformat() if stats.oldest else "-")
    table.add_row("Newest", stats.newest.isoformat() if stats.newest else "-")
    console.print(table)


@cache_app.command("clean")
def cache_clean(
    older_than: float = typer.Option(30, "--older-than", min=0, help="Delete pages fetched more than N days ago"),
    cache_path: Path | None = typer.Option(None, "--cache-path", help="Cache database file"),
) -> None:
    """Delete cached pages older than --older-than days."""
    try:
        settings = load_settings(cache_path=cache_path)
    except HistorySearchError as e:
        raise _fail(e) from e

    async def _clean() -> int:
        async with await ContentCache.open(settings.cache_path) as cache:
            return await cache.clean(older_than)

    removed = asyncio.run(_clean())
    console.print(f"Removed [bold]{removed}[/bold] cached page(s) older than {older_than:g} days")


def cli() -> None:
    """Entry point for the CLI application."""
    app()


if __name__ == "__main__":
    cli()
