"""History source — Firefox profile discovery and places.sqlite reader.

The history database is opened read-only with ``immutable=1`` so it can be
read while Firefox is running and holding its lock.
"""

from __future__ import annotations

import configparser
import csv
import os
import sys
import time
from fnmatch import fnmatchcase
from pathlib import Path
from urllib.parse import quote

from sqlalchemy import text
from sqlalchemy.engine import URL
from sqlalchemy.exc import SQLAlchemyError

from history_search.core.exceptions import HistorySourceError
from history_search.core.logging import get_logger
from history_search.database import build_engine
from history_search.schemas.search import HistoryRecord

logger = get_logger(__name__)

NON_CONTENT_EXTENSIONS = (
    "css", "js", "png", "jpg", "jpeg", "gif", "svg", "ico",
    "woff", "woff2", "ttf", "pdf", "zip", "tar", "gz",
)

# Visit dates below this are milliseconds rather than microseconds
_MICROSECOND_THRESHOLD = 300_000_000 * 1_000_000

_HISTORY_SQL = text(
    """
    SELECT p.url,
           COALESCE(p.title, p.url) AS title,
           CASE WHEN h.visit_date > :threshold
                THEN h.visit_date
                ELSE h.visit_date * 1000 END AS visit_date
    FROM moz_historyvisits AS h
    JOIN moz_places AS p ON h.place_id = p.id
    WHERE (CASE WHEN h.visit_date > :threshold
                THEN h.visit_date
                ELSE h.visit_date * 1000 END) > :since
      AND p.url LIKE 'http%'
      AND p.url NOT LIKE 'about:%'
      AND p.url NOT LIKE 'moz-extension:%'
      AND p.url NOT LIKE 'chrome:%'
      AND p.url NOT LIKE 'resource:%'
      AND p.url NOT LIKE 'file://%'
    ORDER BY visit_date DESC
    """
)


# ── Profile discovery ─────────────────────────────────────────────


def default_firefox_dir() -> Path:
    if sys.platform == "darwin":
        return Path.home() / "Library" / "Application Support" / "Firefox"
    if sys.platform.startswith("win") or sys.platform == "cygwin":
        return Path(os.environ.get("APPDATA", Path.home())) / "Mozilla" / "Firefox"
    return Path.home() / ".mozilla" / "firefox"


def _pick_profile_path(parser: configparser.ConfigParser) -> str | None:
    # 1) Install section Default= (current Firefox)
    for section in parser.sections():
        if section.startswith("Install") and parser.get(section, "Default", fallback=None):
            return parser.get(section, "Default")

    # 2) [Profile0] (older Firefox)
    if parser.has_option("Profile0", "Path"):
        return parser.get("Profile0", "Path")

    paths = [
        parser.get(section, "Path")
        for section in parser.sections()
        if parser.has_option(section, "Path")
    ]
    # 3) default-release profile, 4) anything
    for path in paths:
        if "default-release" in path:
            return path
    return paths[0] if paths else None


def find_firefox_profile(base_dir: Path | None = None) -> Path:
    """Locate the default Firefox profile directory."""
    base_dir = Path(base_dir) if base_dir else default_firefox_dir()
    if not base_dir.is_dir():
        raise HistorySourceError(f"Firefox profile directory not found: {base_dir}")

    profiles_ini = base_dir / "profiles.ini"
    if not profiles_ini.is_file():
        raise HistorySourceError(f"Firefox profiles.ini not found: {profiles_ini}")

    parser = configparser.ConfigParser(interpolation=None)
    parser.optionxform = str  # keys are case-sensitive (Path=, Default=)
    try:
        parser.read(profiles_ini, encoding="utf-8")
    except configparser.Error as e:
        raise HistorySourceError(f"Could not parse {profiles_ini}: {e}") from e

    relative = _pick_profile_path(parser)
    if not relative:
        raise HistorySourceError("Could not find a Firefox profile in profiles.ini")

    profile = Path(relative) if Path(relative).is_absolute() else base_dir / relative
    if not profile.is_dir():
        raise HistorySourceError(f"Profile directory not found: {profile}")

    logger.debug("firefox_profile_found", profile=str(profile))
    return profile


# ── Filtering ─────────────────────────────────────────────────────


def _has_non_content_extension(url: str) -> bool:
    path = url.split("?", 1)[0].lower()
    return any(path.endswith(f".{ext}") for ext in NON_CONTENT_EXTENSIONS)


def should_exclude(url: str, patterns: list[str] | tuple[str, ...] = ()) -> bool:
    """Static assets and URLs matching any shell-style wildcard pattern are excluded."""
    if _has_non_content_extension(url):
        return True
    return any(fnmatchcase(url, pattern) for pattern in patterns)


# ── Readers ───────────────────────────────────────────────────────


async def read_firefox_history(
    profile_dir: Path,
    days_back: int,
    exclude_patterns: list[str] | tuple[str, ...] = (),
    *,
    now: float | None = None,
) -> list[HistoryRecord]:
    """Visits from the last ``days_back`` days, most recent first."""
    places = Path(profile_dir) / "places.sqlite"
    if not places.is_file():
        raise HistorySourceError(f"Firefox history database not found: {places}")

    now = time.time() if now is None else now
    since = int((now - days_back * 86_400) * 1_000_000)

    db_url = URL.create(
        "sqlite+aiosqlite",
        database=f"file:{quote(places.resolve().as_posix())}",
        query={"mode": "ro", "immutable": "1", "uri": "true"},
    )
    engine = build_engine(db_url, read_only=True)
    try:
        async with engine.connect() as conn:
            result = await conn.execute(
                _HISTORY_SQL, {"since": since, "threshold": _MICROSECOND_THRESHOLD}
            )
            rows = result.all()
    except SQLAlchemyError as e:
        raise HistorySourceError(f"Failed to query Firefox history database: {e}") from e
    finally:
        await engine.dispose()

    records: list[HistoryRecord] = []
    excluded = 0
    for url, title, visit_date in rows:
        if should_exclude(url, exclude_patterns):
            excluded += 1
            continue
        records.append(HistoryRecord(url=url, title=title or url, visit_timestamp=int(visit_date)))

    logger.info("history_loaded", kept=len(records), excluded=excluded, days_back=days_back)
    return records


def read_history_tsv(
    path: Path,
    exclude_patterns: list[str] | tuple[str, ...] = (),
    *,
    days_back: int | None = None,
    now: float | None = None,
) -> list[HistoryRecord]:
    """Read ``URL<TAB>TITLE<TAB>TIMESTAMP`` lines; blank lines are skipped.

    Timestamps are microseconds. With ``days_back`` set, only visits inside
    the same window as the Firefox reader are kept.
    """
    path = Path(path)
    if not path.is_file():
        raise HistorySourceError(f"History file not found: {path}")

    since = None
    if days_back is not None:
        now = time.time() if now is None else now
        since = int((now - days_back * 86_400) * 1_000_000)

    records: list[HistoryRecord] = []
    with path.open(encoding="utf-8", newline="") as f:
        for lineno, row in enumerate(csv.reader(f, delimiter="\t", quoting=csv.QUOTE_NONE), start=1):
            if not row or not row[0].strip():
                continue
            if len(row) < 3:
                raise HistorySourceError(f"{path}:{lineno}: expected URL, title and timestamp")
            url, title, timestamp = row[0].strip(), row[1], row[2].strip()
            try:
                visit = int(timestamp)
            except ValueError as e:
                raise HistorySourceError(f"{path}:{lineno}: bad timestamp {timestamp!r}") from e
            if since is not None and visit <= since:
                continue
            if should_exclude(url, exclude_patterns):
                continue
            records.append(HistoryRecord(url=url, title=title or url, visit_timestamp=visit))
    return records
