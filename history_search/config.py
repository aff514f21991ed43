"""Application configuration using pydantic-settings."""

from functools import lru_cache
from pathlib import Path

from pydantic import Field, ValidationError
from pydantic_settings import BaseSettings, SettingsConfigDict

from history_search.core.exceptions import ConfigurationError


def _default_cache_path() -> Path:
    return Path.home() / ".cache" / "history-search" / "cache.db"


class Settings(BaseSettings):
    """Settings loaded from HISTORY_SEARCH_* environment variables.

    The CLI overrides individual values by passing them as keyword
    arguments, so every knob here is also a command-line option.
    """

    model_config = SettingsConfigDict(
        env_prefix="HISTORY_SEARCH_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # History window
    days_back: int = Field(default=7, ge=1)
    exclude_patterns: list[str] = Field(default_factory=list)
    firefox_profile_dir: Path | None = None

    # Cache
    cache_path: Path = Field(default_factory=_default_cache_path)
    cache_max_age_hours: float = Field(default=168.0, gt=0)  # one week
    cache_only: bool = False  # never touch the network, accept stale entries
    force_refresh: bool = False  # re-fetch even when a fresh entry exists

    # Fetcher
    concurrency: int = Field(default=5, ge=1, le=20)
    request_timeout_seconds: float = Field(default=10.0, ge=1)
    connect_timeout_seconds: float = Field(default=5.0, gt=0)
    max_response_bytes: int = Field(default=10 * 1024 * 1024, ge=1)
    pacing_delay_seconds: float = Field(default=0.1, ge=0)
    user_agent: str = (
        "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36"
    )

    # Text extraction
    text_min_length: int = Field(default=50, ge=0)
    text_max_length: int = Field(default=10_000, ge=100)

    # Keyword matching
    context_chars: int = Field(default=100, ge=10)
    match_any: bool = False

    # App
    debug: bool = False
    log_level: str = "INFO"


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


def load_settings(**overrides) -> Settings:
    """Build settings from the environment plus explicit overrides.

    None-valued overrides are ignored so unset CLI options fall through to
    the environment defaults.
    """
    values = {key: value for key, value in overrides.items() if value is not None}
    try:
        return Settings(**values)
    except ValidationError as e:
        problems = "; ".join(
            f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in e.errors()
        )
        raise ConfigurationError(f"Invalid configuration: {problems}") from e
