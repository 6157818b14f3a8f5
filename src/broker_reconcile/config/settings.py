from __future__ import annotations

import os
from dataclasses import dataclass
from enum import Enum

from broker_reconcile.config.paths import default_db_path

DEFAULT_FLEX_BASE_URL = "https://ndcdyn.interactivebrokers.com/AccountManagement/FlexWebService"


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "t", "yes", "y", "on"}


def _env_float(name: str, default: float) -> float:
    raw = str(os.getenv(name, "") or "").strip()
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        return default


def _env_int(name: str, default: int) -> int:
    raw = str(os.getenv(name, "") or "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


class DedupFailurePolicy(str, Enum):
    """What to do with a batch when existing activities cannot be fetched."""

    IMPORT = "import"
    SKIP = "skip"


def _env_dedup_policy(name: str, default: DedupFailurePolicy) -> DedupFailurePolicy:
    raw = str(os.getenv(name, "") or "").strip().lower()
    if raw == DedupFailurePolicy.SKIP.value:
        return DedupFailurePolicy.SKIP
    if raw == DedupFailurePolicy.IMPORT.value:
        return DedupFailurePolicy.IMPORT
    return default


@dataclass(frozen=True)
class Settings:
    app_env: str
    database_url: str
    flex_base_url: str
    fetch_cooldown_hours: float
    flex_initial_delay_seconds: float
    flex_max_delay_seconds: float
    flex_backoff_factor: float
    flex_timeout_seconds: float
    request_timeout_seconds: float
    ticker_resolution_delay_seconds: float
    ticker_cache_max_age_days: int
    ticker_cache_max_entries: int
    auto_fetch_debounce_seconds: float
    auto_fetch_interval_seconds: float
    enable_quote_search: bool
    dedup_fetch_failure_policy: DedupFailurePolicy


def get_settings() -> Settings:
    db_default = f"sqlite:///{default_db_path().as_posix()}"
    return Settings(
        app_env=os.getenv("APP_ENV", "development"),
        database_url=os.getenv("DATABASE_URL", db_default),
        flex_base_url=os.getenv("FLEX_BASE_URL", DEFAULT_FLEX_BASE_URL).rstrip("/"),
        fetch_cooldown_hours=_env_float("FETCH_COOLDOWN_HOURS", 6.0),
        flex_initial_delay_seconds=_env_float("FLEX_INITIAL_DELAY_SECONDS", 2.0),
        flex_max_delay_seconds=_env_float("FLEX_MAX_DELAY_SECONDS", 30.0),
        flex_backoff_factor=_env_float("FLEX_BACKOFF_FACTOR", 1.5),
        flex_timeout_seconds=_env_float("FLEX_TIMEOUT_SECONDS", 300.0),
        request_timeout_seconds=_env_float("REQUEST_TIMEOUT_SECONDS", 10.0),
        ticker_resolution_delay_seconds=_env_float("TICKER_RESOLUTION_DELAY_SECONDS", 0.05),
        ticker_cache_max_age_days=_env_int("TICKER_CACHE_MAX_AGE_DAYS", 30),
        ticker_cache_max_entries=_env_int("TICKER_CACHE_MAX_ENTRIES", 1000),
        auto_fetch_debounce_seconds=_env_float("AUTO_FETCH_DEBOUNCE_SECONDS", 2.0),
        auto_fetch_interval_seconds=_env_float("AUTO_FETCH_INTERVAL_SECONDS", 3600.0),
        enable_quote_search=_env_bool("ENABLE_QUOTE_SEARCH", True),
        dedup_fetch_failure_policy=_env_dedup_policy(
            "DEDUP_FETCH_FAILURE_POLICY", DedupFailurePolicy.IMPORT
        ),
    )
