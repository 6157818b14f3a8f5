"""Persistent ticker cache keyed by ``isin:exchange``.

Entries are pruned on every write: anything at or past the maximum age goes
first, then only the newest ``max_entries`` survive. Store failures are logged
and never raised.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from datetime import datetime, timedelta
from pathlib import Path
from typing import TYPE_CHECKING, Any, Protocol

from broker_reconcile.config.paths import ticker_cache_path
from broker_reconcile.utils.dates import Clock, parse_timestamp, to_iso_timestamp, utcnow
from broker_reconcile.utils.logging import error_message, get_logger

if TYPE_CHECKING:
    from broker_reconcile.config.settings import Settings
    from broker_reconcile.resolve.tickers import TickerResolutionResult

logger = get_logger(__name__)

DEFAULT_MAX_AGE = timedelta(days=30)
DEFAULT_MAX_ENTRIES = 1000


class TickerCacheStore(Protocol):
    def load(self) -> dict[str, Any]: ...

    def save(self, entries: dict[str, Any]) -> None: ...


@dataclass(frozen=True)
class TickerCacheEntry:
    ticker: str
    confidence: str
    timestamp: str
    name: str | None = None

    @classmethod
    def from_dict(cls, payload: Any) -> TickerCacheEntry | None:
        if not isinstance(payload, dict):
            return None
        ticker = payload.get("ticker")
        confidence = payload.get("confidence")
        timestamp = payload.get("timestamp")
        if not all(isinstance(value, str) for value in (ticker, confidence, timestamp)):
            return None
        name = payload.get("name")
        return cls(
            ticker=ticker,
            confidence=confidence,
            timestamp=timestamp,
            name=name if isinstance(name, str) else None,
        )

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "ticker": self.ticker,
            "confidence": self.confidence,
            "timestamp": self.timestamp,
        }
        if self.name:
            payload["name"] = self.name
        return payload


def cache_key(isin: str, exchange: str) -> str:
    return f"{isin}:{exchange}"


class MemoryTickerCacheStore:
    def __init__(self, entries: dict[str, Any] | None = None) -> None:
        self.entries: dict[str, Any] = dict(entries or {})

    def load(self) -> dict[str, Any]:
        return dict(self.entries)

    def save(self, entries: dict[str, Any]) -> None:
        self.entries = dict(entries)


class JsonFileTickerCacheStore:
    def __init__(self, path: Path | None = None) -> None:
        self.path = path or ticker_cache_path()

    def load(self) -> dict[str, Any]:
        if not self.path.exists():
            return {}
        try:
            payload = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as exc:
            logger.warning("Ticker cache at %s is unreadable, ignoring: %s", self.path, exc)
            return {}
        return payload if isinstance(payload, dict) else {}

    def save(self, entries: dict[str, Any]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self.path.with_suffix(".tmp")
        tmp_path.write_text(json.dumps(entries, sort_keys=True, indent=2), encoding="utf-8")
        tmp_path.replace(self.path)


def prune_entries(
    entries: dict[str, Any],
    *,
    now: datetime,
    max_age: timedelta = DEFAULT_MAX_AGE,
    max_entries: int = DEFAULT_MAX_ENTRIES,
) -> dict[str, Any]:
    fresh: list[tuple[datetime, str, dict[str, Any]]] = []
    for key, payload in entries.items():
        entry = TickerCacheEntry.from_dict(payload)
        if entry is None:
            continue
        stamped = parse_timestamp(entry.timestamp)
        if stamped is None or now - stamped >= max_age:
            continue
        fresh.append((stamped, key, entry.to_dict()))

    if len(fresh) > max_entries:
        fresh.sort(key=lambda item: item[0])
        fresh = fresh[len(fresh) - max_entries :]
    return {key: payload for _, key, payload in fresh}


class TickerCache:
    def __init__(
        self,
        store: TickerCacheStore | None = None,
        *,
        max_age: timedelta = DEFAULT_MAX_AGE,
        max_entries: int = DEFAULT_MAX_ENTRIES,
        clock: Clock = utcnow,
    ) -> None:
        self.store = store if store is not None else MemoryTickerCacheStore()
        self.max_age = max_age
        self.max_entries = max_entries
        self.clock = clock

    @classmethod
    def from_settings(cls, store: TickerCacheStore | None, settings: Settings) -> TickerCache:
        return cls(
            store,
            max_age=timedelta(days=settings.ticker_cache_max_age_days),
            max_entries=settings.ticker_cache_max_entries,
        )

    def _load(self) -> dict[str, Any]:
        try:
            return self.store.load()
        except Exception as exc:
            logger.warning("Ticker cache read failed: %s", error_message(exc))
            return {}

    def get(self, isin: str, exchange: str) -> TickerCacheEntry | None:
        return TickerCacheEntry.from_dict(self._load().get(cache_key(isin, exchange)))

    def put(self, isin: str, exchange: str, result: TickerResolutionResult) -> None:
        if not result.ticker or result.confidence.value == "failed":
            return
        entries = self._load()
        entries[cache_key(isin, exchange)] = TickerCacheEntry(
            ticker=result.ticker,
            confidence=result.confidence.value,
            timestamp=to_iso_timestamp(self.clock()),
            name=result.name,
        ).to_dict()
        pruned = prune_entries(
            entries, now=self.clock(), max_age=self.max_age, max_entries=self.max_entries
        )
        try:
            self.store.save(pruned)
        except Exception as exc:
            logger.warning(
                "Ticker cache write failed for %s: %s", cache_key(isin, exchange), error_message(exc)
            )

    def __len__(self) -> int:
        return len(self._load())
