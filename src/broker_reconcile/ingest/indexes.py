"""Point-in-time lookups for exchange rates and held positions.

Both indexes are built once per statement and are read-only afterwards. A lookup
for day D returns the latest entry on or before D, else the earliest entry after
D, else None when the pair or symbol was never observed.
"""

from __future__ import annotations

from bisect import bisect_right
from dataclasses import dataclass, field
from typing import Any, Iterable

import pandas as pd

from broker_reconcile.ingest.models import ActivityKind, ClassifiedRow, RawRow
from broker_reconcile.ingest.validators import normalize_day, parse_amount

MAX_SANE_FX_RATE = 1000.0


def day_key(value: Any) -> str:
    text = str(value or "").strip()
    if not text:
        return ""
    return normalize_day(text) or text.split(" ")[0].split(";")[0]


@dataclass(frozen=True)
class _Series:
    days: list[str]
    values: list[float]

    def as_of(self, day: str) -> float | None:
        if not self.days:
            return None
        position = bisect_right(self.days, day)
        if position:
            return self.values[position - 1]
        return self.values[0]


def _series_by_key(frame: pd.DataFrame, key_column: str, value_column: str) -> dict[str, _Series]:
    if frame.empty:
        return {}
    ordered = frame.sort_values(["day"], kind="mergesort")
    return {
        str(key): _Series(days=group["day"].tolist(), values=group[value_column].astype(float).tolist())
        for key, group in ordered.groupby(key_column, sort=False)
    }


@dataclass(frozen=True)
class FxRateIndex:
    pairs: dict[str, _Series] = field(default_factory=dict)

    def rate(self, base: str, quote: str, day: Any) -> float | None:
        """Multiplier converting an amount in ``base`` into ``quote``."""
        if base == quote:
            return 1.0
        series = self.pairs.get(f"{base}/{quote}")
        if series is None:
            return None
        return series.as_of(day_key(day))

    def __contains__(self, pair: object) -> bool:
        return pair in self.pairs

    def __len__(self) -> int:
        return len(self.pairs)


@dataclass(frozen=True)
class PositionIndex:
    symbols: dict[str, _Series] = field(default_factory=dict)

    def position(self, symbol: str, day: Any) -> float | None:
        series = self.symbols.get(symbol.strip().upper())
        if series is None:
            return None
        return series.as_of(day_key(day))

    def __len__(self) -> int:
        return len(self.symbols)


def build_fx_rate_index(rows: Iterable[RawRow]) -> FxRateIndex:
    """Collect EXECUTION-level currency trades from pre-classification rows."""
    records: list[dict[str, Any]] = []
    for row in rows:
        if row.get("LevelOfDetail") != "EXECUTION":
            continue
        parts = row.get("Symbol").split(".")
        if len(parts) != 2 or not all(parts):
            continue
        rate = parse_amount(row.get("TradePrice"))
        if rate is None or rate <= 0 or rate > MAX_SANE_FX_RATE:
            continue
        day = day_key(row.get("TradeDate") or row.get("ReportDate") or row.get("Date"))
        if not day:
            continue
        base, quote = parts
        records.append({"pair": f"{base}/{quote}", "day": day, "rate": rate})
        records.append({"pair": f"{quote}/{base}", "day": day, "rate": 1.0 / rate})

    frame = pd.DataFrame(records, columns=["pair", "day", "rate"])
    return FxRateIndex(pairs=_series_by_key(frame, "pair", "rate"))


def build_position_index(rows: Iterable[ClassifiedRow]) -> PositionIndex:
    """Replay buys and sells per symbol into a running signed quantity."""
    records: list[dict[str, Any]] = []
    for classified in rows:
        if classified.kind not in (ActivityKind.STOCK_BUY, ActivityKind.STOCK_SELL):
            continue
        symbol = classified.get("Symbol").upper()
        if not symbol:
            continue
        quantity = abs(parse_amount(classified.get("Quantity"), default=0.0) or 0.0)
        signed = quantity if classified.kind is ActivityKind.STOCK_BUY else -quantity
        day = day_key(classified.get("Date") or classified.get("TradeDate"))
        records.append({"symbol": symbol, "day": day, "signed_quantity": signed})

    frame = pd.DataFrame(records, columns=["symbol", "day", "signed_quantity"])
    if frame.empty:
        return PositionIndex()
    frame = frame.sort_values(["day"], kind="mergesort")
    frame["position"] = frame.groupby("symbol", sort=False)["signed_quantity"].cumsum()
    return PositionIndex(symbols=_series_by_key(frame, "symbol", "position"))
