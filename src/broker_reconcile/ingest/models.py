from __future__ import annotations

from dataclasses import dataclass, field, replace
from enum import Enum
from types import MappingProxyType
from typing import Any, Mapping

CASH_SYMBOL_PREFIX = "$CASH-"


def cash_symbol(currency: str) -> str:
    return f"{CASH_SYMBOL_PREFIX}{currency}"


def is_cash_symbol(symbol: str | None) -> bool:
    return bool(symbol) and str(symbol).startswith(CASH_SYMBOL_PREFIX)


def currency_from_cash_symbol(symbol: str | None) -> str | None:
    if not is_cash_symbol(symbol):
        return None
    return str(symbol)[len(CASH_SYMBOL_PREFIX) :]


class ActivityKind(str, Enum):
    STOCK_BUY = "STOCK_BUY"
    STOCK_SELL = "STOCK_SELL"
    DIVIDEND = "DIVIDEND"
    TAX = "TAX"
    FEE = "FEE"
    INTEREST = "INTEREST"
    DEPOSIT = "DEPOSIT"
    WITHDRAWAL = "WITHDRAWAL"
    TRANSFER_IN = "TRANSFER_IN"
    TRANSFER_OUT = "TRANSFER_OUT"
    FX_DEPOSIT = "FX_DEPOSIT"
    FX_WITHDRAWAL = "FX_WITHDRAWAL"
    SKIP = "SKIP"


class ActivityType(str, Enum):
    BUY = "BUY"
    SELL = "SELL"
    DIVIDEND = "DIVIDEND"
    TAX = "TAX"
    FEE = "FEE"
    INTEREST = "INTEREST"
    DEPOSIT = "DEPOSIT"
    WITHDRAWAL = "WITHDRAWAL"
    TRANSFER_IN = "TRANSFER_IN"
    TRANSFER_OUT = "TRANSFER_OUT"


TRADE_ACTIVITY_TYPES = frozenset({ActivityType.BUY, ActivityType.SELL})

KIND_TO_ACTIVITY_TYPE: dict[ActivityKind, ActivityType] = {
    ActivityKind.STOCK_BUY: ActivityType.BUY,
    ActivityKind.STOCK_SELL: ActivityType.SELL,
    ActivityKind.DIVIDEND: ActivityType.DIVIDEND,
    ActivityKind.TAX: ActivityType.TAX,
    ActivityKind.FEE: ActivityType.FEE,
    ActivityKind.INTEREST: ActivityType.INTEREST,
    ActivityKind.DEPOSIT: ActivityType.DEPOSIT,
    ActivityKind.WITHDRAWAL: ActivityType.WITHDRAWAL,
    ActivityKind.TRANSFER_IN: ActivityType.TRANSFER_IN,
    ActivityKind.TRANSFER_OUT: ActivityType.TRANSFER_OUT,
}


@dataclass(frozen=True)
class RawRow:
    """One statement line keyed by (normalized) column name."""

    values: Mapping[str, str]
    line_number: int = 0
    source: str = ""

    def __post_init__(self) -> None:
        object.__setattr__(self, "values", MappingProxyType(dict(self.values)))

    def get(self, column: str) -> str:
        return str(self.values.get(column) or "").strip()

    def has(self, column: str) -> bool:
        return bool(self.get(column))

    def with_values(self, **updates: str) -> RawRow:
        merged = dict(self.values)
        merged.update(updates)
        return RawRow(values=merged, line_number=self.line_number, source=self.source)

    def as_dict(self) -> dict[str, str]:
        return dict(self.values)


@dataclass(frozen=True)
class ClassifiedRow:
    row: RawRow
    kind: ActivityKind
    activity_type: ActivityType | None = None
    skip_reason: str = ""
    direction: str = ""

    def get(self, column: str) -> str:
        return self.row.get(column)

    @property
    def line_number(self) -> int:
        return self.row.line_number


@dataclass(frozen=True)
class ActivityRecord:
    date: str
    symbol: str
    activity_type: ActivityType
    quantity: float
    unit_price: float
    currency: str
    fee: float
    amount: float
    comment: str = ""
    account_id: str | None = None
    isin: str | None = None
    exchange: str | None = None
    line_number: int | None = None

    def __post_init__(self) -> None:
        if not self.currency and self.amount is None:
            raise ValueError("ActivityRecord requires an amount or a currency")

    @property
    def is_cash_like(self) -> bool:
        return self.activity_type not in TRADE_ACTIVITY_TYPES

    def with_changes(self, **changes: Any) -> ActivityRecord:
        return replace(self, **changes)

    def as_dict(self) -> dict[str, Any]:
        return {
            "date": self.date,
            "symbol": self.symbol,
            "activity_type": self.activity_type.value,
            "quantity": self.quantity,
            "unit_price": self.unit_price,
            "currency": self.currency,
            "fee": self.fee,
            "amount": self.amount,
            "comment": self.comment,
            "account_id": self.account_id,
        }


@dataclass(frozen=True)
class ConversionError:
    line_number: int
    message: str
    symbol: str = ""


@dataclass
class ClassificationCounts:
    by_kind: dict[str, int] = field(default_factory=dict)
    skip_reasons: dict[str, int] = field(default_factory=dict)

    def add(self, kind: ActivityKind, skip_reason: str = "") -> None:
        self.by_kind[kind.value] = self.by_kind.get(kind.value, 0) + 1
        if kind is ActivityKind.SKIP:
            key = skip_reason or "unspecified"
            self.skip_reasons[key] = self.skip_reasons.get(key, 0) + 1
