"""Turn classified statement rows into canonical activity records."""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Collection, Iterable

from broker_reconcile.ingest.exchanges import currency_for_exchange
from broker_reconcile.ingest.indexes import FxRateIndex, PositionIndex
from broker_reconcile.ingest.models import (
    TRADE_ACTIVITY_TYPES,
    ActivityRecord,
    ActivityType,
    ClassifiedRow,
    ConversionError,
    cash_symbol,
)
from broker_reconcile.ingest.validators import normalize_day, parse_amount
from broker_reconcile.utils.logging import get_logger

logger = get_logger(__name__)

_PER_SHARE_RE = re.compile(r"Cash Dividend ([A-Z]{3}) ([\d.]+) per Share", re.IGNORECASE)
_NO_PER_SHARE_RE = re.compile(r"Cash Dividend ([A-Z]{3}) ([\d.]+)(?:\s|\()", re.IGNORECASE)
_TRAILING_NUMBER_RE = re.compile(r"\s([\d.]+)$")
_DATE_COLUMNS = ("Date", "ReportDate", "TradeDate", "DateTime")


@dataclass(frozen=True)
class DividendInfo:
    currency: str
    per_share: float


@dataclass(frozen=True)
class ConversionResult:
    records: list[ActivityRecord]
    errors: list[ConversionError] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)


def parse_dividend_info(text: str | None) -> DividendInfo | None:
    if not text:
        return None
    for pattern in (_PER_SHARE_RE, _NO_PER_SHARE_RE):
        match = pattern.search(text)
        if match:
            try:
                return DividendInfo(currency=match.group(1).upper(), per_share=float(match.group(2)))
            except ValueError:
                return None
    return None


def parse_transaction_tax_amount(description: str) -> float | None:
    match = _TRAILING_NUMBER_RE.search(description.strip())
    if not match:
        return None
    try:
        return float(match.group(1))
    except ValueError:
        return None


def _number(value: str) -> float:
    return parse_amount(value, default=0.0) or 0.0


def _record_day(row: ClassifiedRow) -> str | None:
    for column in _DATE_COLUMNS:
        day = normalize_day(row.get(column))
        if day:
            return day
    return None


def _listing_currency(row: ClassifiedRow) -> str | None:
    return currency_for_exchange(row.get("ListingExchange"))


def _transaction_currency(row: ClassifiedRow, base_currency: str) -> str:
    activity_code = row.get("ActivityCode")
    if activity_code in ("TTAX", "OFEE") and _listing_currency(row):
        return _listing_currency(row)
    if row.activity_type not in TRADE_ACTIVITY_TYPES:
        return base_currency
    if len(row.get("Symbol").split(".")) == 2:
        return base_currency
    return _listing_currency(row) or base_currency


class _Converter:
    def __init__(
        self,
        fx_index: FxRateIndex,
        position_index: PositionIndex,
        currencies: Collection[str],
    ) -> None:
        self.fx_index = fx_index
        self.position_index = position_index
        self.currencies = {currency.upper() for currency in currencies}
        self.warnings: list[str] = []

    def _warn(self, message: str) -> None:
        logger.warning(message)
        self.warnings.append(message)

    def _positive_position(self, symbol: str, day: str) -> float:
        position = self.position_index.position(symbol, day) if symbol else None
        return position if position and position > 0 else 0.0

    def _passthrough(
        self, row: ClassifiedRow, kind: str, stated: float, base_currency: str, day: str
    ) -> tuple[float, str]:
        label = row.get("Symbol") or f"line {row.line_number}"
        self._warn(
            f"Unrecognized {kind} description for {label} on {day}, "
            f"using the {base_currency} amount as stated"
        )
        return stated, base_currency

    def _dividend(self, row: ClassifiedRow, base_currency: str, day: str) -> tuple[float, str]:
        stated = abs(_number(row.get("TradeMoney")))
        info = parse_dividend_info(row.get("ActivityDescription") or row.get("Description"))
        if info is None:
            return self._passthrough(row, "dividend", stated, base_currency, day)

        symbol = row.get("Symbol").upper()
        position = self._positive_position(symbol, day)
        if position and info.per_share > 0:
            return position * info.per_share, info.currency
        if info.currency == base_currency:
            return stated, info.currency

        rate = self.fx_index.rate(base_currency, info.currency, day)
        if rate and rate > 0:
            return stated * rate, info.currency
        self._warn(
            f"No FX rate or position for {base_currency}/{info.currency} dividend: "
            f"{symbol} on {day}, amount may be incorrect"
        )
        return stated, info.currency

    def _dividend_tax(self, row: ClassifiedRow, base_currency: str, day: str) -> tuple[float, str]:
        stated = abs(_number(row.get("TradeMoney")))
        info = parse_dividend_info(row.get("ActivityDescription") or row.get("Description"))
        if info is None:
            return self._passthrough(row, "tax", stated, base_currency, day)
        if info.currency == base_currency:
            return stated, info.currency

        symbol = row.get("Symbol").upper()
        rate = self.fx_index.rate(base_currency, info.currency, day)
        position = self._positive_position(symbol, day)
        if position and info.per_share > 0 and rate and rate > 0:
            gross = position * info.per_share
            estimated_base_dividend = gross / rate
            tax_rate = stated / estimated_base_dividend if estimated_base_dividend > 0 else 0.0
            return gross * tax_rate, info.currency
        if rate and rate > 0:
            return stated * rate, info.currency
        self._warn(
            f"No FX rate or position for {base_currency}/{info.currency} tax: "
            f"{symbol} on {day}, amount may be incorrect"
        )
        return stated, info.currency

    def _other_cash_amount(self, row: ClassifiedRow, base_currency: str, day: str) -> float:
        activity_code = row.get("ActivityCode")
        stated = abs(_number(row.get("TradeMoney")))
        if activity_code == "TTAX":
            parsed = parse_transaction_tax_amount(row.get("ActivityDescription") or row.get("Description"))
            return parsed if parsed is not None else stated
        listing_currency = _listing_currency(row)
        if activity_code == "OFEE" and listing_currency:
            rate = self.fx_index.rate(base_currency, listing_currency, day)
            if rate and rate > 0:
                return stated * rate
            self._warn(
                f"No FX rate for {base_currency}/{listing_currency} OFEE fee on {day}, "
                "amount may be incorrect"
            )
        return stated

    def convert(self, row: ClassifiedRow) -> ActivityRecord | ConversionError:
        activity_type = row.activity_type
        if activity_type is None:
            return ConversionError(row.line_number, "Row has no activity type", row.get("Symbol"))

        day = _record_day(row)
        if day is None:
            return ConversionError(row.line_number, "Missing or unparseable date", row.get("Symbol"))

        base_currency = (row.get("CurrencyPrimary") or "USD").upper()
        currency = _transaction_currency(row, base_currency)
        quantity = _number(row.get("Quantity"))
        unit_price = _number(row.get("TradePrice"))

        if activity_type in TRADE_ACTIVITY_TYPES:
            amount = abs(quantity * unit_price)
            fee = abs(_number(row.get("IBCommission"))) + abs(_number(row.get("Taxes")))
        elif activity_type is ActivityType.DIVIDEND:
            amount, currency = self._dividend(row, base_currency, day)
            fee = 0.0
        elif activity_type is ActivityType.TAX:
            amount, currency = self._dividend_tax(row, base_currency, day)
            fee = 0.0
        else:
            amount = self._other_cash_amount(row, base_currency, day)
            fee = abs(_number(row.get("IBCommission")))

        if currency not in self.currencies:
            return ConversionError(
                row.line_number,
                f"No account found for currency {currency}",
                row.get("Symbol") or row.get("ActivityDescription"),
            )

        is_trade = activity_type in TRADE_ACTIVITY_TYPES
        return ActivityRecord(
            date=day,
            symbol=row.get("Symbol") or row.get("SecurityID") or cash_symbol(currency),
            activity_type=activity_type,
            quantity=quantity if is_trade else amount,
            unit_price=unit_price if is_trade else 1.0,
            currency=currency,
            fee=fee,
            amount=amount,
            comment=row.get("ActivityDescription") or row.get("Description"),
            isin=row.get("ISIN") or None,
            exchange=row.get("ListingExchange") or row.get("Exchange") or None,
            line_number=row.line_number,
        )


def convert_rows(
    rows: Iterable[ClassifiedRow],
    fx_index: FxRateIndex,
    position_index: PositionIndex,
    currencies: Collection[str],
) -> ConversionResult:
    """Convert every row; rows that cannot be converted become errors, not failures."""
    converter = _Converter(fx_index, position_index, currencies)
    records: list[ActivityRecord] = []
    errors: list[ConversionError] = []

    for row in rows:
        try:
            outcome = converter.convert(row)
        except (ValueError, TypeError, ZeroDivisionError) as exc:
            logger.error("Error converting line %s: %s", row.line_number, exc)
            outcome = ConversionError(row.line_number, f"Conversion failed: {exc}", row.get("Symbol"))
        if isinstance(outcome, ConversionError):
            errors.append(outcome)
        else:
            records.append(outcome)

    logger.debug(
        "Converted %s rows into %s records (%s errors)", len(records) + len(errors), len(records), len(errors)
    )
    return ConversionResult(records=records, errors=errors, warnings=converter.warnings)
