"""Classify merged statement rows into activity kinds and rewrite their columns.

Classification is an ordered rule table: the first rule whose predicate matches
decides the outcome, and the table ends with an explicit catch-all skip so every
row is accounted for exactly once.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Callable, Iterable

from broker_reconcile.ingest.exchanges import currency_for_exchange
from broker_reconcile.ingest.models import (
    KIND_TO_ACTIVITY_TYPE,
    ActivityKind,
    ActivityType,
    ClassificationCounts,
    ClassifiedRow,
    RawRow,
    cash_symbol,
)
from broker_reconcile.ingest.validators import is_numeric_text, parse_amount
from broker_reconcile.utils.logging import get_logger

logger = get_logger(__name__)

FX_VENUE = "IDEALFX"
DEFAULT_CURRENCY = "USD"

_TAX_COUNTRY_RE = re.compile(r"- [A-Z]{2} TAX", re.IGNORECASE)
_DESCRIPTION_SYMBOL_RE = re.compile(r"^([A-Za-z0-9]+)\(")
_DIVIDEND_COMMENT_RE = re.compile(r"CASH DIVIDEND (.+?)(?:\s*-|$)", re.IGNORECASE)
_DEBIT_INTEREST_CURRENCY_RE = re.compile(r"^([A-Z]{3}) Debit Int", re.IGNORECASE)
_DIGITS_RE = re.compile(r"^\d+$")

_BASE_CURRENCY_PASSTHROUGH_CODES = frozenset({"DIV", "TTAX", "STAX", "OFEE"})


@dataclass(frozen=True)
class Classification:
    kind: ActivityKind
    skip_reason: str = ""

    @property
    def should_import(self) -> bool:
        return self.kind is not ActivityKind.SKIP


@dataclass(frozen=True)
class ClassificationRule:
    name: str
    matches: Callable[[RawRow], bool]
    outcome: Callable[[RawRow], Classification]


@dataclass(frozen=True)
class ClassificationResult:
    rows: list[ClassifiedRow]
    skipped: int
    counts_by_kind: dict[str, int] = field(default_factory=dict)
    skip_reasons: dict[str, int] = field(default_factory=dict)

    @property
    def total(self) -> int:
        return sum(self.counts_by_kind.values())


def _skip(reason: str) -> Callable[[RawRow], Classification]:
    return lambda row: Classification(ActivityKind.SKIP, reason)


def _kind(kind: ActivityKind) -> Callable[[RawRow], Classification]:
    return lambda row: Classification(kind)


def _money(row: RawRow, column: str = "TradeMoney") -> float | None:
    return parse_amount(row.get(column))


def _upper_description(row: RawRow) -> str:
    return row.get("Description").upper()


def _is_internal_transfer(row: RawRow) -> bool:
    return (
        row.get("TransactionType") == "INTERNAL"
        and row.has("_TRANSFER_DIRECTION")
        and row.get("AssetClass") == "CASH"
    )


def _transfer_outcome(row: RawRow) -> Classification:
    amount = _money(row)
    if amount is None or amount == 0:
        return Classification(ActivityKind.SKIP, "zero-amount transfer")
    direction = row.get("_TRANSFER_DIRECTION").upper()
    if direction == "IN":
        return Classification(ActivityKind.TRANSFER_IN)
    if direction == "OUT":
        return Classification(ActivityKind.TRANSFER_OUT)
    return Classification(ActivityKind.SKIP, "unknown transfer direction")


def _is_empty_row(row: RawRow) -> bool:
    return not any(
        row.has(column)
        for column in (
            "LevelOfDetail",
            "ActivityCode",
            "TransactionType",
            "Exchange",
            "Notes/Codes",
            "Description",
        )
    )


def _is_fee_refund(row: RawRow) -> bool:
    if row.get("LevelOfDetail") != "BaseCurrency" or row.get("ActivityCode") != "OFEE":
        return False
    amount = _money(row, "Amount")
    if amount is None:
        amount = _money(row)
    return amount is not None and amount > 0


def _is_base_currency_duplicate(row: RawRow) -> bool:
    return (
        row.get("LevelOfDetail") == "BaseCurrency"
        and row.get("ActivityCode") not in _BASE_CURRENCY_PASSTHROUGH_CODES
    )


def _is_fx_conversion(row: RawRow) -> bool:
    return row.get("ActivityDescription") == FX_VENUE or row.get("Exchange") == FX_VENUE


def _fx_outcome(row: RawRow) -> Classification:
    money = _money(row)
    price = _money(row, "TradePrice")
    if money is None or price is None or price == 0:
        return Classification(ActivityKind.SKIP, "fx conversion without valid amount")
    side = row.get("Buy/Sell")
    if side == "SELL" or money < 0:
        return Classification(ActivityKind.FX_DEPOSIT)
    if side == "BUY" or money > 0:
        return Classification(ActivityKind.FX_WITHDRAWAL)
    return Classification(ActivityKind.SKIP, "fx conversion without valid amount")


def _is_exchange_trade(row: RawRow) -> bool:
    return row.get("TransactionType") == "ExchTrade" and row.get("Buy/Sell") in ("BUY", "SELL")


def _trade_outcome(row: RawRow) -> Classification:
    if row.get("Buy/Sell") == "BUY":
        return Classification(ActivityKind.STOCK_BUY)
    return Classification(ActivityKind.STOCK_SELL)


def _is_dividend_line(row: RawRow) -> bool:
    return "CASH DIVIDEND" in _upper_description(row) or row.get("ActivityCode") == "DIV"


def _dividend_outcome(row: RawRow) -> Classification:
    description = row.get("Description")
    if row.get("Notes/Codes") == "Other Fees" or "- FEE" in description:
        return Classification(ActivityKind.FEE)
    if row.get("PrincipalAdjustFactor") == "Withholding Tax" or _TAX_COUNTRY_RE.search(description):
        return Classification(ActivityKind.TAX)
    return Classification(ActivityKind.DIVIDEND)


def _is_fee(row: RawRow) -> bool:
    description = _upper_description(row)
    return (
        row.get("Notes/Codes") == "Other Fees"
        or row.get("ActivityCode") in ("OFEE", "STAX")
        or "FEE" in description
        or "CHARGE" in description
        or "VAT " in description
    )


def _is_cash_movement(row: RawRow) -> bool:
    if "Deposits/Withdrawals" not in (row.get("Notes/Codes"), row.get("PrincipalAdjustFactor")):
        return False
    amount = _money(row)
    return amount is not None and amount != 0


def _cash_movement_outcome(row: RawRow) -> Classification:
    if (_money(row) or 0) > 0:
        return Classification(ActivityKind.DEPOSIT)
    return Classification(ActivityKind.WITHDRAWAL)


def _is_interest(row: RawRow) -> bool:
    description = _upper_description(row)
    return (
        "INTEREST" in description
        or "INT FOR" in description
        or "interest" in row.get("Notes/Codes").lower()
        or row.get("ActivityCode") == "DINT"
    )


def _interest_outcome(row: RawRow) -> Classification:
    description = _upper_description(row)
    if "DEBIT INT" in description or row.get("ActivityCode") == "DINT":
        return Classification(ActivityKind.FEE)
    return Classification(ActivityKind.INTEREST)


def _is_deposit_duplicate(row: RawRow) -> bool:
    return (
        row.get("ActivityCode") == "DEP"
        and row.get("Notes/Codes") != "Deposits/Withdrawals"
        and row.get("TransactionType") != "ExchTrade"
    )


CLASSIFICATION_RULES: list[ClassificationRule] = [
    ClassificationRule("internal-transfer", _is_internal_transfer, _transfer_outcome),
    ClassificationRule(
        "currency-summary",
        lambda row: row.get("LevelOfDetail") == "Currency" and not row.has("ActivityCode"),
        _skip("currency balance summary"),
    ),
    ClassificationRule(
        "position-summary",
        lambda row: row.get("LevelOfDetail") == "SUMMARY",
        _skip("position summary"),
    ),
    ClassificationRule("empty-row", _is_empty_row, _skip("empty row")),
    ClassificationRule("fee-refund", _is_fee_refund, _skip("fee refund")),
    ClassificationRule(
        "base-currency-duplicate", _is_base_currency_duplicate, _skip("base currency duplicate")
    ),
    ClassificationRule(
        "fx-summary", lambda row: row.get("ActivityCode") == "FOREX", _skip("fx summary row")
    ),
    ClassificationRule("fx-conversion", _is_fx_conversion, _fx_outcome),
    ClassificationRule("exchange-trade", _is_exchange_trade, _trade_outcome),
    ClassificationRule(
        "withholding-tax",
        lambda row: row.get("Notes/Codes") == "Withholding Tax",
        _kind(ActivityKind.TAX),
    ),
    ClassificationRule("dividend", _is_dividend_line, _dividend_outcome),
    ClassificationRule(
        "foreign-tax-duplicate",
        lambda row: row.get("ActivityCode") == "FRTAX",
        _skip("foreign tax base currency duplicate"),
    ),
    ClassificationRule("fee", _is_fee, _kind(ActivityKind.FEE)),
    ClassificationRule("cash-movement", _is_cash_movement, _cash_movement_outcome),
    ClassificationRule("interest", _is_interest, _interest_outcome),
    ClassificationRule(
        "transaction-tax", lambda row: row.get("ActivityCode") == "TTAX", _kind(ActivityKind.FEE)
    ),
    ClassificationRule("deposit-duplicate", _is_deposit_duplicate, _skip("section duplicate")),
    ClassificationRule(
        "withdrawal-duplicate",
        lambda row: row.get("ActivityCode") == "WITH",
        _skip("section duplicate"),
    ),
    ClassificationRule(
        "buy-duplicate",
        lambda row: row.get("ActivityCode") == "BUY" and row.get("TransactionType") != "ExchTrade",
        _skip("section duplicate"),
    ),
    ClassificationRule(
        "fx-adjustment",
        lambda row: row.get("ActivityCode") == "ADJ",
        _skip("fx translation adjustment"),
    ),
    ClassificationRule("unknown", lambda row: True, _skip("unknown transaction type")),
]


def classify_row(row: RawRow) -> Classification:
    for rule in CLASSIFICATION_RULES:
        if rule.matches(row):
            return rule.outcome(row)
    return Classification(ActivityKind.SKIP, "unknown transaction type")


def _format_number(value: float) -> str:
    return repr(float(value))


def _dividend_amount(row: RawRow) -> str:
    for column in ("Amount", "TradeMoney", "TradeDate"):
        value = row.get(column)
        if value and is_numeric_text(value):
            return value
    return row.get("NetCash")


def _dividend_exchange(row: RawRow) -> str:
    exchange = row.get("Exchange")
    listing = row.get("ListingExchange")
    if exchange and _DIGITS_RE.match(exchange) and listing:
        return listing
    return exchange or listing


def _dividend_date(row: RawRow) -> str:
    trade_date = row.get("TradeDate")
    if trade_date and is_numeric_text(trade_date):
        return row.get("DateTime")
    return trade_date or row.get("DateTime")


def _dividend_comment(description: str) -> str:
    match = _DIVIDEND_COMMENT_RE.search(description)
    return match.group(1).strip() if match else description


def _rewrite_dividend(row: RawRow, kind: ActivityKind) -> RawRow:
    updates: dict[str, str] = {"Quantity": "0", "TradePrice": "0"}
    amount = _dividend_amount(row)
    if amount:
        updates["TradeMoney"] = amount
    exchange = _dividend_exchange(row)
    if exchange:
        updates["Exchange"] = exchange
    date = _dividend_date(row)
    if date:
        updates["TradeDate"] = date
    if not row.has("Symbol"):
        match = _DESCRIPTION_SYMBOL_RE.match(row.get("Description"))
        if match:
            updates["Symbol"] = match.group(1).upper()
    if not row.has("ActivityDescription") and row.has("Description"):
        # The converter reads the per-share rate from ActivityDescription.
        updates["ActivityDescription"] = row.get("Description")
    if kind is ActivityKind.DIVIDEND:
        updates["Description"] = _dividend_comment(row.get("Description"))
    return row.with_values(**updates)


def _rewrite_cash_movement(row: RawRow, kind: ActivityKind) -> RawRow:
    currency = row.get("CurrencyPrimary") or DEFAULT_CURRENCY
    updates = {"Symbol": cash_symbol(currency), "Quantity": "0", "TradePrice": "0"}
    if kind in (ActivityKind.TRANSFER_IN, ActivityKind.TRANSFER_OUT):
        amount = _money(row)
        if amount is not None:
            updates["TradeMoney"] = _format_number(abs(amount))
    return row.with_values(**updates)


def _rewrite_other_cash(row: RawRow) -> RawRow:
    updates: dict[str, str] = {}
    fee_amount = row.get("Amount") or row.get("Debit") or row.get("NetCash")
    if fee_amount:
        updates["TradeMoney"] = fee_amount

    activity_code = row.get("ActivityCode")
    currency = row.get("CurrencyPrimary") or DEFAULT_CURRENCY
    if activity_code == "DINT":
        match = _DEBIT_INTEREST_CURRENCY_RE.match(
            row.get("ActivityDescription") or row.get("Description")
        )
        if match:
            currency = match.group(1).upper()
    if activity_code == "TTAX":
        currency = currency_for_exchange(row.get("ListingExchange")) or currency

    updates.update(
        Symbol=cash_symbol(currency),
        CurrencyPrimary=currency,
        Quantity="0",
        TradePrice="0",
    )
    return row.with_values(**updates)


def _rewrite_trade(row: RawRow) -> RawRow:
    updates: dict[str, str] = {}
    for column in ("Quantity", "TradePrice", "IBCommission"):
        value = parse_amount(row.get(column)) if row.has(column) else None
        if value is not None:
            updates[column] = _format_number(abs(value))
    return row.with_values(**updates)


def _split_fx(row: RawRow, kind: ActivityKind) -> list[ClassifiedRow]:
    symbol = row.get("Symbol").upper()
    parts = symbol.split(".")
    source_currency = parts[0] if len(parts) == 2 else DEFAULT_CURRENCY
    target_currency = row.get("CurrencyPrimary") or (parts[1] if len(parts) == 2 else DEFAULT_CURRENCY)
    trade_date = row.get("Date") or row.get("TradeDate")
    trade_id = row.get("TradeID")
    reference = f"FX:{symbol}:{trade_date}:{trade_id}"

    emitted: list[ClassifiedRow] = []
    commission = parse_amount(row.get("IBCommission"))
    if commission:
        commission_currency = row.get("IBCommissionCurrency") or source_currency
        fee_row = row.with_values(
            CurrencyPrimary=commission_currency,
            Symbol=cash_symbol(commission_currency),
            TradeMoney=_format_number(abs(commission)),
            Quantity="0",
            TradePrice="0",
            IBCommission="0",
            Description=f"FX commission: {symbol}:{trade_date}:{trade_id}",
            ActivityDescription=f"FX commission: {symbol}:{trade_date}:{trade_id}",
        )
        emitted.append(ClassifiedRow(fee_row, ActivityKind.FEE, ActivityType.FEE))

    money = parse_amount(row.get("TradeMoney")) or 0.0
    price = parse_amount(row.get("TradePrice")) or 0.0
    selling_source = kind is ActivityKind.FX_DEPOSIT
    legs = (
        (source_currency, abs(money) / price, "OUT" if selling_source else "IN"),
        (target_currency, abs(money), "IN" if selling_source else "OUT"),
    )
    for currency, amount, direction in legs:
        leg = row.with_values(
            CurrencyPrimary=currency,
            Symbol=cash_symbol(currency),
            TradeMoney=_format_number(amount),
            Quantity="0",
            TradePrice="0",
            IBCommission="0",
            Description=reference,
            ActivityDescription=reference,
        )
        activity_type = ActivityType.TRANSFER_OUT if direction == "OUT" else ActivityType.TRANSFER_IN
        emitted.append(ClassifiedRow(leg, kind, activity_type, direction=direction))
    return emitted


def expand_row(row: RawRow, classification: Classification) -> list[ClassifiedRow]:
    """Rewrite one classified row into the rows the converter consumes."""
    kind = classification.kind
    if kind is ActivityKind.SKIP:
        return []

    if row.has("Symbol"):
        row = row.with_values(Symbol=row.get("Symbol").upper())

    if kind in (ActivityKind.FX_DEPOSIT, ActivityKind.FX_WITHDRAWAL):
        return _split_fx(row, kind)

    if kind in (ActivityKind.DIVIDEND, ActivityKind.TAX):
        row = _rewrite_dividend(row, kind)
    elif kind in (
        ActivityKind.DEPOSIT,
        ActivityKind.WITHDRAWAL,
        ActivityKind.TRANSFER_IN,
        ActivityKind.TRANSFER_OUT,
    ):
        row = _rewrite_cash_movement(row, kind)
    elif kind in (ActivityKind.FEE, ActivityKind.INTEREST):
        row = _rewrite_other_cash(row)
    elif kind in (ActivityKind.STOCK_BUY, ActivityKind.STOCK_SELL):
        row = _rewrite_trade(row)

    direction = row.get("_TRANSFER_DIRECTION").upper() if kind in (
        ActivityKind.TRANSFER_IN,
        ActivityKind.TRANSFER_OUT,
    ) else ""
    return [ClassifiedRow(row, kind, KIND_TO_ACTIVITY_TYPE[kind], direction=direction)]


def preprocess_rows(rows: Iterable[RawRow]) -> ClassificationResult:
    """Classify every row; each input row increments exactly one counter."""
    counts = ClassificationCounts()
    emitted: list[ClassifiedRow] = []
    skipped = 0

    for row in rows:
        classification = classify_row(row)
        counts.add(classification.kind, classification.skip_reason)
        if not classification.should_import:
            skipped += 1
            logger.debug(
                "Line %s skipped: %s", row.line_number, classification.skip_reason
            )
            continue
        emitted.extend(expand_row(row, classification))

    return ClassificationResult(
        rows=emitted,
        skipped=skipped,
        counts_by_kind=counts.by_kind,
        skip_reasons=counts.skip_reasons,
    )
