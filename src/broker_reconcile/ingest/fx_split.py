from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Iterable, Mapping

from broker_reconcile.ingest.models import (
    ActivityRecord,
    ActivityType,
    cash_symbol,
    currency_from_cash_symbol,
)
from broker_reconcile.utils.logging import get_logger

logger = get_logger(__name__)

FX_PAIR_RE = re.compile(r"^[A-Z]{3}\.[A-Z]{3}$")
FX_TRANSFER_PREFIX = "FX:"


@dataclass(frozen=True)
class SkippedFxConversion:
    symbol: str
    reason: str
    source_currency: str | None = None
    target_currency: str | None = None
    source_amount: float | None = None
    target_amount: float | None = None


@dataclass(frozen=True)
class FxSplitResult:
    records: list[ActivityRecord]
    skipped: list[SkippedFxConversion] = field(default_factory=list)
    total_fx_conversions: int = 0
    successful_splits: int = 0


def is_fx_pair(symbol: str | None) -> bool:
    return bool(symbol) and bool(FX_PAIR_RE.match(symbol))


def _is_fx_transfer_leg(record: ActivityRecord) -> bool:
    return (
        record.activity_type in (ActivityType.TRANSFER_IN, ActivityType.TRANSFER_OUT)
        and currency_from_cash_symbol(record.symbol) is not None
        and record.comment.startswith(FX_TRANSFER_PREFIX)
    )


def _split_pair(
    record: ActivityRecord, accounts_by_currency: Mapping[str, str]
) -> tuple[ActivityRecord, ActivityRecord] | SkippedFxConversion:
    source_currency, target_currency = record.symbol.split(".")
    source_amount = abs(record.quantity or 0.0)
    target_amount = abs(source_amount * (record.unit_price or 0.0))
    if target_amount == 0:
        target_amount = abs(record.amount or 0.0)

    for role, currency in (("Source", source_currency), ("Target", target_currency)):
        if currency not in accounts_by_currency:
            action = "withdrawal" if role == "Source" else "deposit"
            return SkippedFxConversion(
                symbol=record.symbol,
                reason=f"{role} account for {currency} not found - cannot create {action}",
                source_currency=source_currency,
                target_currency=target_currency,
                source_amount=source_amount,
                target_amount=target_amount,
            )

    withdrawal = record.with_changes(
        activity_type=ActivityType.WITHDRAWAL,
        symbol=cash_symbol(source_currency),
        currency=source_currency,
        quantity=source_amount,
        unit_price=1.0,
        amount=source_amount,
        fee=0.0,
        comment=record.comment or f"FX conversion to {target_currency}",
        account_id=accounts_by_currency[source_currency],
    )
    deposit = record.with_changes(
        activity_type=ActivityType.DEPOSIT,
        symbol=cash_symbol(target_currency),
        currency=target_currency,
        quantity=target_amount,
        unit_price=1.0,
        amount=target_amount,
        fee=0.0,
        comment=record.comment or f"FX conversion from {source_currency}",
        account_id=accounts_by_currency[target_currency],
    )
    return withdrawal, deposit


def split_fx_conversions(
    records: Iterable[ActivityRecord], accounts_by_currency: Mapping[str, str]
) -> FxSplitResult:
    """Turn currency-pair records into a withdrawal/deposit pair, one leg per account."""
    output: list[ActivityRecord] = []
    skipped: list[SkippedFxConversion] = []
    total = 0
    successful = 0

    for record in records:
        if _is_fx_transfer_leg(record):
            account_id = accounts_by_currency.get(record.currency)
            output.append(record.with_changes(account_id=account_id) if account_id else record)
            continue
        if not is_fx_pair(record.symbol):
            output.append(record)
            continue

        total += 1
        outcome = _split_pair(record, accounts_by_currency)
        if isinstance(outcome, SkippedFxConversion):
            logger.warning("Skipping FX conversion %s: %s", record.symbol, outcome.reason)
            skipped.append(outcome)
            continue
        output.extend(outcome)
        successful += 1

    if total:
        logger.info(
            "Processed %s FX conversions, created %s records, skipped %s",
            total,
            successful * 2,
            len(skipped),
        )
    return FxSplitResult(
        records=output,
        skipped=skipped,
        total_fx_conversions=total,
        successful_splits=successful,
    )
