from __future__ import annotations

import re
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import date, datetime
from enum import Enum
from typing import Any, Awaitable, Callable, Iterable, Sequence

from broker_reconcile.config.settings import DedupFailurePolicy
from broker_reconcile.ingest.converter import parse_dividend_info
from broker_reconcile.ingest.models import ActivityRecord
from broker_reconcile.utils.logging import error_message, get_logger

logger = get_logger(__name__)

_ISO_DAY_RE = re.compile(r"^(\d{4}-\d{2}-\d{2})")
_TRADE_TYPES = {"BUY", "SELL"}

ExistingActivity = Mapping[str, Any]
FetchExisting = Callable[[str], Awaitable[Sequence[ExistingActivity]]]

_FIELD_ALIASES = {
    "date": ("date", "activity_date"),
    "symbol": ("symbol", "asset_id"),
    "activity_type": ("activity_type",),
    "quantity": ("quantity",),
    "unit_price": ("unit_price",),
    "amount": ("amount",),
    "fee": ("fee",),
    "currency": ("currency",),
    "comment": ("comment",),
}


def _normalize_text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, Enum):
        value = value.value
    return str(value).strip().upper()


def _normalize_float(value: Any) -> str:
    try:
        parsed = float(value)
    except (TypeError, ValueError):
        parsed = 0.0
    if parsed != parsed:
        parsed = 0.0
    return f"{parsed:.6f}"


def _normalize_day(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, datetime):
        return value.date().isoformat()
    if isinstance(value, date):
        return value.isoformat()
    text = str(value).strip()
    match = _ISO_DAY_RE.match(text)
    return match.group(1) if match else text


def _fields(activity: ActivityRecord | ExistingActivity) -> dict[str, Any]:
    if isinstance(activity, ActivityRecord):
        return activity.as_dict()
    values: dict[str, Any] = {}
    for name, aliases in _FIELD_ALIASES.items():
        values[name] = next((activity[alias] for alias in aliases if activity.get(alias) is not None), None)
    return values


def activity_fingerprint(activity: ActivityRecord | ExistingActivity) -> str:
    """Reduced projection of an activity used only for equality during dedup.

    Trades compare quantity and unit price; dividends compare the per-share
    rate from the comment so position-derived amounts don't cause misses; other
    cash activities compare the amount, and fees also compare the comment.
    """
    fields = _fields(activity)
    activity_type = _normalize_text(fields["activity_type"])
    parts = [
        _normalize_day(fields["date"]),
        _normalize_text(fields["symbol"]),
        activity_type,
    ]

    if activity_type in _TRADE_TYPES:
        parts.append(_normalize_float(fields["quantity"]))
        parts.append(_normalize_float(fields["unit_price"]))
    elif activity_type == "DIVIDEND":
        info = parse_dividend_info(str(fields["comment"] or ""))
        parts.append(_normalize_float(info.per_share if info else fields["amount"]))
    else:
        parts.append(_normalize_float(fields["amount"]))
        if activity_type == "FEE":
            parts.append(_normalize_text(fields["comment"]))

    parts.append(_normalize_float(fields["fee"]))
    parts.append(_normalize_text(fields["currency"]))
    return "|".join(parts)


def filter_duplicate_activities(
    new: Iterable[ActivityRecord], existing: Iterable[ActivityRecord | ExistingActivity]
) -> tuple[list[ActivityRecord], list[ActivityRecord]]:
    seen = {activity_fingerprint(activity) for activity in existing}
    unique: list[ActivityRecord] = []
    duplicates: list[ActivityRecord] = []
    for activity in new:
        fingerprint = activity_fingerprint(activity)
        if fingerprint in seen:
            duplicates.append(activity)
            continue
        seen.add(fingerprint)
        unique.append(activity)
    return unique, duplicates


@dataclass(frozen=True)
class DedupResult:
    to_import: list[ActivityRecord] = field(default_factory=list)
    duplicates_skipped: int = 0
    fetch_failed: bool = False


async def deduplicate_activities(
    new: Sequence[ActivityRecord],
    account_id: str,
    fetch_existing: FetchExisting,
    policy: DedupFailurePolicy = DedupFailurePolicy.IMPORT,
) -> DedupResult:
    if not new:
        return DedupResult()

    try:
        existing = await fetch_existing(account_id)
    except Exception as exc:
        logger.error("Failed to load existing activities for account %s: %s", account_id, error_message(exc))
        if policy is DedupFailurePolicy.SKIP:
            return DedupResult(to_import=[], duplicates_skipped=0, fetch_failed=True)
        return DedupResult(to_import=list(new), duplicates_skipped=0, fetch_failed=True)

    unique, duplicates = filter_duplicate_activities(new, existing)
    if duplicates:
        logger.info("Skipping %s duplicate activities for account %s", len(duplicates), account_id)
    return DedupResult(to_import=unique, duplicates_skipped=len(duplicates))
