"""Date parsing and clock helpers."""

from __future__ import annotations

from datetime import date, datetime, timezone
from typing import Callable

from dateutil import parser as date_parser

Clock = Callable[[], datetime]


def utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_iso_timestamp(value: datetime) -> str:
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value.isoformat(timespec="milliseconds") + "Z"


def parse_timestamp(raw: str | None) -> datetime | None:
    """Parse a persisted ISO timestamp into naive UTC, or None when invalid."""
    text = str(raw or "").strip()
    if not text:
        return None
    try:
        parsed = date_parser.isoparse(text)
    except (ValueError, OverflowError):
        try:
            parsed = date_parser.parse(text)
        except (ValueError, OverflowError):
            return None
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


def day_string(value: date | datetime) -> str:
    if isinstance(value, datetime):
        value = value.date()
    return value.isoformat()
