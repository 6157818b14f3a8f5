from __future__ import annotations

import re
from datetime import datetime, timezone
from typing import Any

import pandas as pd

DATE_FORMATS = [
    "%Y-%m-%d",
    "%Y%m%d",
    "%Y/%m/%d",
    "%m/%d/%Y",
    "%Y-%m-%d %H:%M:%S",
    "%Y-%m-%d %H%M%S",
    "%Y%m%d %H%M%S",
    "%Y%m%d %H:%M:%S",
    "%Y/%m/%d %H:%M:%S",
    "%m/%d/%Y %H:%M:%S",
]

_NUMERIC_TEXT_RE = re.compile(r"^-?\d+\.?\d*$")
_EIGHT_DIGIT_DATE_RE = re.compile(r"^\d{8}$")
_CURRENCY_SYMBOLS_RE = re.compile(r"[$£€¥₹₦₽¢]")
_EMPTY_MARKERS = {"", "-", "N/A", "NULL"}


def is_numeric_text(value: Any) -> bool:
    if value is None:
        return False
    return bool(_NUMERIC_TEXT_RE.match(str(value).strip()))


def parse_amount(value: Any, default: float | None = None) -> float | None:
    if value is None:
        return default
    if isinstance(value, (int, float)):
        return float(value)
    text = str(value).strip()
    if text.upper() in _EMPTY_MARKERS:
        return default
    text = _CURRENCY_SYMBOLS_RE.sub("", text).replace(",", "")
    text = re.sub(r"\s+", "", text)
    if text == "":
        return default
    if text.startswith("(") and text.endswith(")"):
        text = f"-{text[1:-1]}"
    try:
        return float(text)
    except ValueError:
        return default


def _to_naive_utc(parsed: datetime) -> datetime:
    if parsed.tzinfo is None:
        return parsed
    return parsed.astimezone(timezone.utc).replace(tzinfo=None)


def parse_datetime(value: Any) -> datetime | None:
    if value is None:
        return None
    if isinstance(value, datetime):
        return _to_naive_utc(value)
    text = str(value).strip()
    if not text:
        return None
    if is_numeric_text(text) and not _EIGHT_DIGIT_DATE_RE.match(text):
        # Shifted amount columns look numeric; they are never dates.
        return None

    text = text.replace(";", " ").replace(", ", " ").replace(",", " ")
    for fmt in DATE_FORMATS:
        try:
            return datetime.strptime(text, fmt)
        except ValueError:
            continue

    parsed = pd.to_datetime(text, errors="coerce", utc=False)
    if pd.notna(parsed) and isinstance(parsed, pd.Timestamp):
        return _to_naive_utc(parsed.to_pydatetime())
    return None


def normalize_day(value: Any) -> str | None:
    parsed = parse_datetime(value)
    if parsed is None:
        return None
    return parsed.date().isoformat()
