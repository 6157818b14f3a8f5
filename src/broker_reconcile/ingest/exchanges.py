"""Static venue tables: listing exchange to trading currency and ticker suffix."""

from __future__ import annotations

import re

EXCHANGE_TO_CURRENCY: dict[str, str] = {
    "NYSE": "USD",
    "NASDAQ": "USD",
    "AMEX": "USD",
    "ARCA": "USD",
    "BATS": "USD",
    "IEX": "USD",
    "CBOE": "USD",
    "PINK": "USD",
    "LSE": "GBP",
    "LSEIOB1": "GBP",
    "EBS": "CHF",
    "SBF": "EUR",
    "AEB": "EUR",
    "BVME": "EUR",
    "FWB": "EUR",
    "IBIS": "EUR",
    "SEHK": "HKD",
    "TSE": "JPY",
    "SGX": "SGD",
    "ASX": "AUD",
    "OSE": "NOK",
    "SFB": "SEK",
    "KFB": "DKK",
    "TSX": "CAD",
    "VENTURE": "CAD",
}

EXCHANGE_TO_SUFFIX: dict[str, str] = {
    "LSE": ".L",
    "LSEIOB1": ".L",
    "LSEETF": ".L",
    "EBS": ".SW",
    "SWX": ".SW",
    "FWB": ".DE",
    "IBIS": ".DE",
    "XETRA": ".DE",
    "SBF": ".PA",
    "AEB": ".AS",
    "BVME": ".MI",
    "BM": ".MC",
    "SEHK": ".HK",
    "HKSE": ".HK",
    "TSE": ".T",
    "ASX": ".AX",
    "SGX": ".SI",
    "OSE": ".OL",
    "SFB": ".ST",
    "KFB": ".CO",
    "TSX": ".TO",
    "VENTURE": ".V",
    "NYSE": "",
    "NASDAQ": "",
    "AMEX": "",
    "ARCA": "",
    "BATS": "",
    "IEX": "",
}

CURRENCY_TO_SUFFIX: dict[str, str] = {
    "GBP": ".L",
    "CHF": ".SW",
    "EUR": ".DE",
    "AUD": ".AX",
    "NOK": ".OL",
    "SEK": ".ST",
    "CAD": ".TO",
    "JPY": ".T",
    "DKK": ".CO",
    "SGD": ".SI",
}

HONG_KONG_EXCHANGES = frozenset({"SEHK", "HKSE"})

_DIGITS_RE = re.compile(r"^\d+$")


def currency_for_exchange(exchange: str | None) -> str | None:
    if not exchange:
        return None
    return EXCHANGE_TO_CURRENCY.get(exchange.strip())


def is_known_suffix_exchange(exchange: str | None) -> bool:
    return bool(exchange) and exchange.strip() in EXCHANGE_TO_SUFFIX


def format_hk_symbol(symbol: str) -> str:
    if _DIGITS_RE.match(symbol):
        return f"{symbol.zfill(4)}.HK"
    return symbol


def add_exchange_suffix(symbol: str, exchange: str) -> str:
    exchange = exchange.strip()
    symbol = symbol.strip().upper()
    if exchange in HONG_KONG_EXCHANGES:
        return format_hk_symbol(symbol)
    suffix = EXCHANGE_TO_SUFFIX.get(exchange, "")
    if not suffix or "." in symbol:
        return symbol
    return f"{symbol}{suffix}"


def add_currency_suffix(symbol: str, currency: str | None) -> str:
    symbol = symbol.strip().upper()
    currency = (currency or "").strip().upper()
    if currency == "HKD":
        return format_hk_symbol(symbol)
    suffix = CURRENCY_TO_SUFFIX.get(currency, "")
    if not suffix or "." in symbol:
        return symbol
    return f"{symbol}{suffix}"
