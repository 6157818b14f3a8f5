from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Mapping
from urllib.parse import quote

import requests

from broker_reconcile.utils.logging import get_logger

logger = get_logger(__name__)

YAHOO_SEARCH_URL = "https://query1.finance.yahoo.com/v1/finance/search"
YAHOO_CHART_URL = "https://query1.finance.yahoo.com/v8/finance/chart"
USER_AGENT = "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36"


@dataclass(frozen=True)
class QuoteMatch:
    symbol: str
    name: str | None = None
    exchange: str | None = None
    score: float | None = None


SearchFn = Callable[[str], Awaitable[list[Any]]]


def quote_match(payload: Any) -> QuoteMatch | None:
    """Normalize a search hit, either a QuoteMatch or a ``{symbol, name?, exchange?, score?}`` mapping."""
    if isinstance(payload, QuoteMatch):
        return payload
    if not isinstance(payload, Mapping):
        return None
    symbol = payload.get("symbol")
    if not isinstance(symbol, str) or not symbol.strip():
        return None
    score = payload.get("score")
    return QuoteMatch(
        symbol=symbol.strip(),
        name=payload.get("name") or payload.get("longname") or payload.get("shortname") or None,
        exchange=payload.get("exchange") or None,
        score=float(score) if isinstance(score, (int, float)) else None,
    )


class YahooQuoteService:
    """Identifier search and ticker validation against Yahoo Finance."""

    def __init__(self, timeout: float = 10.0, session: requests.Session | None = None) -> None:
        self.timeout = timeout
        self.session = session or requests.Session()

    def _get_json(self, url: str, params: dict[str, str] | None = None) -> Any | None:
        try:
            response = self.session.get(
                url,
                params=params,
                timeout=self.timeout,
                headers={"User-Agent": USER_AGENT},
            )
        except requests.Timeout:
            logger.warning("Request to %s timed out after %ss", url, self.timeout)
            return None
        except requests.RequestException as exc:
            logger.warning("Request to %s failed: %s", url, exc)
            return None
        if not response.ok:
            logger.debug("Request to %s returned HTTP %s", url, response.status_code)
            return None
        try:
            return response.json()
        except ValueError:
            logger.warning("Response from %s was not JSON", url)
            return None

    def search(self, query: str) -> list[QuoteMatch]:
        query = query.strip()
        if not query:
            return []
        payload = self._get_json(YAHOO_SEARCH_URL, params={"q": query})
        quotes = payload.get("quotes") if isinstance(payload, dict) else None
        if not isinstance(quotes, list):
            return []
        return [match for match in (quote_match(item) for item in quotes) if match is not None]

    def validate(self, ticker: str) -> bool:
        payload = self._get_json(f"{YAHOO_CHART_URL}/{quote(ticker, safe='')}")
        if not isinstance(payload, dict):
            return False
        chart = payload.get("chart")
        return not (isinstance(chart, dict) and chart.get("error"))

    async def search_async(self, query: str) -> list[QuoteMatch]:
        return await asyncio.to_thread(self.search, query)

    async def validate_async(self, ticker: str) -> bool:
        return await asyncio.to_thread(self.validate, ticker)
