"""Resolve broker symbols to market-data tickers.

Tiers, in order: cache, injected identifier search (ISIN, CUSIP, FIGI, symbol,
description), Yahoo identifier search with validation, listing-exchange suffix
table, and finally the bare uppercased symbol. Resolution never raises; the
worst case is a low-confidence fallback.
"""

from __future__ import annotations

import asyncio
import re
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Iterable, Mapping, Protocol

from broker_reconcile.config.settings import Settings
from broker_reconcile.ingest.exchanges import (
    add_currency_suffix,
    add_exchange_suffix,
    is_known_suffix_exchange,
)
from broker_reconcile.ingest.models import ActivityRecord, is_cash_symbol
from broker_reconcile.resolve.cache import TickerCache, cache_key
from broker_reconcile.resolve.quotes import QuoteMatch, SearchFn, YahooQuoteService, quote_match
from broker_reconcile.utils.logging import error_message, get_logger

logger = get_logger(__name__)

SKIPPED_EXCHANGES = frozenset({"IDEALFX", "TransactionID", "TransferAccount", "DARK"})
_DIGITS_RE = re.compile(r"^\d+$")


class Confidence(str, Enum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"
    FAILED = "failed"


class Provenance(str, Enum):
    CACHE = "cache"
    EXTERNAL_SEARCH = "external-search"
    IDENTIFIER_SEARCH = "identifier-search"
    SUFFIX_HEURISTIC = "suffix-heuristic"
    FALLBACK = "fallback"


@dataclass(frozen=True)
class TickerResolutionRequest:
    isin: str
    symbol: str
    exchange: str
    currency: str
    cusip: str | None = None
    figi: str | None = None
    description: str | None = None

    @property
    def key(self) -> str:
        return cache_key(self.isin, self.exchange)


@dataclass(frozen=True)
class TickerResolutionResult:
    ticker: str | None
    confidence: Confidence
    provenance: Provenance
    name: str | None = None


@dataclass(frozen=True)
class ResolverOptions:
    delay_seconds: float = 0.05
    enable_quote_search: bool = True

    @classmethod
    def from_settings(cls, settings: Settings) -> ResolverOptions:
        return cls(
            delay_seconds=settings.ticker_resolution_delay_seconds,
            enable_quote_search=settings.enable_quote_search,
        )


class _RowLike(Protocol):
    def get(self, column: str) -> str: ...


def symbols_compatible(result_symbol: str, request_symbol: str) -> bool:
    result_base = result_symbol.split(".")[0].strip().upper()
    request_base = request_symbol.strip().upper()
    if not result_base or not request_base:
        return False
    if result_base == request_base:
        return True
    if _DIGITS_RE.match(result_base) and _DIGITS_RE.match(request_base):
        return int(result_base) == int(request_base)
    return False


def _first_compatible(matches: Iterable[Any], symbol: str) -> QuoteMatch | None:
    normalized = (quote_match(match) for match in matches)
    return next(
        (match for match in normalized if match is not None and symbols_compatible(match.symbol, symbol)),
        None,
    )


def extract_tickers_to_resolve(rows: Iterable[_RowLike]) -> list[TickerResolutionRequest]:
    requests_by_key: dict[str, TickerResolutionRequest] = {}
    for row in rows:
        symbol = row.get("Symbol")
        if not symbol or symbol == "Symbol" or is_cash_symbol(symbol):
            continue
        exchange = row.get("ListingExchange") or row.get("Exchange")
        if not exchange or _DIGITS_RE.match(exchange) or exchange in SKIPPED_EXCHANGES:
            continue
        isin = row.get("ISIN")
        currency = row.get("CurrencyPrimary")
        if not isin or not currency:
            continue
        request = TickerResolutionRequest(
            isin=isin,
            symbol=symbol,
            exchange=exchange,
            currency=currency,
            cusip=row.get("CUSIP") or None,
            figi=row.get("FIGI") or None,
            description=row.get("Description") or None,
        )
        requests_by_key.setdefault(request.key, request)
    return list(requests_by_key.values())


class TickerResolver:
    def __init__(
        self,
        cache: TickerCache | None = None,
        *,
        search_fn: SearchFn | None = None,
        quote_service: YahooQuoteService | None = None,
        options: ResolverOptions | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self.cache = cache if cache is not None else TickerCache()
        self.search_fn = search_fn
        self.quote_service = quote_service
        self.options = options or ResolverOptions()
        self.sleep = sleep

    def _from_cache(self, request: TickerResolutionRequest) -> TickerResolutionResult | None:
        entry = self.cache.get(request.isin, request.exchange)
        if entry is None:
            return None
        try:
            confidence = Confidence(entry.confidence)
        except ValueError:
            return None
        return TickerResolutionResult(entry.ticker, confidence, Provenance.CACHE, entry.name)

    async def _external_search(self, request: TickerResolutionRequest) -> TickerResolutionResult | None:
        if self.search_fn is None:
            return None
        queries = (
            ("ISIN", request.isin, Confidence.HIGH),
            ("CUSIP", request.cusip, Confidence.HIGH),
            ("FIGI", request.figi, Confidence.HIGH),
            ("symbol", request.symbol, Confidence.HIGH),
            ("description", request.description, Confidence.MEDIUM),
        )
        for label, query, confidence in queries:
            if not query:
                continue
            try:
                matches = await self.search_fn(query)
                match = _first_compatible(matches or [], request.symbol)
            except Exception as exc:
                logger.warning("%s search failed for %s: %s", label, query, error_message(exc))
                continue
            if match is not None:
                logger.debug("%s search matched %s -> %s", label, request.symbol, match.symbol)
                return TickerResolutionResult(
                    match.symbol, confidence, Provenance.EXTERNAL_SEARCH, match.name or match.symbol
                )
        return None

    async def _identifier_search(self, request: TickerResolutionRequest) -> TickerResolutionResult | None:
        if self.quote_service is None or not self.options.enable_quote_search or not request.isin:
            return None
        matches = await self.quote_service.search_async(request.isin)
        match = _first_compatible(matches, request.symbol)
        if match is None:
            return None
        if not await self.quote_service.validate_async(match.symbol):
            logger.debug("Identifier search candidate %s failed validation", match.symbol)
            return None
        return TickerResolutionResult(
            match.symbol, Confidence.HIGH, Provenance.IDENTIFIER_SEARCH, match.name or match.symbol
        )

    @staticmethod
    def _suffix_heuristic(request: TickerResolutionRequest) -> TickerResolutionResult | None:
        if not is_known_suffix_exchange(request.exchange):
            return None
        ticker = add_exchange_suffix(request.symbol, request.exchange)
        return TickerResolutionResult(ticker, Confidence.MEDIUM, Provenance.SUFFIX_HEURISTIC)

    async def resolve(self, request: TickerResolutionRequest) -> TickerResolutionResult:
        cached = self._from_cache(request)
        if cached is not None:
            logger.debug("Cache hit: %s -> %s", request.key, cached.ticker)
            return cached

        for tier in (self._external_search, self._identifier_search):
            result = await tier(request)
            if result is not None:
                self.cache.put(request.isin, request.exchange, result)
                return result

        result = self._suffix_heuristic(request)
        if result is not None:
            self.cache.put(request.isin, request.exchange, result)
            return result

        logger.debug("All resolution tiers failed for %s", request.symbol)
        return TickerResolutionResult(request.symbol.upper(), Confidence.LOW, Provenance.FALLBACK)

    async def resolve_all(
        self,
        requests: Iterable[TickerResolutionRequest],
        on_progress: Callable[[int, int], None] | None = None,
    ) -> dict[str, TickerResolutionResult]:
        pending = list(requests)
        resolutions: dict[str, TickerResolutionResult] = {}
        for index, request in enumerate(pending, start=1):
            if on_progress is not None:
                on_progress(index, len(pending))
            try:
                resolutions[request.key] = await self.resolve(request)
            except Exception as exc:
                logger.error("Error resolving %s: %s", request.symbol, error_message(exc))
                resolutions[request.key] = TickerResolutionResult(
                    add_exchange_suffix(request.symbol, request.exchange),
                    Confidence.LOW,
                    Provenance.FALLBACK,
                )
            if index < len(pending) and self.options.delay_seconds > 0:
                await self.sleep(self.options.delay_seconds)
        return resolutions


def apply_resolutions(
    records: Iterable[ActivityRecord], resolutions: Mapping[str, TickerResolutionResult]
) -> list[ActivityRecord]:
    applied: list[ActivityRecord] = []
    for record in records:
        if is_cash_symbol(record.symbol) or not record.symbol:
            applied.append(record)
            continue
        if record.isin and record.exchange:
            resolution = resolutions.get(cache_key(record.isin, record.exchange))
            if resolution is not None and resolution.ticker:
                ticker = resolution.ticker
            else:
                ticker = add_exchange_suffix(record.symbol, record.exchange)
        else:
            ticker = add_currency_suffix(record.symbol, record.currency)
        applied.append(record.with_changes(symbol=ticker) if ticker != record.symbol else record)
    return applied
