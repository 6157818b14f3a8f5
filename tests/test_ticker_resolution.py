from __future__ import annotations

from datetime import datetime, timedelta

import pytest

from broker_reconcile.ingest.exchanges import add_currency_suffix, add_exchange_suffix, currency_for_exchange
from broker_reconcile.ingest.models import ActivityRecord, ActivityType, RawRow
from broker_reconcile.resolve.cache import (
    JsonFileTickerCacheStore,
    MemoryTickerCacheStore,
    TickerCache,
    prune_entries,
)
from broker_reconcile.resolve.quotes import QuoteMatch, quote_match
from broker_reconcile.resolve.tickers import (
    Confidence,
    Provenance,
    ResolverOptions,
    TickerResolutionRequest,
    TickerResolutionResult,
    TickerResolver,
    apply_resolutions,
    extract_tickers_to_resolve,
    symbols_compatible,
)

NO_DELAY = ResolverOptions(delay_seconds=0, enable_quote_search=False)


class RecordingSearch:
    def __init__(self, results: dict[str, list[QuoteMatch]] | None = None) -> None:
        self.results = results or {}
        self.queries: list[str] = []

    async def __call__(self, query: str) -> list[QuoteMatch]:
        self.queries.append(query)
        return self.results.get(query, [])


class FakeQuoteService:
    def __init__(self, matches: list[QuoteMatch], valid: bool = True) -> None:
        self.matches = matches
        self.valid = valid
        self.searched: list[str] = []

    async def search_async(self, query: str) -> list[QuoteMatch]:
        self.searched.append(query)
        return self.matches

    async def validate_async(self, ticker: str) -> bool:
        return self.valid


def _request(**overrides) -> TickerResolutionRequest:
    values = {"isin": "GB0007980591", "symbol": "BP", "exchange": "LSE", "currency": "GBP"}
    values.update(overrides)
    return TickerResolutionRequest(**values)


def test_exchange_tables():
    assert add_exchange_suffix("1", "SEHK") == "0001.HK"
    assert add_exchange_suffix("bp", "LSE") == "BP.L"
    assert add_exchange_suffix("AAPL", "NASDAQ") == "AAPL"
    assert add_exchange_suffix("RDSA.L", "LSE") == "RDSA.L"
    assert add_currency_suffix("700", "HKD") == "0700.HK"
    assert add_currency_suffix("SAP", "EUR") == "SAP.DE"
    assert currency_for_exchange("SEHK") == "HKD"
    assert currency_for_exchange("UNKNOWN") is None


def test_symbols_compatible():
    assert symbols_compatible("BP.L", "BP")
    assert symbols_compatible("0001.HK", "1")
    assert not symbols_compatible("BPX.L", "BP")
    assert not symbols_compatible("", "BP")


@pytest.mark.asyncio
async def test_second_resolve_is_served_from_cache_without_search():
    search = RecordingSearch({"GB0007980591": [QuoteMatch("BP.L", "BP plc")]})
    resolver = TickerResolver(TickerCache(), search_fn=search, options=NO_DELAY)

    first = await resolver.resolve(_request())
    assert first == TickerResolutionResult("BP.L", Confidence.HIGH, Provenance.EXTERNAL_SEARCH, "BP plc")
    assert search.queries == ["GB0007980591"]

    second = await resolver.resolve(_request())
    assert second.ticker == "BP.L"
    assert second.provenance is Provenance.CACHE
    assert second.confidence is Confidence.HIGH
    assert search.queries == ["GB0007980591"]


@pytest.mark.asyncio
async def test_description_match_is_medium_confidence():
    search = RecordingSearch({"BP PLC ORD": [QuoteMatch("BP.L")]})
    resolver = TickerResolver(TickerCache(), search_fn=search, options=NO_DELAY)

    result = await resolver.resolve(_request(description="BP PLC ORD"))

    assert result.confidence is Confidence.MEDIUM
    assert result.provenance is Provenance.EXTERNAL_SEARCH
    assert search.queries == ["GB0007980591", "BP", "BP PLC ORD"]


@pytest.mark.asyncio
async def test_incompatible_search_results_are_ignored():
    search = RecordingSearch({"GB0007980591": [QuoteMatch("BPT.L")]})
    resolver = TickerResolver(TickerCache(), search_fn=search, options=NO_DELAY)

    result = await resolver.resolve(_request())

    assert result.ticker == "BP.L"
    assert result.provenance is Provenance.SUFFIX_HEURISTIC


@pytest.mark.asyncio
async def test_search_results_may_be_plain_mappings():
    vodafone = {"isin": "GB00BH4HKS39", "symbol": "VOD", "exchange": "LSE", "currency": "GBP"}
    search = RecordingSearch(
        {"GB00BH4HKS39": [{"name": "no symbol"}, "junk", {"symbol": "VOD.L", "name": "Vodafone Group", "score": 9}]}
    )
    resolver = TickerResolver(TickerCache(), search_fn=search, options=NO_DELAY)

    result = await resolver.resolve(TickerResolutionRequest(**vodafone))

    assert result == TickerResolutionResult("VOD.L", Confidence.HIGH, Provenance.EXTERNAL_SEARCH, "Vodafone Group")


def test_quote_match_normalizes_mappings():
    assert quote_match({"symbol": " VOD.L ", "exchange": "LSE", "score": 3}) == QuoteMatch("VOD.L", None, "LSE", 3.0)
    assert quote_match({"symbol": "BP.L", "longname": "BP p.l.c."}).name == "BP p.l.c."
    assert quote_match(QuoteMatch("BP.L")) == QuoteMatch("BP.L")
    assert quote_match({"symbol": ""}) is None
    assert quote_match(["VOD.L"]) is None


@pytest.mark.asyncio
async def test_identifier_search_requires_validation():
    service = FakeQuoteService([QuoteMatch("BP.L", "BP p.l.c.")])
    resolver = TickerResolver(
        TickerCache(), quote_service=service, options=ResolverOptions(delay_seconds=0)
    )

    result = await resolver.resolve(_request())
    assert result.provenance is Provenance.IDENTIFIER_SEARCH
    assert result.confidence is Confidence.HIGH

    rejecting = TickerResolver(
        TickerCache(),
        quote_service=FakeQuoteService([QuoteMatch("BP.L")], valid=False),
        options=ResolverOptions(delay_seconds=0),
    )
    assert (await rejecting.resolve(_request())).provenance is Provenance.SUFFIX_HEURISTIC


@pytest.mark.asyncio
async def test_hong_kong_numeric_symbol_gets_padded_suffix():
    resolver = TickerResolver(TickerCache(), options=NO_DELAY)

    result = await resolver.resolve(_request(isin="HK0000069689", symbol="1", exchange="SEHK", currency="HKD"))

    assert result.ticker == "0001.HK"
    assert result.confidence is Confidence.MEDIUM


@pytest.mark.asyncio
async def test_unknown_exchange_falls_back_to_bare_symbol():
    cache = TickerCache()
    resolver = TickerResolver(cache, options=NO_DELAY)

    result = await resolver.resolve(_request(symbol="xyz", exchange="MYSTERY"))

    assert result == TickerResolutionResult("XYZ", Confidence.LOW, Provenance.FALLBACK)
    assert len(cache) == 0


@pytest.mark.asyncio
async def test_search_errors_fall_through_to_next_tier():
    async def broken(query: str):
        raise ConnectionError("search down")

    resolver = TickerResolver(TickerCache(), search_fn=broken, options=NO_DELAY)

    result = await resolver.resolve(_request())

    assert result.provenance is Provenance.SUFFIX_HEURISTIC


@pytest.mark.asyncio
async def test_resolve_all_reports_progress_and_paces_requests():
    sleeps: list[float] = []
    progress: list[tuple[int, int]] = []

    async def fake_sleep(seconds: float) -> None:
        sleeps.append(seconds)

    resolver = TickerResolver(
        TickerCache(), options=ResolverOptions(delay_seconds=0.05, enable_quote_search=False), sleep=fake_sleep
    )
    requests = [_request(), _request(isin="US0378331005", symbol="AAPL", exchange="NASDAQ", currency="USD")]

    results = await resolver.resolve_all(requests, on_progress=lambda done, total: progress.append((done, total)))

    assert results["GB0007980591:LSE"].ticker == "BP.L"
    assert results["US0378331005:NASDAQ"].ticker == "AAPL"
    assert progress == [(1, 2), (2, 2)]
    assert sleeps == [0.05]


def test_extract_tickers_skips_cash_and_fx_rows():
    rows = [
        RawRow({"Symbol": "AAPL", "ListingExchange": "NASDAQ", "ISIN": "US0378331005", "CurrencyPrimary": "USD"}),
        RawRow({"Symbol": "AAPL", "Exchange": "NASDAQ", "ISIN": "US0378331005", "CurrencyPrimary": "USD"}),
        RawRow({"Symbol": "$CASH-USD", "Exchange": "NASDAQ", "ISIN": "X", "CurrencyPrimary": "USD"}),
        RawRow({"Symbol": "EUR.USD", "Exchange": "IDEALFX", "ISIN": "X", "CurrencyPrimary": "USD"}),
        RawRow({"Symbol": "MSFT", "Exchange": "12345", "ISIN": "US5949181045", "CurrencyPrimary": "USD"}),
        RawRow({"Symbol": "IBM", "Exchange": "NYSE", "CurrencyPrimary": "USD"}),
    ]

    requests = extract_tickers_to_resolve(rows)

    assert [(r.symbol, r.exchange) for r in requests] == [("AAPL", "NASDAQ")]


def test_apply_resolutions_rewrites_security_symbols_only():
    trade = ActivityRecord(
        date="2024-01-10",
        symbol="BP",
        activity_type=ActivityType.BUY,
        quantity=10,
        unit_price=5,
        currency="GBP",
        fee=0,
        amount=50,
        isin="GB0007980591",
        exchange="LSE",
    )
    unresolved = trade.with_changes(isin=None, exchange=None, symbol="SAP", currency="EUR")
    cash = trade.with_changes(symbol="$CASH-GBP", activity_type=ActivityType.DEPOSIT)
    resolutions = {"GB0007980591:LSE": TickerResolutionResult("BP.L", Confidence.HIGH, Provenance.CACHE)}

    applied = apply_resolutions([trade, unresolved, cash], resolutions)

    assert [record.symbol for record in applied] == ["BP.L", "SAP.DE", "$CASH-GBP"]


def test_cache_prunes_by_age_and_count():
    now = datetime(2024, 6, 1, 12, 0, 0)
    entries = {
        "old:LSE": {"ticker": "OLD.L", "confidence": "high", "timestamp": "2024-05-02T12:00:00.000Z"},
        "a:LSE": {"ticker": "A.L", "confidence": "high", "timestamp": "2024-05-30T12:00:00.000Z"},
        "b:LSE": {"ticker": "B.L", "confidence": "high", "timestamp": "2024-05-31T12:00:00.000Z"},
        "bad:LSE": {"ticker": "BAD.L"},
    }

    assert set(prune_entries(entries, now=now)) == {"a:LSE", "b:LSE"}
    assert set(prune_entries(entries, now=now, max_entries=1)) == {"b:LSE"}
    assert set(prune_entries(entries, now=now, max_age=timedelta(days=31))) == {"old:LSE", "a:LSE", "b:LSE"}


def test_cache_survives_store_failures():
    class BrokenStore:
        def load(self):
            raise OSError("disk gone")

        def save(self, entries):
            raise OSError("disk gone")

    cache = TickerCache(BrokenStore())
    cache.put("GB0007980591", "LSE", TickerResolutionResult("BP.L", Confidence.HIGH, Provenance.CACHE))

    assert cache.get("GB0007980591", "LSE") is None


def test_json_store_round_trip(tmp_path):
    store = JsonFileTickerCacheStore(tmp_path / "cache" / "tickers.json")
    cache = TickerCache(store, clock=lambda: datetime(2024, 6, 1, 12, 0, 0))

    cache.put("GB0007980591", "LSE", TickerResolutionResult("BP.L", Confidence.HIGH, Provenance.CACHE, "BP plc"))

    entry = TickerCache(store).get("GB0007980591", "LSE")
    assert entry is not None
    assert entry.ticker == "BP.L"
    assert entry.name == "BP plc"
    assert entry.timestamp == "2024-06-01T12:00:00.000Z"
    assert MemoryTickerCacheStore().load() == {}


@pytest.mark.asyncio
async def test_empty_cache_passed_in_is_the_one_written():
    store = MemoryTickerCacheStore()
    resolver = TickerResolver(TickerCache(store), options=NO_DELAY)

    result = await resolver.resolve(_request())

    assert result.provenance is Provenance.SUFFIX_HEURISTIC
    assert store.entries["GB0007980591:LSE"]["ticker"] == "BP.L"
