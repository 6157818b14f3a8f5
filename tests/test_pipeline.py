from __future__ import annotations

import math

import pytest
from sqlalchemy import func, select

from conftest import DIVIDEND_TEXT, MemorySecretsStore, statement_csv
from broker_reconcile.config.settings import DedupFailurePolicy
from broker_reconcile.db.models import LedgerAccount, LedgerActivity
from broker_reconcile.db.stores import SqlAccountsApi, SqlActivitiesApi
from broker_reconcile.fetch.config_store import FetchStatus, FlexConfigStorage
from broker_reconcile.fetch.flex_client import FlexFetchResult
from broker_reconcile.ingest.models import ActivityRecord, ActivityType, RawRow
from broker_reconcile.pipeline.accounts import (
    Account,
    detect_currencies,
    generate_account_names,
    get_or_create_accounts_for_group,
)
from broker_reconcile.pipeline.orchestrator import (
    PipelineCancelled,
    fetch_existing_activities_for_dedup,
    group_activities_by_currency,
    parse_documents,
    process_and_resolve,
    reconcile_statement,
)
from broker_reconcile.pipeline.processor import (
    ProcessConfigDeps,
    bind_processor,
    import_activities_to_accounts,
    process_config,
)
from broker_reconcile.resolve.cache import TickerCache
from broker_reconcile.resolve.tickers import ResolverOptions, TickerResolver


class StaticFlexClient:
    def __init__(self, result: FlexFetchResult) -> None:
        self.result = result
        self.calls: list[tuple[str, str]] = []

    async def fetch_statement(self, token, query_id, on_progress=None):
        self.calls.append((token, query_id))
        return self.result


class FailingActivitiesApi:
    async def get_all(self, account_id):
        raise ConnectionError("ledger unavailable")

    async def import_activities(self, records):
        raise ConnectionError("ledger unavailable")


class MemoryAccountsApi:
    def __init__(self, accounts: list[Account] | None = None) -> None:
        self.accounts = list(accounts or [])
        self.created: list[str] = []

    async def get_all(self):
        return list(self.accounts)

    async def create(self, spec):
        if spec.currency == "JPY":
            raise RuntimeError("currency not supported")
        account = Account(id=f"id-{spec.currency}", name=spec.name, currency=spec.currency, group=spec.group)
        self.accounts.append(account)
        self.created.append(spec.name)
        return account


def test_generate_account_names_and_currency_detection(sample_statement_csv):
    specs = generate_account_names("IBKR", ["EUR", "USD"])
    assert [spec.name for spec in specs] == ["IBKR - EUR", "IBKR - USD"]
    assert all(spec.account_type == "SECURITIES" for spec in specs)

    rows = parse_documents(sample_statement_csv).rows
    assert detect_currencies(rows) == ["EUR", "USD"]


@pytest.mark.asyncio
async def test_get_or_create_reuses_existing_and_skips_failures():
    existing = Account(id="keep", name="IBKR - USD", currency="USD", group="IBKR")
    api = MemoryAccountsApi([existing, Account(id="other", name="Other - EUR", currency="EUR", group="Other")])

    accounts = await get_or_create_accounts_for_group(api, "IBKR", ["USD", "EUR", "JPY"])

    assert accounts["USD"] is existing
    assert accounts["EUR"].id == "id-EUR"
    assert "JPY" not in accounts
    assert api.created == ["IBKR - EUR"]


@pytest.mark.asyncio
async def test_process_and_resolve_assigns_accounts(sample_statement_csv):
    rows = parse_documents(sample_statement_csv).rows

    result = await process_and_resolve(rows, {"USD": "acct-usd", "EUR": "acct-eur"})

    assert result.skipped_count == 2
    assert result.conversion_errors == []
    assert len(result.records) == 5
    assert {r.account_id for r in result.records if r.currency == "EUR"} == {"acct-eur"}
    assert {r.account_id for r in result.records if r.currency == "USD"} == {"acct-usd"}
    assert result.classification.total == len(rows)


@pytest.mark.asyncio
async def test_process_and_resolve_uses_resolver(sample_statement_csv):
    rows = parse_documents(sample_statement_csv).rows
    resolver = TickerResolver(TickerCache(), options=ResolverOptions(delay_seconds=0, enable_quote_search=False))
    progress: list[tuple[int, int]] = []

    result = await process_and_resolve(
        rows,
        {"USD": "acct-usd", "EUR": "acct-eur"},
        resolver,
        on_progress=lambda done, total: progress.append((done, total)),
    )

    assert set(result.resolutions) == {"US0378331005:NASDAQ"}
    assert progress == [(1, 1)]
    assert {r.symbol for r in result.records if r.activity_type is ActivityType.BUY} == {"AAPL"}


@pytest.mark.asyncio
async def test_process_and_resolve_honours_cancellation(sample_statement_csv):
    rows = parse_documents(sample_statement_csv).rows

    with pytest.raises(PipelineCancelled):
        await process_and_resolve(rows, {"USD": "acct-usd"}, is_alive=lambda: False)


def test_parse_documents_labels_errors_per_file(sample_statement_csv):
    parsed = parse_documents([sample_statement_csv, ""])

    assert len(parsed.rows) == 6
    assert parsed.errors == ["File 2: The CSV content appears to be empty."]


def test_group_activities_by_currency_skips_blank_currency():
    usd = ActivityRecord("2024-01-01", "$CASH-USD", ActivityType.DEPOSIT, 1, 1, "USD", 0, 1)
    blank = ActivityRecord("2024-01-01", "$CASH-USD", ActivityType.DEPOSIT, 1, 1, "", 0, 1)

    assert group_activities_by_currency([usd, blank]) == {"USD": [usd]}


@pytest.mark.asyncio
async def test_fetch_existing_reports_failed_accounts():
    accounts = [Account(id="a", name="IBKR - USD", currency="USD")]

    result = await fetch_existing_activities_for_dedup(FailingActivitiesApi(), accounts)

    assert result.activities == []
    assert result.failed_accounts == ["IBKR - USD"]
    assert result.complete is False
    assert (await fetch_existing_activities_for_dedup(None, accounts)).complete is True


@pytest.mark.asyncio
async def test_reconcile_statement_without_ledger(sample_statement_csv):
    result = await reconcile_statement(sample_statement_csv, account_group="Broker")

    assert result.success is True
    assert result.currencies == ["EUR", "USD"]
    assert [group.account_name for group in result.groups] == ["Broker - EUR", "Broker - USD"]
    usd = result.groups[1]
    assert usd.summary == {
        "trades": 1,
        "dividends": 1,
        "deposits": 1,
        "withdrawals": 1,
        "fees": 0,
        "interest": 0,
    }
    assert result.groups[0].summary["deposits"] == 1
    assert {r.account_id for r in result.records} == {"Broker - EUR", "Broker - USD"}
    assert result.imported == 0


@pytest.mark.asyncio
async def test_reconcile_statement_reports_parse_failure():
    result = await reconcile_statement("")

    assert result.success is False
    assert result.parse_errors == ["The CSV content appears to be empty."]


@pytest.mark.asyncio
async def test_reconcile_imports_then_dedupes_on_rerun(db_session, sample_statement_csv):
    accounts_api = SqlAccountsApi(db_session)
    activities_api = SqlActivitiesApi(db_session)

    first = await reconcile_statement(
        sample_statement_csv,
        accounts_api=accounts_api,
        activities_api=activities_api,
        import_to_ledger=True,
    )
    assert first.success
    assert first.imported == 5
    assert db_session.scalar(select(func.count()).select_from(LedgerAccount)) == 2

    dividend = db_session.scalars(
        select(LedgerActivity).where(LedgerActivity.activity_type == ActivityType.DIVIDEND)
    ).one()
    assert math.isclose(dividend.amount, 26.4)
    assert dividend.comment == DIVIDEND_TEXT

    second = await reconcile_statement(
        sample_statement_csv,
        accounts_api=accounts_api,
        activities_api=activities_api,
        import_to_ledger=True,
    )
    assert second.success
    assert second.imported == 0
    assert second.duplicates_skipped == 5
    assert db_session.scalar(select(func.count()).select_from(LedgerActivity)) == 5
    assert db_session.scalar(select(func.count()).select_from(LedgerAccount)) == 2


@pytest.mark.asyncio
async def test_import_activities_to_accounts_counts_failures():
    usd = ActivityRecord("2024-01-05", "$CASH-USD", ActivityType.DEPOSIT, 1000, 1, "USD", 0, 1000)
    accounts = {"USD": Account(id="acct-usd", name="IBKR - USD", currency="USD")}

    summary = await import_activities_to_accounts(
        [usd], ["USD"], accounts, FailingActivitiesApi(), "Main", DedupFailurePolicy.IMPORT
    )
    assert summary.failed == 1
    assert summary.failed_accounts == ["IBKR - USD"]

    skipped = await import_activities_to_accounts(
        [usd], ["USD"], accounts, FailingActivitiesApi(), "Main", DedupFailurePolicy.SKIP
    )
    assert skipped.failed == 0
    assert skipped.imported == 0


def _deps(db_session, client, storage, **overrides) -> ProcessConfigDeps:
    values = {
        "client": client,
        "storage": storage,
        "accounts_api": SqlAccountsApi(db_session),
        "activities_api": SqlActivitiesApi(db_session),
        "token": "a1b2c3d4e5f6a7b8c9d0",
    }
    values.update(overrides)
    return ProcessConfigDeps(**values)


@pytest.mark.asyncio
async def test_process_config_imports_and_records_success(db_session, sample_statement_csv, fake_clock):
    storage = FlexConfigStorage(MemorySecretsStore())
    config = await storage.add_config("Main", "123456", "IBKR", auto_fetch_enabled=True)
    client = StaticFlexClient(FlexFetchResult(success=True, payload=sample_statement_csv))
    deps = _deps(db_session, client, storage, clock=fake_clock)

    first = await process_config(config, deps)
    second = await bind_processor(deps)(config, "a1b2c3d4e5f6a7b8c9d0")

    assert first.success and first.imported == 5 and first.skipped == 0
    assert second.success and second.imported == 0 and second.skipped == 5
    assert client.calls[0] == ("a1b2c3d4e5f6a7b8c9d0", "123456")

    stored = await storage.get_config(config.id)
    assert stored.last_fetch_status is FetchStatus.SUCCESS
    assert stored.last_fetch_error is None


@pytest.mark.asyncio
async def test_process_config_records_enriched_error(db_session, fake_clock):
    storage = FlexConfigStorage(MemorySecretsStore())
    config = await storage.add_config("Main", "123456", "IBKR", auto_fetch_enabled=True)
    client = StaticFlexClient(FlexFetchResult(success=False, error="Token has expired", error_code=1012))

    result = await process_config(config, _deps(db_session, client, storage, clock=fake_clock))

    assert result.success is False
    assert result.error.startswith("Token has expired. Generate a new token")
    stored = await storage.get_config(config.id)
    assert stored.last_fetch_status is FetchStatus.ERROR
    assert stored.last_fetch_error == result.error


@pytest.mark.asyncio
async def test_process_config_tolerates_status_write_failure(db_session, fake_clock):
    storage = FlexConfigStorage(MemorySecretsStore())
    config = await storage.add_config("Main", "123456", "IBKR", auto_fetch_enabled=True)

    async def broken_status(*args, **kwargs):
        raise OSError("keychain locked")

    storage.update_config_status = broken_status
    empty = statement_csv([{"ClientAccountID": "U1", "CurrencyPrimary": "USD", "LevelOfDetail": "Currency"}])
    client = StaticFlexClient(FlexFetchResult(success=True, payload=empty))

    result = await process_config(config, _deps(db_session, client, storage, clock=fake_clock))

    assert result.success is True
    assert result.imported == 0


def test_raw_row_accessors():
    row = RawRow({"Symbol": " aapl ", "Empty": ""}, line_number=3)

    assert row.get("Symbol") == "aapl"
    assert row.get("Missing") == ""
    assert row.has("Symbol") and not row.has("Empty")
    assert row.with_values(Symbol="MSFT").get("Symbol") == "MSFT"
    assert row.get("Symbol") == "aapl"
