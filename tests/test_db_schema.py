from __future__ import annotations

import pytest
from sqlalchemy import create_engine, inspect, text

from broker_reconcile.db.migrate import migrate
from broker_reconcile.db.models import Base
from broker_reconcile.db.stores import SqlSecretsStore, SqlTickerCacheStore
from broker_reconcile.fetch.config_store import FlexConfigStorage
from broker_reconcile.resolve.cache import TickerCache
from broker_reconcile.resolve.tickers import Confidence, Provenance, TickerResolutionResult


def test_schema_has_ledger_and_secret_tables():
    engine = create_engine("sqlite:///:memory:", future=True)
    Base.metadata.create_all(engine)

    table_names = set(inspect(engine).get_table_names())
    assert {"secrets", "ledger_accounts", "ledger_activities", "ticker_cache"}.issubset(table_names)

    columns = {col["name"] for col in inspect(engine).get_columns("ledger_activities")}
    assert {
        "account_id",
        "activity_date",
        "symbol",
        "activity_type",
        "quantity",
        "unit_price",
        "amount",
        "fee",
        "currency",
        "comment",
    }.issubset(columns)


def test_migrate_creates_indexes_and_is_repeatable(tmp_path):
    db_path = tmp_path / "nested" / "ledger.sqlite"
    migrate(database_url=f"sqlite:///{db_path}")
    migrate(database_url=f"sqlite:///{db_path}")

    engine = create_engine(f"sqlite:///{db_path}", future=True)
    with engine.begin() as conn:
        index_names = {
            row[0]
            for row in conn.execute(
                text("SELECT name FROM sqlite_master WHERE type = 'index'")
            ).fetchall()
            if row[0]
        }

    assert {
        "ix_ledger_accounts_group",
        "ix_ledger_activities_account_date",
        "ix_ledger_activities_symbol",
        "ix_ledger_activities_account_type",
    }.issubset(index_names)


@pytest.mark.asyncio
async def test_sql_secrets_store_backs_config_storage(db_session):
    secrets = SqlSecretsStore(db_session)
    storage = FlexConfigStorage(secrets)

    await storage.save_token(" a1b2c3d4e5f6a7b8c9d0 ")
    config = await storage.add_config("Main", "123456", "IBKR", auto_fetch_enabled=True)
    await secrets.set("other", "first")
    await secrets.set("other", "second")

    assert await storage.load_token() == "a1b2c3d4e5f6a7b8c9d0"
    assert await storage.get_config(config.id) == config
    assert await secrets.get("other") == "second"

    await secrets.delete("other")
    assert await secrets.get("other") is None


def test_sql_ticker_cache_store(db_session):
    cache = TickerCache(SqlTickerCacheStore(db_session))
    cache.put("GB0007980591", "LSE", TickerResolutionResult("BP.L", Confidence.HIGH, Provenance.CACHE, "BP plc"))
    cache.put("US0378331005", "NASDAQ", TickerResolutionResult("AAPL", Confidence.MEDIUM, Provenance.CACHE))

    reloaded = TickerCache(SqlTickerCacheStore(db_session))
    assert reloaded.get("GB0007980591", "LSE").name == "BP plc"
    assert reloaded.get("US0378331005", "NASDAQ").confidence == "medium"
    assert len(reloaded) == 2


def test_migrate_adds_columns_missing_from_older_files(tmp_path):
    url = f"sqlite:///{tmp_path / 'old.sqlite'}"
    legacy = create_engine(url, future=True)
    with legacy.begin() as conn:
        conn.execute(
            text(
                "CREATE TABLE ledger_activities ("
                "id VARCHAR(36) PRIMARY KEY, account_id VARCHAR(36) NOT NULL, "
                "activity_date VARCHAR(32) NOT NULL, symbol VARCHAR(64) NOT NULL, "
                "activity_type VARCHAR(32) NOT NULL, quantity FLOAT NOT NULL, "
                "unit_price FLOAT NOT NULL, amount FLOAT, fee FLOAT NOT NULL, "
                "currency VARCHAR(8) NOT NULL, comment TEXT, imported_at DATETIME NOT NULL)"
            )
        )
    legacy.dispose()

    engine = migrate(database_url=url)

    columns = {col["name"] for col in inspect(engine).get_columns("ledger_activities")}
    assert {"isin", "line_number"}.issubset(columns)
