from __future__ import annotations

from datetime import datetime, timedelta

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import Session

from broker_reconcile.db.models import Base

STATEMENT_COLUMNS = [
    "ClientAccountID",
    "CurrencyPrimary",
    "LevelOfDetail",
    "Symbol",
    "ISIN",
    "ListingExchange",
    "Exchange",
    "TransactionType",
    "Buy/Sell",
    "Quantity",
    "TradePrice",
    "TradeMoney",
    "IBCommission",
    "TradeDate",
    "ActivityCode",
    "ActivityDescription",
    "Description",
    "Notes/Codes",
    "TradeID",
]

DIVIDEND_TEXT = "AAPL(US0378331005) Cash Dividend USD 0.264 per Share (Ordinary Dividend)"


def statement_csv(rows: list[dict[str, str]]) -> str:
    lines = [",".join(f'"{column}"' for column in STATEMENT_COLUMNS)]
    for row in rows:
        lines.append(",".join(f'"{row.get(column, "")}"' for column in STATEMENT_COLUMNS))
    return "\n".join(lines) + "\n"


class FakeClock:
    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2024, 6, 1, 12, 0, 0)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)

    async def sleep(self, seconds: float) -> None:
        self.advance(seconds)


class MemorySecretsStore:
    def __init__(self) -> None:
        self.values: dict[str, str] = {}

    async def get(self, key: str) -> str | None:
        return self.values.get(key)

    async def set(self, key: str, value: str) -> None:
        self.values[key] = value

    async def delete(self, key: str) -> None:
        self.values.pop(key, None)


@pytest.fixture
def db_session() -> Session:
    engine = create_engine("sqlite:///:memory:", future=True)
    Base.metadata.create_all(engine)
    with Session(engine) as session:
        yield session


@pytest.fixture
def fake_clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def secrets_store() -> MemorySecretsStore:
    return MemorySecretsStore()


@pytest.fixture
def sample_statement_rows() -> list[dict[str, str]]:
    return [
        {"ClientAccountID": "U1234567", "CurrencyPrimary": "USD", "LevelOfDetail": "Currency"},
        {"ClientAccountID": "U1234567", "CurrencyPrimary": "EUR", "LevelOfDetail": "Currency"},
        {
            "ClientAccountID": "U1234567",
            "CurrencyPrimary": "USD",
            "LevelOfDetail": "DETAIL",
            "TradeMoney": "1000",
            "TradeDate": "2024-01-05",
            "ActivityCode": "DEP",
            "ActivityDescription": "Cash Transfer",
            "Notes/Codes": "Deposits/Withdrawals",
        },
        {
            "ClientAccountID": "U1234567",
            "CurrencyPrimary": "USD",
            "LevelOfDetail": "EXECUTION",
            "Symbol": "AAPL",
            "ISIN": "US0378331005",
            "ListingExchange": "NASDAQ",
            "Exchange": "NASDAQ",
            "TransactionType": "ExchTrade",
            "Buy/Sell": "BUY",
            "Quantity": "100",
            "TradePrice": "150",
            "TradeMoney": "15000",
            "IBCommission": "-1",
            "TradeDate": "2024-01-10",
            "TradeID": "T100",
        },
        {
            "ClientAccountID": "U1234567",
            "CurrencyPrimary": "USD",
            "LevelOfDetail": "EXECUTION",
            "Symbol": "EUR.USD",
            "Exchange": "IDEALFX",
            "Buy/Sell": "BUY",
            "Quantity": "1000",
            "TradePrice": "1.1",
            "TradeMoney": "1100",
            "TradeDate": "2024-01-12",
            "TradeID": "T200",
        },
        {
            "ClientAccountID": "U1234567",
            "CurrencyPrimary": "USD",
            "LevelOfDetail": "DETAIL",
            "Symbol": "AAPL",
            "ISIN": "US0378331005",
            "ListingExchange": "NASDAQ",
            "TradeMoney": "20",
            "TradeDate": "2024-02-15",
            "ActivityCode": "DIV",
            "ActivityDescription": DIVIDEND_TEXT,
            "Description": DIVIDEND_TEXT,
        },
    ]


@pytest.fixture
def sample_statement_csv(sample_statement_rows: list[dict[str, str]]) -> str:
    return statement_csv(sample_statement_rows)
