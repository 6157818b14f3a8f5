"""SQLAlchemy-backed implementations of the host interfaces.

The async methods do blocking session work inline; a single local SQLite file
is fast enough that nothing else is waiting on the loop.
"""

from __future__ import annotations

from typing import Any, Sequence

from sqlalchemy import delete, select
from sqlalchemy.orm import Session

from broker_reconcile.db.models import LedgerAccount, LedgerActivity, SecretEntry, TickerCacheRow
from broker_reconcile.ingest.models import ActivityRecord
from broker_reconcile.pipeline.accounts import Account, AccountSpec


class SqlSecretsStore:
    def __init__(self, session: Session) -> None:
        self.session = session

    async def get(self, key: str) -> str | None:
        entry = self.session.get(SecretEntry, key)
        return entry.value if entry is not None else None

    async def set(self, key: str, value: str) -> None:
        entry = self.session.get(SecretEntry, key)
        if entry is None:
            self.session.add(SecretEntry(key=key, value=value))
        else:
            entry.value = value
        self.session.commit()

    async def delete(self, key: str) -> None:
        self.session.execute(delete(SecretEntry).where(SecretEntry.key == key))
        self.session.commit()


def _to_account(row: LedgerAccount) -> Account:
    return Account(id=row.id, name=row.name, currency=row.currency, group=row.account_group)


class SqlAccountsApi:
    def __init__(self, session: Session) -> None:
        self.session = session

    async def get_all(self) -> list[Account]:
        rows = self.session.scalars(select(LedgerAccount).order_by(LedgerAccount.name)).all()
        return [_to_account(row) for row in rows]

    async def create(self, spec: AccountSpec) -> Account:
        row = LedgerAccount(
            name=spec.name,
            currency=spec.currency,
            account_group=spec.group,
            account_type=spec.account_type,
            is_default=spec.is_default,
            is_active=spec.is_active,
        )
        self.session.add(row)
        self.session.commit()
        return _to_account(row)


class SqlActivitiesApi:
    def __init__(self, session: Session) -> None:
        self.session = session

    async def get_all(self, account_id: str) -> list[dict[str, Any]]:
        rows = self.session.scalars(
            select(LedgerActivity)
            .where(LedgerActivity.account_id == account_id)
            .order_by(LedgerActivity.activity_date, LedgerActivity.id)
        ).all()
        return [
            {
                "activity_date": row.activity_date,
                "asset_id": row.symbol,
                "activity_type": row.activity_type.value,
                "quantity": row.quantity,
                "unit_price": row.unit_price,
                "amount": row.amount,
                "fee": row.fee,
                "currency": row.currency,
                "comment": row.comment,
            }
            for row in rows
        ]

    async def import_activities(self, records: Sequence[ActivityRecord]) -> int:
        rows = []
        for record in records:
            if not record.account_id:
                raise ValueError(f"Activity on line {record.line_number} has no account id")
            rows.append(
                LedgerActivity(
                    account_id=record.account_id,
                    activity_date=record.date,
                    symbol=record.symbol,
                    activity_type=record.activity_type,
                    quantity=record.quantity,
                    unit_price=record.unit_price,
                    amount=record.amount,
                    fee=record.fee,
                    currency=record.currency,
                    comment=record.comment or None,
                    isin=record.isin,
                    line_number=record.line_number,
                )
            )
        self.session.add_all(rows)
        self.session.commit()
        return len(rows)


class SqlTickerCacheStore:
    def __init__(self, session: Session) -> None:
        self.session = session

    def load(self) -> dict[str, Any]:
        entries: dict[str, Any] = {}
        for row in self.session.scalars(select(TickerCacheRow)).all():
            payload: dict[str, Any] = {
                "ticker": row.ticker,
                "confidence": row.confidence,
                "timestamp": row.timestamp,
            }
            if row.name:
                payload["name"] = row.name
            entries[row.cache_key] = payload
        return entries

    def save(self, entries: dict[str, Any]) -> None:
        self.session.execute(delete(TickerCacheRow))
        self.session.add_all(
            TickerCacheRow(
                cache_key=key,
                ticker=payload["ticker"],
                confidence=payload["confidence"],
                name=payload.get("name"),
                timestamp=payload["timestamp"],
            )
            for key, payload in entries.items()
        )
        self.session.commit()
