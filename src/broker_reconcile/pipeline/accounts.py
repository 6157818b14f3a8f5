from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, Protocol, Sequence

from broker_reconcile.ingest.models import RawRow
from broker_reconcile.utils.logging import error_message, get_logger

logger = get_logger(__name__)

DEFAULT_ACCOUNT_TYPE = "SECURITIES"


@dataclass(frozen=True)
class Account:
    id: str
    name: str
    currency: str
    group: str | None = None


@dataclass(frozen=True)
class AccountSpec:
    name: str
    currency: str
    group: str
    account_type: str = DEFAULT_ACCOUNT_TYPE
    is_default: bool = False
    is_active: bool = True


class AccountsApi(Protocol):
    async def get_all(self) -> Sequence[Account]: ...

    async def create(self, spec: AccountSpec) -> Account | None: ...


def account_name(group: str, currency: str) -> str:
    return f"{group} - {currency}"


def generate_account_names(group: str, currencies: Iterable[str]) -> list[AccountSpec]:
    return [
        AccountSpec(name=account_name(group, currency), currency=currency, group=group)
        for currency in currencies
    ]


def detect_currencies(rows: Iterable[RawRow]) -> list[str]:
    """Currencies listed in the per-currency summary rows of a statement."""
    currencies: set[str] = set()
    for row in rows:
        if row.get("LevelOfDetail") != "Currency":
            continue
        currency = row.get("CurrencyPrimary")
        if currency and currency != "Currency":
            currencies.add(currency)
    return sorted(currencies)


async def get_or_create_accounts_for_group(
    accounts: AccountsApi, group: str, currencies: Iterable[str]
) -> dict[str, Account]:
    existing = [account for account in await accounts.get_all() if account.group == group]
    by_currency: dict[str, Account] = {}

    for spec in generate_account_names(group, currencies):
        match = next(
            (a for a in existing if a.name == spec.name and a.currency == spec.currency),
            None,
        )
        if match is not None:
            by_currency[spec.currency] = match
            continue
        try:
            created = await accounts.create(spec)
        except Exception as exc:
            logger.error("Failed to create account %s: %s", spec.name, error_message(exc))
            continue
        if created is None:
            logger.error("Failed to create account %s: API returned nothing", spec.name)
            continue
        logger.info("Created account: %s", spec.name)
        by_currency[spec.currency] = created

    return by_currency
