"""Statement pipeline: parse, classify, convert, split FX, resolve tickers, dedup.

Row-level transforms are synchronous; the only awaits are ticker resolution and
ledger I/O. ``is_alive`` is polled between stages so an interactive caller can
abandon a run.
"""

from __future__ import annotations

from collections import Counter
from dataclasses import dataclass, field
from typing import Callable, Iterable, Mapping, Protocol, Sequence

from broker_reconcile.ingest.classifier import ClassificationResult, preprocess_rows
from broker_reconcile.ingest.converter import convert_rows
from broker_reconcile.ingest.dedupe import ExistingActivity, filter_duplicate_activities
from broker_reconcile.ingest.fx_split import SkippedFxConversion, split_fx_conversions
from broker_reconcile.ingest.indexes import build_fx_rate_index, build_position_index
from broker_reconcile.ingest.models import ActivityRecord, ActivityType, ConversionError, RawRow
from broker_reconcile.ingest.sections import (
    DEFAULT_SOURCE,
    ParsedStatement,
    StatementFormatError,
    is_multi_section,
    merge_sections,
    parse_statement,
)
from broker_reconcile.pipeline.accounts import (
    Account,
    AccountsApi,
    account_name,
    detect_currencies,
    get_or_create_accounts_for_group,
)
from broker_reconcile.resolve.tickers import (
    TickerResolutionResult,
    TickerResolver,
    apply_resolutions,
    extract_tickers_to_resolve,
)
from broker_reconcile.utils.logging import error_message, get_logger

logger = get_logger(__name__)

DEFAULT_ACCOUNT_GROUP = "IBKR"


class PipelineCancelled(Exception):
    """Raised between stages when the caller is no longer interested in the result."""


class ActivitiesApi(Protocol):
    async def get_all(self, account_id: str) -> Sequence[ExistingActivity]: ...

    async def import_activities(self, records: Sequence[ActivityRecord]) -> int: ...


@dataclass(frozen=True)
class ProcessResult:
    records: list[ActivityRecord]
    conversion_errors: list[ConversionError] = field(default_factory=list)
    skipped_count: int = 0
    skipped_fx_conversions: list[SkippedFxConversion] = field(default_factory=list)
    classification: ClassificationResult | None = None
    warnings: list[str] = field(default_factory=list)
    resolutions: dict[str, TickerResolutionResult] = field(default_factory=dict)


@dataclass(frozen=True)
class FetchExistingResult:
    activities: list[ExistingActivity]
    failed_accounts: list[str] = field(default_factory=list)

    @property
    def complete(self) -> bool:
        return not self.failed_accounts


@dataclass(frozen=True)
class TransactionGroup:
    currency: str
    account_name: str
    records: list[ActivityRecord]
    summary: dict[str, int]


@dataclass(frozen=True)
class ReconcileResult:
    success: bool
    records: list[ActivityRecord] = field(default_factory=list)
    groups: list[TransactionGroup] = field(default_factory=list)
    currencies: list[str] = field(default_factory=list)
    parse_errors: list[str] = field(default_factory=list)
    conversion_errors: list[ConversionError] = field(default_factory=list)
    skipped_count: int = 0
    duplicates_skipped: int = 0
    imported: int = 0
    skipped_fx_conversions: list[SkippedFxConversion] = field(default_factory=list)
    failed_accounts: list[str] = field(default_factory=list)
    error: str | None = None


def _check_alive(is_alive: Callable[[], bool] | None, stage: str) -> None:
    if is_alive is not None and not is_alive():
        logger.debug("Pipeline cancelled before %s", stage)
        raise PipelineCancelled(f"Cancelled before {stage}")


async def process_and_resolve(
    rows: Sequence[RawRow],
    accounts_by_currency: Mapping[str, str],
    resolver: TickerResolver | None = None,
    *,
    is_alive: Callable[[], bool] | None = None,
    on_progress: Callable[[int, int], None] | None = None,
) -> ProcessResult:
    """Run the row pipeline against ``accounts_by_currency`` (currency -> account id)."""
    fx_index = build_fx_rate_index(rows)
    classification = preprocess_rows(rows)
    position_index = build_position_index(classification.rows)
    logger.debug(
        "Indexed %s FX pairs and %s position symbols", len(fx_index), len(position_index)
    )
    _check_alive(is_alive, "ticker resolution")

    resolutions: dict[str, TickerResolutionResult] = {}
    if resolver is not None:
        requests = extract_tickers_to_resolve(classification.rows)
        if requests:
            resolutions = await resolver.resolve_all(requests, on_progress=on_progress)
    _check_alive(is_alive, "conversion")

    conversion = convert_rows(classification.rows, fx_index, position_index, accounts_by_currency.keys())
    split = split_fx_conversions(conversion.records, accounts_by_currency)
    if split.skipped:
        logger.warning(
            "Skipped %s FX conversion(s): %s",
            len(split.skipped),
            "; ".join(f"{s.symbol}: {s.reason}" for s in split.skipped),
        )

    records = apply_resolutions(split.records, resolutions)
    records = [
        record
        if record.account_id
        else record.with_changes(account_id=accounts_by_currency.get(record.currency))
        for record in records
    ]
    _check_alive(is_alive, "import")

    return ProcessResult(
        records=records,
        conversion_errors=conversion.errors,
        skipped_count=classification.skipped,
        skipped_fx_conversions=split.skipped,
        classification=classification,
        warnings=conversion.warnings,
        resolutions=resolutions,
    )


def group_activities_by_currency(records: Iterable[ActivityRecord]) -> dict[str, list[ActivityRecord]]:
    grouped: dict[str, list[ActivityRecord]] = {}
    for record in records:
        if not record.currency:
            logger.warning(
                "Skipping activity without currency: %s on %s", record.symbol or "unknown", record.date
            )
            continue
        grouped.setdefault(record.currency, []).append(record)
    return grouped


def _group_summary(records: Sequence[ActivityRecord]) -> dict[str, int]:
    counts = Counter(record.activity_type for record in records)
    return {
        "trades": counts[ActivityType.BUY] + counts[ActivityType.SELL],
        "dividends": counts[ActivityType.DIVIDEND],
        "deposits": counts[ActivityType.DEPOSIT] + counts[ActivityType.TRANSFER_IN],
        "withdrawals": counts[ActivityType.WITHDRAWAL] + counts[ActivityType.TRANSFER_OUT],
        "fees": counts[ActivityType.FEE] + counts[ActivityType.TAX],
        "interest": counts[ActivityType.INTEREST],
    }


def create_transaction_groups(
    group: str, currencies: Iterable[str], grouped: Mapping[str, list[ActivityRecord]]
) -> list[TransactionGroup]:
    groups: list[TransactionGroup] = []
    for currency in currencies:
        records = list(grouped.get(currency, []))
        groups.append(
            TransactionGroup(
                currency=currency,
                account_name=account_name(group, currency),
                records=records,
                summary=_group_summary(records),
            )
        )
    return groups


async def fetch_existing_activities_for_dedup(
    activities_api: ActivitiesApi | None, accounts: Iterable[Account]
) -> FetchExistingResult:
    if activities_api is None:
        return FetchExistingResult(activities=[])

    existing: list[ExistingActivity] = []
    failed: list[str] = []
    for account in accounts:
        try:
            activities = await activities_api.get_all(account.id)
        except Exception as exc:
            failed.append(account.name or account.currency)
            logger.warning("Failed to fetch existing activities for %s: %s", account.name, error_message(exc))
            continue
        if not isinstance(activities, (list, tuple)):
            logger.warning("Activities API returned a non-list for account %s, skipping", account.id)
            continue
        existing.extend(activities)
    return FetchExistingResult(activities=existing, failed_accounts=failed)


def parse_documents(documents: str | Sequence[str], source: str = DEFAULT_SOURCE) -> ParsedStatement:
    if isinstance(documents, str):
        return parse_statement(documents, source=source)

    texts = list(documents)
    if len(texts) == 1:
        return parse_statement(texts[0], source=source)
    if texts and all(is_multi_section(text) for text in texts):
        try:
            merged = merge_sections(texts, source=source)
        except StatementFormatError as exc:
            return ParsedStatement(rows=[], columns=[], errors=[f"Failed to extract statement sections: {exc}"])
        return ParsedStatement(rows=merged.rows, columns=merged.columns, errors=[])

    rows: list[RawRow] = []
    columns: list[str] = []
    errors: list[str] = []
    for index, text in enumerate(texts, start=1):
        parsed = parse_statement(text, source=f"{source}#{index}")
        rows.extend(parsed.rows)
        columns.extend(column for column in parsed.columns if column not in columns)
        errors.extend(f"File {index}: {error}" for error in parsed.errors)
    return ParsedStatement(rows=rows, columns=columns, errors=errors)


def _statement_currencies(rows: Sequence[RawRow]) -> list[str]:
    currencies = detect_currencies(rows)
    if currencies:
        return currencies
    # Statements without a per-currency summary fall back to the currencies seen on rows.
    return sorted({row.get("CurrencyPrimary") for row in rows if row.get("CurrencyPrimary")})


async def reconcile_statement(
    documents: str | Sequence[str],
    *,
    account_group: str = DEFAULT_ACCOUNT_GROUP,
    accounts_api: AccountsApi | None = None,
    activities_api: ActivitiesApi | None = None,
    resolver: TickerResolver | None = None,
    import_to_ledger: bool = False,
    is_alive: Callable[[], bool] | None = None,
    source: str = DEFAULT_SOURCE,
) -> ReconcileResult:
    """Reconcile one or more statement documents against the ledger.

    Without an accounts API, records are assigned to placeholder account ids
    named after the ``"{group} - {currency}"`` convention. Structural and row
    errors are reported on the result; only ``PipelineCancelled`` propagates.
    """
    parsed = parse_documents(documents, source=source)
    if not parsed.rows:
        return ReconcileResult(success=False, parse_errors=parsed.errors, error="; ".join(parsed.errors) or None)

    currencies = _statement_currencies(parsed.rows)
    if accounts_api is not None:
        try:
            accounts = await get_or_create_accounts_for_group(accounts_api, account_group, currencies)
        except Exception as exc:
            logger.error("Failed to load accounts for group %s: %s", account_group, error_message(exc))
            return ReconcileResult(
                success=False, currencies=currencies, parse_errors=parsed.errors, error=error_message(exc)
            )
    else:
        accounts = {
            currency: Account(
                id=account_name(account_group, currency),
                name=account_name(account_group, currency),
                currency=currency,
                group=account_group,
            )
            for currency in currencies
        }
    accounts_by_currency = {currency: account.id for currency, account in accounts.items()}

    processed = await process_and_resolve(parsed.rows, accounts_by_currency, resolver, is_alive=is_alive)
    if processed.conversion_errors:
        logger.warning(
            "%s conversion error(s): %s",
            len(processed.conversion_errors),
            "; ".join(error.message for error in processed.conversion_errors[:5]),
        )

    existing = await fetch_existing_activities_for_dedup(activities_api, accounts.values())
    unique, duplicates = filter_duplicate_activities(processed.records, existing.activities)
    if duplicates:
        logger.info("Removed %s duplicate activities", len(duplicates))

    grouped = group_activities_by_currency(unique)
    imported = 0
    failed_accounts = list(existing.failed_accounts)
    if import_to_ledger and activities_api is not None:
        _check_alive(is_alive, "ledger import")
        for currency, records in grouped.items():
            account = accounts.get(currency)
            if account is None or not records:
                continue
            try:
                imported += await activities_api.import_activities(records)
            except Exception as exc:
                failed_accounts.append(account.name)
                logger.warning(
                    "Import failed for %s (%s activities): %s",
                    account.name,
                    len(records),
                    error_message(exc),
                )

    return ReconcileResult(
        success=True,
        records=unique,
        groups=create_transaction_groups(account_group, currencies, grouped),
        currencies=currencies,
        parse_errors=parsed.errors,
        conversion_errors=processed.conversion_errors,
        skipped_count=processed.skipped_count,
        duplicates_skipped=len(duplicates),
        imported=imported,
        skipped_fx_conversions=processed.skipped_fx_conversions,
        failed_accounts=failed_accounts,
    )
