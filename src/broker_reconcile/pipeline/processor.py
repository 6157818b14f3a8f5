"""One scheduled fetch-and-import run for a single Flex Query configuration."""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from typing import Awaitable, Callable, Mapping, Sequence

from broker_reconcile.config.settings import DedupFailurePolicy
from broker_reconcile.fetch.config_store import FlexConfigStorage, FlexQueryConfig
from broker_reconcile.fetch.flex_client import FlexQueryClient
from broker_reconcile.fetch.status import (
    StatusUpdate,
    enrich_error_message,
    error_status,
    format_import_result_message,
    success_status,
)
from broker_reconcile.ingest.dedupe import deduplicate_activities
from broker_reconcile.ingest.models import ActivityRecord, RawRow
from broker_reconcile.ingest.sections import parse_statement
from broker_reconcile.pipeline.accounts import (
    Account,
    AccountsApi,
    detect_currencies,
    get_or_create_accounts_for_group,
)
from broker_reconcile.pipeline.orchestrator import ActivitiesApi, process_and_resolve
from broker_reconcile.resolve.tickers import TickerResolver
from broker_reconcile.utils.dates import Clock, utcnow
from broker_reconcile.utils.logging import error_message, get_logger

logger = get_logger(__name__)


class ConfigFetchError(Exception):
    pass


@dataclass(frozen=True)
class FetchAndParseResult:
    success: bool
    rows: list[RawRow] = field(default_factory=list)
    error: str | None = None


@dataclass(frozen=True)
class ImportSummary:
    imported: int = 0
    skipped: int = 0
    failed: int = 0
    failed_accounts: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class ConfigProcessResult:
    success: bool
    imported: int = 0
    skipped: int = 0
    failed: int = 0
    failed_accounts: list[str] = field(default_factory=list)
    error: str | None = None


@dataclass(frozen=True)
class ProcessConfigDeps:
    client: FlexQueryClient
    storage: FlexConfigStorage
    accounts_api: AccountsApi
    activities_api: ActivitiesApi
    token: str = ""
    resolver: TickerResolver | None = None
    dedup_policy: DedupFailurePolicy = DedupFailurePolicy.IMPORT
    clock: Clock = utcnow


async def fetch_and_parse(client: FlexQueryClient, token: str, config: FlexQueryConfig) -> FetchAndParseResult:
    result = await client.fetch_statement(
        token,
        config.query_id,
        on_progress=lambda message: logger.debug("Auto-fetch [%s]: %s", config.name, message),
    )
    if not result.success or not result.payload:
        return FetchAndParseResult(success=False, error=result.error or "Fetch failed")

    parsed = parse_statement(result.payload)
    if parsed.errors:
        logger.warning("Auto-fetch [%s]: parse warnings: %s", config.name, ", ".join(parsed.errors))
    return FetchAndParseResult(success=True, rows=parsed.rows)


async def import_activities_to_accounts(
    records: Sequence[ActivityRecord],
    currencies: Sequence[str],
    accounts_by_currency: Mapping[str, Account],
    activities_api: ActivitiesApi,
    config_name: str,
    policy: DedupFailurePolicy = DedupFailurePolicy.IMPORT,
) -> ImportSummary:
    imported = skipped = failed = 0
    failed_accounts: list[str] = []

    for currency in currencies:
        account = accounts_by_currency.get(currency)
        if account is None:
            continue
        batch = [record.with_changes(account_id=account.id) for record in records if record.currency == currency]
        if not batch:
            continue

        try:
            dedup = await deduplicate_activities(batch, account.id, activities_api.get_all, policy)
            skipped += dedup.duplicates_skipped
            if dedup.to_import:
                imported += await activities_api.import_activities(dedup.to_import)
                logger.debug("Auto-fetch [%s]: imported %s to %s", config_name, len(dedup.to_import), account.name)
            if dedup.duplicates_skipped:
                logger.debug(
                    "Auto-fetch [%s]: skipped %s duplicates for %s",
                    config_name,
                    dedup.duplicates_skipped,
                    account.name,
                )
        except Exception as exc:
            failed += len(batch)
            failed_accounts.append(account.name)
            logger.warning(
                "Auto-fetch [%s]: import error for %s (%s activities): %s",
                config_name,
                account.name,
                len(batch),
                error_message(exc),
            )

    return ImportSummary(imported=imported, skipped=skipped, failed=failed, failed_accounts=failed_accounts)


async def _write_status(storage: FlexConfigStorage, config: FlexQueryConfig, status: StatusUpdate) -> None:
    try:
        await storage.update_config_status(
            config.id,
            last_fetch_time=status.last_fetch_time,
            last_fetch_status=status.last_fetch_status,
            last_fetch_error=status.last_fetch_error,
        )
    except Exception as exc:
        logger.warning(
            "Auto-fetch [%s]: failed to save %s status: %s",
            config.name,
            status.last_fetch_status.value,
            error_message(exc),
        )


async def process_config(config: FlexQueryConfig, deps: ProcessConfigDeps) -> ConfigProcessResult:
    try:
        fetched = await fetch_and_parse(deps.client, deps.token, config)
        if not fetched.success:
            raise ConfigFetchError(fetched.error or "Fetch failed")

        if not fetched.rows:
            logger.info("Auto-fetch [%s]: no transactions found", config.name)
            await _write_status(deps.storage, config, success_status(deps.clock()))
            return ConfigProcessResult(success=True)

        currencies = detect_currencies(fetched.rows)
        accounts = await get_or_create_accounts_for_group(deps.accounts_api, config.account_group, currencies)
        processed = await process_and_resolve(
            fetched.rows,
            {currency: account.id for currency, account in accounts.items()},
            deps.resolver,
        )
        if processed.conversion_errors:
            logger.warning(
                "Auto-fetch [%s]: %s conversion error(s): %s",
                config.name,
                len(processed.conversion_errors),
                "; ".join(error.message for error in processed.conversion_errors[:5]),
            )

        summary = await import_activities_to_accounts(
            processed.records,
            currencies,
            accounts,
            deps.activities_api,
            config.name,
            deps.dedup_policy,
        )
    except Exception as exc:
        raw_error = error_message(exc)
        friendly = enrich_error_message(raw_error)
        logger.error("Auto-fetch [%s]: error - %s", config.name, raw_error)
        await _write_status(deps.storage, config, error_status(deps.clock(), friendly))
        return ConfigProcessResult(success=False, error=friendly)

    await _write_status(deps.storage, config, success_status(deps.clock()))
    logger.info(
        "Auto-fetch [%s]: complete - %s",
        config.name,
        format_import_result_message(summary.imported, summary.skipped, summary.failed),
    )
    if summary.failed_accounts:
        logger.warning("Auto-fetch [%s]: failed accounts: %s", config.name, ", ".join(summary.failed_accounts))

    return ConfigProcessResult(
        success=True,
        imported=summary.imported,
        skipped=summary.skipped,
        failed=summary.failed,
        failed_accounts=summary.failed_accounts,
    )


def bind_processor(deps: ProcessConfigDeps) -> Callable[[FlexQueryConfig, str], Awaitable[ConfigProcessResult]]:
    """Adapt ``process_config`` to the scheduler's ``(config, token)`` callback."""

    async def _process(config: FlexQueryConfig, token: str) -> ConfigProcessResult:
        return await process_config(config, replace(deps, token=token))

    return _process
