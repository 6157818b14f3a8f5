from __future__ import annotations

import argparse
import asyncio
import sys
from pathlib import Path

REPO_ROOT = Path(__file__).resolve().parents[1]
SRC_ROOT = REPO_ROOT / "src"
if str(SRC_ROOT) not in sys.path:
    sys.path.insert(0, str(SRC_ROOT))

from broker_reconcile.config.paths import data_dir, default_db_path, ticker_cache_path
from broker_reconcile.config.settings import get_settings


def _cmd_init_db(_: argparse.Namespace) -> int:
    from broker_reconcile.db.migrate import migrate

    migrate()
    print("Initialized database schema.")
    return 0


def _cmd_paths(_: argparse.Namespace) -> int:
    print(f"DATA_DIR={data_dir()}")
    print(f"DB_PATH={default_db_path()}")
    print(f"TICKER_CACHE={ticker_cache_path()}")
    print(f"DATABASE_URL={get_settings().database_url}")
    return 0


def _cmd_reconcile(args: argparse.Namespace) -> int:
    from sqlalchemy.orm import Session

    from broker_reconcile.db.migrate import migrate
    from broker_reconcile.db.stores import SqlAccountsApi, SqlActivitiesApi, SqlTickerCacheStore
    from broker_reconcile.pipeline.orchestrator import reconcile_statement
    from broker_reconcile.resolve.cache import TickerCache
    from broker_reconcile.resolve.quotes import YahooQuoteService
    from broker_reconcile.resolve.tickers import ResolverOptions, TickerResolver

    settings = get_settings()
    documents = [Path(path).read_text(encoding="utf-8-sig") for path in args.files]
    engine = migrate()
    with Session(engine) as session:
        resolver = None
        if not args.no_resolve:
            resolver = TickerResolver(
                TickerCache.from_settings(SqlTickerCacheStore(session), settings),
                quote_service=YahooQuoteService(timeout=settings.request_timeout_seconds),
                options=ResolverOptions.from_settings(settings),
            )
        result = asyncio.run(
            reconcile_statement(
                documents,
                account_group=args.group,
                accounts_api=SqlAccountsApi(session),
                activities_api=SqlActivitiesApi(session),
                resolver=resolver,
                import_to_ledger=args.import_records,
            )
        )

    for error in result.parse_errors:
        print(f"parse error: {error}")
    if not result.success:
        print(f"Reconcile failed: {result.error}")
        return 1

    print(f"Currencies: {', '.join(result.currencies) or '-'}")
    for group in result.groups:
        counts = ", ".join(f"{key}={value}" for key, value in group.summary.items())
        print(f"{group.account_name}: {len(group.records)} activities ({counts})")
    print(f"Skipped rows: {result.skipped_count}")
    print(f"Duplicates skipped: {result.duplicates_skipped}")
    for error in result.conversion_errors:
        print(f"line {error.line_number}: {error.message} {error.symbol}".rstrip())
    for skipped in result.skipped_fx_conversions:
        print(f"FX skipped {skipped.symbol}: {skipped.reason}")
    if args.import_records:
        print(f"Imported: {result.imported}")
    return 0


def _cmd_test_connection(args: argparse.Namespace) -> int:
    from broker_reconcile.fetch.flex_client import (
        FlexFetchOptions,
        FlexQueryClient,
        RequestsTransport,
        validate_flex_token,
        validate_query_id,
    )

    for check in (validate_flex_token(args.token), validate_query_id(args.query_id)):
        if not check.valid:
            print(check.error)
            return 2

    settings = get_settings()
    client = FlexQueryClient(
        RequestsTransport(timeout=settings.request_timeout_seconds),
        FlexFetchOptions.from_settings(settings),
    )
    result = asyncio.run(client.test_connection(args.token, args.query_id))
    print(result.message)
    return 0 if result.success else 1


async def _auto_fetch(session) -> int:
    from broker_reconcile.db.stores import (
        SqlAccountsApi,
        SqlActivitiesApi,
        SqlSecretsStore,
        SqlTickerCacheStore,
    )
    from broker_reconcile.fetch.config_store import FlexConfigStorage
    from broker_reconcile.fetch.flex_client import FlexFetchOptions, FlexQueryClient, RequestsTransport
    from broker_reconcile.fetch.scheduler import AutoFetchScheduler, SchedulerOptions
    from broker_reconcile.pipeline.processor import ProcessConfigDeps, bind_processor
    from broker_reconcile.resolve.cache import TickerCache
    from broker_reconcile.resolve.quotes import YahooQuoteService
    from broker_reconcile.resolve.tickers import ResolverOptions, TickerResolver

    settings = get_settings()
    storage = FlexConfigStorage(SqlSecretsStore(session))
    deps = ProcessConfigDeps(
        client=FlexQueryClient(
            RequestsTransport(timeout=settings.request_timeout_seconds),
            FlexFetchOptions.from_settings(settings),
        ),
        storage=storage,
        accounts_api=SqlAccountsApi(session),
        activities_api=SqlActivitiesApi(session),
        resolver=TickerResolver(
            TickerCache.from_settings(SqlTickerCacheStore(session), settings),
            quote_service=YahooQuoteService(timeout=settings.request_timeout_seconds),
            options=ResolverOptions.from_settings(settings),
        ),
        dedup_policy=settings.dedup_fetch_failure_policy,
    )
    scheduler = AutoFetchScheduler(storage, bind_processor(deps), SchedulerOptions.from_settings(settings))
    try:
        outcome = await scheduler.run_once()
    finally:
        await scheduler.close()

    if not outcome.ran:
        print(f"Auto-fetch skipped: {outcome.skipped_reason}")
        return 0
    exit_code = 0
    for config_id, result in outcome.results.items():
        if result.success:
            print(f"{config_id}: {result.imported} imported, {result.skipped} skipped, {result.failed} failed")
        else:
            print(f"{config_id}: failed - {result.error}")
            exit_code = 1
    return exit_code


def _cmd_auto_fetch(_: argparse.Namespace) -> int:
    from sqlalchemy.orm import Session

    from broker_reconcile.db.migrate import migrate

    with Session(migrate()) as session:
        return asyncio.run(_auto_fetch(session))


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Broker Reconcile developer CLI")
    subparsers = parser.add_subparsers(dest="command", required=True)

    sp_init_db = subparsers.add_parser("init-db", help="Create/update local database schema")
    sp_init_db.set_defaults(func=_cmd_init_db)

    sp_paths = subparsers.add_parser("paths", help="Print configured project paths")
    sp_paths.set_defaults(func=_cmd_paths)

    sp_reconcile = subparsers.add_parser(
        "reconcile", help="Reconcile statement CSV files against the local ledger"
    )
    sp_reconcile.add_argument("files", nargs="+", help="Statement CSV file(s); several files merge into one.")
    sp_reconcile.add_argument("--group", default="IBKR", help="Account group name.")
    sp_reconcile.add_argument(
        "--import",
        dest="import_records",
        action="store_true",
        help="Write the deduplicated activities into the ledger.",
    )
    sp_reconcile.add_argument(
        "--no-resolve",
        action="store_true",
        help="Skip network ticker resolution.",
    )
    sp_reconcile.set_defaults(func=_cmd_reconcile)

    sp_test = subparsers.add_parser("test-connection", help="Check Flex token and query id")
    sp_test.add_argument("--token", required=True)
    sp_test.add_argument("--query-id", required=True)
    sp_test.set_defaults(func=_cmd_test_connection)

    sp_auto = subparsers.add_parser("auto-fetch", help="Run one scheduled auto-fetch pass")
    sp_auto.set_defaults(func=_cmd_auto_fetch)

    return parser


def main() -> int:
    parser = build_parser()
    args = parser.parse_args()
    return args.func(args)


if __name__ == "__main__":
    raise SystemExit(main())
