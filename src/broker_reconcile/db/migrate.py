from __future__ import annotations

from pathlib import Path

from sqlalchemy import create_engine, event, inspect, text
from sqlalchemy.engine import Engine

from broker_reconcile.config.settings import get_settings
from broker_reconcile.db.models import Base
from broker_reconcile.utils.logging import get_logger

logger = get_logger(__name__)

# create_all leaves existing tables untouched; ledger files lacking these
# nullable columns get them added in place.
SQLITE_EXTRA_COLUMNS: dict[str, dict[str, str]] = {
    "ledger_activities": {
        "isin": "VARCHAR(16)",
        "line_number": "INTEGER",
    },
    "ticker_cache": {
        "name": "VARCHAR(256)",
    },
}

SQLITE_EXTRA_INDEXES = [
    "CREATE INDEX IF NOT EXISTS ix_ledger_activities_account_type "
    "ON ledger_activities (account_id, activity_type)",
]


def _enable_sqlite_pragmas(engine: Engine) -> None:
    @event.listens_for(engine, "connect")
    def _set_pragmas(dbapi_connection, _connection_record):  # pragma: no cover - driver callback
        cursor = dbapi_connection.cursor()
        for statement in (
            "PRAGMA foreign_keys=ON",
            "PRAGMA busy_timeout=5000",
            "PRAGMA journal_mode=WAL",
            "PRAGMA synchronous=NORMAL",
        ):
            try:
                cursor.execute(statement)
            except Exception:
                # In-memory databases reject WAL.
                continue
        cursor.close()


def _ensure_sqlite_columns(engine: Engine) -> None:
    inspector = inspect(engine)
    with engine.begin() as conn:
        for table, columns in SQLITE_EXTRA_COLUMNS.items():
            existing = {col["name"] for col in inspector.get_columns(table)}
            for name, ddl in columns.items():
                if name in existing:
                    continue
                logger.info("Adding column %s.%s", table, name)
                conn.execute(text(f"ALTER TABLE {table} ADD COLUMN {name} {ddl}"))


def _ensure_sqlite_indexes(engine: Engine) -> None:
    with engine.begin() as conn:
        for statement in SQLITE_EXTRA_INDEXES:
            conn.execute(text(statement))


def build_engine(database_url: str | None = None) -> Engine:
    url = database_url or get_settings().database_url

    if url.startswith("sqlite:///") and url != "sqlite:///:memory:":
        Path(url.removeprefix("sqlite:///")).expanduser().parent.mkdir(parents=True, exist_ok=True)

    engine = create_engine(url, future=True)
    if engine.dialect.name == "sqlite":
        _enable_sqlite_pragmas(engine)
    return engine


def migrate(database_url: str | None = None) -> Engine:
    """Create the ledger schema and bring older SQLite files up to date."""
    engine = build_engine(database_url=database_url)
    Base.metadata.create_all(bind=engine)
    if engine.dialect.name == "sqlite":
        _ensure_sqlite_columns(engine)
        _ensure_sqlite_indexes(engine)
    logger.info("Ledger schema ready at %s", engine.url.render_as_string(hide_password=True))
    return engine


if __name__ == "__main__":
    migrate()
