from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta

from broker_reconcile.fetch.config_store import FetchStatus
from broker_reconcile.utils.dates import parse_timestamp, to_iso_timestamp
from broker_reconcile.utils.logging import error_message, get_logger

logger = get_logger(__name__)

_SECONDS_PER_HOUR = 3600.0

_FLEX_TOKEN_SETUP = "IBKR Account Management > Reports > Flex Queries > Configure Flex Token"
_FLEX_QUERIES = "IBKR Account Management > Reports > Flex Queries"

IBKR_ERROR_GUIDANCE: dict[str, str] = {
    "Token has expired": f"Token has expired. Generate a new token in {_FLEX_TOKEN_SETUP}.",
    "Token is invalid": f"Token is invalid. Check your Flex Query token in {_FLEX_QUERIES}.",
    "IP address restriction violated": (
        f"IP address not allowed. Update IP restrictions in {_FLEX_TOKEN_SETUP}."
    ),
    "IP address not allowed": f"IP address not allowed. Update IP restrictions in {_FLEX_TOKEN_SETUP}.",
    "Query is invalid": f"Query ID is invalid. Verify the Flex Query ID in {_FLEX_QUERIES}.",
    "Token missing permissions": (
        "Token lacks required permissions. Regenerate the token with proper permissions "
        "in IBKR Account Management."
    ),
}


@dataclass(frozen=True)
class CooldownCheck:
    in_cooldown: bool
    hours_remaining: float | None = None


@dataclass(frozen=True)
class StatusUpdate:
    last_fetch_time: str
    last_fetch_status: FetchStatus
    last_fetch_error: str | None = None


def check_cooldown(last_fetch_time: str | None, cooldown: timedelta, now: datetime) -> CooldownCheck:
    """A config is eligible once exactly ``cooldown`` has elapsed since its last fetch."""
    if not last_fetch_time:
        return CooldownCheck(in_cooldown=False)

    last = parse_timestamp(last_fetch_time)
    if last is None:
        logger.warning("Invalid last fetch timestamp %r, allowing fetch", last_fetch_time)
        return CooldownCheck(in_cooldown=False)

    if last > now:
        logger.warning("Future last fetch timestamp %s, treating as in cooldown", last_fetch_time)
        return CooldownCheck(in_cooldown=True, hours_remaining=cooldown.total_seconds() / _SECONDS_PER_HOUR)

    elapsed = now - last
    if elapsed < cooldown:
        remaining = (cooldown - elapsed).total_seconds() / _SECONDS_PER_HOUR
        return CooldownCheck(in_cooldown=True, hours_remaining=round(remaining, 1))
    return CooldownCheck(in_cooldown=False)


def success_status(now: datetime) -> StatusUpdate:
    return StatusUpdate(to_iso_timestamp(now), FetchStatus.SUCCESS)


def pending_status(now: datetime) -> StatusUpdate:
    """Claim written before a fetch starts so the config is already in cooldown."""
    return StatusUpdate(to_iso_timestamp(now), FetchStatus.PENDING)


def error_status(now: datetime, error: BaseException | str) -> StatusUpdate:
    return StatusUpdate(to_iso_timestamp(now), FetchStatus.ERROR, error_message(error))


def format_import_result_message(imported: int, skipped: int, failed: int = 0) -> str:
    parts = [f"{imported} transactions imported"]
    if skipped > 0:
        parts.append(f"{skipped} duplicates skipped")
    if failed > 0:
        parts.append(f"{failed} failed")
    return ", ".join(parts)


def enrich_error_message(message: str) -> str:
    if message in IBKR_ERROR_GUIDANCE:
        return IBKR_ERROR_GUIDANCE[message]
    for key, guidance in IBKR_ERROR_GUIDANCE.items():
        if key in message:
            return guidance
    return message
