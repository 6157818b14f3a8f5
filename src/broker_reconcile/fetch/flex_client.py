"""Client for the IBKR Flex Web Service two-step statement protocol.

A fetch attempt submits the query (``SendRequest``), receives a reference code
and then polls ``GetStatement`` until the statement is ready. Polling backs off
geometrically between a minimum and maximum delay and gives up once an absolute
timeout measured from the submit has elapsed.
"""

from __future__ import annotations

import asyncio
import re
import xml.etree.ElementTree as ET
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Protocol
from urllib.parse import urlencode

import requests

from broker_reconcile.config.settings import DEFAULT_FLEX_BASE_URL, Settings
from broker_reconcile.utils.dates import Clock, utcnow
from broker_reconcile.utils.logging import error_message, get_logger

logger = get_logger(__name__)

USER_AGENT = "BrokerReconcile/1.0"
API_VERSION = "3"
TIMEOUT_ERROR = "timeout"

FLEX_ERROR_CODES: dict[int, str] = {
    1001: "Statement generation unavailable; retry shortly",
    1003: "Statement generation in progress; wait and try again",
    1004: "Statement ready for download",
    1005: "Statement failed to generate; try again",
    1006: "Statement is too large; try with a smaller date range",
    1007: "Statement request invalid",
    1010: "Server error; retry later",
    1011: "Statement ID not found",
    1012: "Token has expired",
    1013: "IP address restriction violated",
    1014: "Query is invalid",
    1015: "Token is invalid",
    1016: "Token missing permissions",
    1017: "Statement date range invalid",
    1018: "Rate limit exceeded",
    1019: "Statement pending generation",
}

RETRYABLE_ERROR_CODES = frozenset({1003, 1018, 1019})

CONNECTION_TEST_MESSAGES: dict[int, str] = {
    1015: "Invalid token. Please check your Flex token.",
    1012: "Token has expired. Please generate a new token in IBKR Client Portal.",
    1014: "Invalid Query ID. Please check your Flex Query ID.",
    1013: "IP address not allowed. Please update IP restrictions in IBKR Client Portal.",
}

_TOKEN_RE = re.compile(r"^[a-zA-Z0-9]+$")
_QUERY_ID_RE = re.compile(r"^\d+$")
_CDATA_RE = re.compile(r"<!\[CDATA\[(.*?)\]\]>", re.DOTALL)


@dataclass(frozen=True)
class HttpResponse:
    ok: bool
    status: int
    body: str
    reason: str = ""


class Transport(Protocol):
    async def fetch(self, url: str, headers: dict[str, str]) -> HttpResponse: ...


class RequestsTransport:
    """Blocking ``requests`` calls run in a worker thread."""

    def __init__(self, timeout: float = 10.0, session: requests.Session | None = None) -> None:
        self.timeout = timeout
        self.session = session or requests.Session()

    def _get(self, url: str, headers: dict[str, str]) -> HttpResponse:
        response = self.session.get(url, headers=headers, timeout=self.timeout)
        return HttpResponse(
            ok=response.ok,
            status=response.status_code,
            body=response.text,
            reason=response.reason or "",
        )

    async def fetch(self, url: str, headers: dict[str, str]) -> HttpResponse:
        return await asyncio.to_thread(self._get, url, headers)


class FetchState(str, Enum):
    INIT = "init"
    REQUEST_SENT = "request_sent"
    POLLING = "polling"
    DONE = "done"


@dataclass(frozen=True)
class FlexResponse:
    status: str = ""
    reference_code: str | None = None
    url: str | None = None
    error_code: int | None = None
    error_message: str | None = None


@dataclass(frozen=True)
class FlexFetchResult:
    success: bool
    payload: str | None = None
    error: str | None = None
    error_code: int | None = None
    state: FetchState = FetchState.DONE
    polls: int = 0
    reference_code: str | None = None


@dataclass(frozen=True)
class ConnectionTestResult:
    success: bool
    message: str


@dataclass(frozen=True)
class ValidationResult:
    valid: bool
    error: str | None = None


@dataclass(frozen=True)
class FlexFetchOptions:
    base_url: str = DEFAULT_FLEX_BASE_URL
    initial_delay_seconds: float = 2.0
    max_delay_seconds: float = 30.0
    backoff_factor: float = 1.5
    timeout_seconds: float = 300.0
    user_agent: str = USER_AGENT

    @classmethod
    def from_settings(cls, settings: Settings) -> FlexFetchOptions:
        return cls(
            base_url=settings.flex_base_url,
            initial_delay_seconds=settings.flex_initial_delay_seconds,
            max_delay_seconds=settings.flex_max_delay_seconds,
            backoff_factor=settings.flex_backoff_factor,
            timeout_seconds=settings.flex_timeout_seconds,
        )


def validate_flex_token(token: str | None) -> ValidationResult:
    if not token or not isinstance(token, str) or not token.strip():
        return ValidationResult(False, "Token is required")
    trimmed = token.strip()
    if len(trimmed) < 16:
        return ValidationResult(False, "Token appears too short (minimum 16 characters)")
    if len(trimmed) > 128:
        return ValidationResult(False, "Token appears too long (maximum 128 characters)")
    if not _TOKEN_RE.match(trimmed):
        return ValidationResult(False, "Token should contain only alphanumeric characters")
    return ValidationResult(True)


def validate_query_id(query_id: str | None) -> ValidationResult:
    if not query_id or not isinstance(query_id, str) or not query_id.strip():
        return ValidationResult(False, "Query ID is required")
    trimmed = query_id.strip()
    if not _QUERY_ID_RE.match(trimmed):
        return ValidationResult(False, "Query ID should be numeric")
    if len(trimmed) > 20:
        return ValidationResult(False, "Query ID appears too long")
    return ValidationResult(True)


def _regex_field(xml: str, tag: str) -> str | None:
    match = re.search(rf"<{tag}>([^<]+)</{tag}>", xml, re.IGNORECASE)
    return match.group(1).strip() if match else None


def _to_int(value: str | None) -> int | None:
    if value is None:
        return None
    try:
        return int(value.strip())
    except ValueError:
        return None


def parse_flex_response(xml: str) -> FlexResponse:
    fields: dict[str, str] = {}
    try:
        root = ET.fromstring(xml.strip())
    except ET.ParseError:
        for tag in ("Status", "ReferenceCode", "Url", "ErrorCode", "ErrorMessage"):
            value = _regex_field(xml, tag)
            if value is not None:
                fields[tag.lower()] = value
    else:
        for element in root.iter():
            text = (element.text or "").strip()
            if text:
                fields.setdefault(str(element.tag).lower(), text)

    return FlexResponse(
        status=fields.get("status", ""),
        reference_code=fields.get("referencecode"),
        url=fields.get("url"),
        error_code=_to_int(fields.get("errorcode")),
        error_message=fields.get("errormessage"),
    )


def extract_statement_payload(body: str) -> str:
    """Unwrap CSV delivered inside an XML envelope or CDATA section."""
    text = body.strip()
    cdata = _CDATA_RE.search(text)
    if cdata:
        return cdata.group(1).strip()
    if not text.startswith("<"):
        return text
    try:
        root = ET.fromstring(text)
    except ET.ParseError:
        return text
    if len(root) == 0 and root.text and "," in root.text:
        return root.text.strip()
    return text


def _error_text(parsed: FlexResponse) -> str:
    if parsed.error_message:
        return parsed.error_message
    if parsed.error_code is not None and parsed.error_code in FLEX_ERROR_CODES:
        return FLEX_ERROR_CODES[parsed.error_code]
    return "Unknown error from IBKR"


class FlexQueryClient:
    def __init__(
        self,
        transport: Transport | None = None,
        options: FlexFetchOptions | None = None,
        *,
        clock: Clock = utcnow,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self.transport = transport or RequestsTransport()
        self.options = options or FlexFetchOptions()
        self.clock = clock
        self.sleep = sleep

    def _url(self, endpoint: str, token: str, query: str) -> str:
        params = urlencode({"t": token.strip(), "q": query.strip(), "v": API_VERSION})
        return f"{self.options.base_url.rstrip('/')}/{endpoint}?{params}"

    async def _get(self, url: str) -> HttpResponse | FlexFetchResult:
        try:
            response = await self.transport.fetch(url, {"User-Agent": self.options.user_agent})
        except Exception as exc:
            return FlexFetchResult(success=False, error=f"Network error: {error_message(exc)}")
        if not response.ok:
            return FlexFetchResult(
                success=False, error=f"HTTP error: {response.status} {response.reason}".strip()
            )
        return response

    async def send_request(self, token: str, query_id: str) -> FlexFetchResult:
        response = await self._get(self._url("SendRequest", token, query_id))
        if isinstance(response, FlexFetchResult):
            return response

        parsed = parse_flex_response(response.body)
        if parsed.status.lower() == "success" and parsed.reference_code:
            return FlexFetchResult(
                success=True, reference_code=parsed.reference_code, state=FetchState.REQUEST_SENT
            )
        return FlexFetchResult(success=False, error=_error_text(parsed), error_code=parsed.error_code)

    async def get_statement(self, token: str, reference_code: str) -> FlexFetchResult:
        response = await self._get(self._url("GetStatement", token, reference_code))
        if isinstance(response, FlexFetchResult):
            return response

        body = response.body
        if "<Status>" in body and "<FlexQueryResponse" not in body:
            parsed = parse_flex_response(body)
            return FlexFetchResult(
                success=False,
                error=_error_text(parsed),
                error_code=parsed.error_code,
                state=FetchState.POLLING,
            )
        payload = extract_statement_payload(body)
        if not payload:
            return FlexFetchResult(success=False, error="Empty statement body")
        return FlexFetchResult(success=True, payload=payload)

    async def fetch_statement(
        self,
        token: str,
        query_id: str,
        on_progress: Callable[[str], None] | None = None,
    ) -> FlexFetchResult:
        def progress(message: str) -> None:
            logger.debug(message)
            if on_progress is not None:
                on_progress(message)

        state = FetchState.INIT
        started = self.clock()
        timeout = self.options.timeout_seconds

        progress("Sending Flex Query request...")
        submitted = await self.send_request(token, query_id)
        if not submitted.success or not submitted.reference_code:
            return FlexFetchResult(
                success=False,
                error=submitted.error or "Failed to get reference code",
                error_code=submitted.error_code,
            )
        state = FetchState.REQUEST_SENT
        reference = submitted.reference_code
        progress(f"Request accepted. Reference: {reference}")

        delay = self.options.initial_delay_seconds
        polls = 0
        while state is not FetchState.DONE:
            elapsed = (self.clock() - started).total_seconds()
            if elapsed >= timeout:
                logger.warning(
                    "Flex statement %s not ready after %.0fs; giving up", reference, timeout
                )
                progress("Operation timed out")
                return FlexFetchResult(
                    success=False, error=TIMEOUT_ERROR, polls=polls, reference_code=reference
                )

            state = FetchState.POLLING
            progress(f"Waiting for statement (poll {polls + 1}, {timeout - elapsed:.0f}s remaining)...")
            await self.sleep(min(delay, max(timeout - elapsed, 0.0)))
            polls += 1

            result = await self.get_statement(token, reference)
            if result.success:
                progress("Statement retrieved successfully")
                return FlexFetchResult(
                    success=True, payload=result.payload, polls=polls, reference_code=reference
                )
            if result.error_code in RETRYABLE_ERROR_CODES:
                delay = min(delay * self.options.backoff_factor, self.options.max_delay_seconds)
                continue

            state = FetchState.DONE
            return FlexFetchResult(
                success=False,
                error=result.error,
                error_code=result.error_code,
                polls=polls,
                reference_code=reference,
            )

        return FlexFetchResult(success=False, error=TIMEOUT_ERROR, polls=polls, reference_code=reference)

    async def test_connection(self, token: str, query_id: str) -> ConnectionTestResult:
        result = await self.send_request(token, query_id)
        if result.success:
            return ConnectionTestResult(True, "Connection successful. Credentials are valid.")
        if result.error_code in CONNECTION_TEST_MESSAGES:
            return ConnectionTestResult(False, CONNECTION_TEST_MESSAGES[result.error_code])
        return ConnectionTestResult(False, result.error or "Connection failed")
