"""Metrics fetcher — raw exposition text / JSON over httpx, plus the line parser."""

from __future__ import annotations

import re
import time
from dataclasses import dataclass, field
from typing import Any

import httpx
import structlog

from relaymon.collector.credentials import SourceAuth
from relaymon.collector.exceptions import (
    FetchAuthError,
    FetchConnectionError,
    FetchHTTPStatusError,
    FetchParseError,
    FetchTimeoutError,
)
from relaymon.core.config import MetricsConfig, get_settings
from relaymon.core.types import RawBalance

logger = structlog.stdlib.get_logger()

_TEXT_CONTENT_MARKERS = ("text/", "json", "openmetrics")


# ── Exposition parsing ─────────────────────────────────────────

_WALLET_BALANCE_RE = re.compile(
    r"^wallet_balance\{(?P<labels>[^}]*)\}\s+(?P<value>\d+(?:\.\d+)?)(?:\s|$)"
)
_LABEL_RE = re.compile(r'(?P<key>[a-zA-Z_][a-zA-Z0-9_]*)="(?P<value>[^"]*)"')
_REQUIRED_LABELS = ("account", "chain", "denom")


@dataclass
class ParseResult:
    """Balances found in one payload plus the count of unusable balance lines."""

    balances: list[RawBalance] = field(default_factory=list)
    malformed: int = 0


def parse_wallet_balances(text: str, timestamp: float | None = None) -> ParseResult:
    """Extract ``wallet_balance`` gauge samples from exposition text.

    Lines for other metrics and comments are ignored. ``wallet_balance`` lines
    that lack a label or carry a non-numeric value are counted as malformed.
    """
    ts = timestamp if timestamp is not None else time.time()
    result = ParseResult()

    for line in text.splitlines():
        line = line.strip()
        if not line.startswith("wallet_balance{") and not line.startswith("wallet_balance "):
            continue

        match = _WALLET_BALANCE_RE.match(line)
        if match is None:
            result.malformed += 1
            continue

        labels = {m.group("key"): m.group("value") for m in _LABEL_RE.finditer(match.group("labels"))}
        if any(not labels.get(name) for name in _REQUIRED_LABELS):
            result.malformed += 1
            continue

        result.balances.append(RawBalance(
            account=labels["account"],
            chain=labels["chain"],
            denom=labels["denom"],
            scope=labels.get("otel_scope_name", ""),
            raw_value=match.group("value"),
            timestamp=ts,
        ))

    if result.malformed:
        logger.warning("wallet_balance_lines_malformed", count=result.malformed)
    return result


# ── HTTP fetcher ───────────────────────────────────────────────


class MetricsFetcher:
    """Fetches metrics payloads with escalating per-attempt timeouts.

    Within one logical fetch the request is retried with timeouts
    ``base × m`` for each ``m`` in ``timeout_multipliers``. Only timeouts
    escalate; every other failure is raised immediately as a typed error.
    """

    def __init__(
        self,
        config: MetricsConfig | None = None,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._config = config or get_settings().metrics
        self._client = client
        self._owns_client = client is None
        self._request_count = 0

    @property
    def request_count(self) -> int:
        return self._request_count

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                headers={"User-Agent": self._config.user_agent},
                follow_redirects=True,
            )
            self._owns_client = True
        return self._client

    async def close(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
        self._client = None

    async def _get(
        self,
        url: str,
        auth: SourceAuth | None,
        base_timeout: float | None,
    ) -> httpx.Response:
        client = self._get_client()
        headers = auth.headers() if auth is not None else {}
        base = base_timeout if base_timeout is not None else self._config.request_timeout_secs
        multipliers = self._config.timeout_multipliers or [1.0]

        last_exc: Exception | None = None
        for attempt, mult in enumerate(multipliers, start=1):
            timeout = base * mult
            self._request_count += 1
            try:
                response = await client.get(
                    url, headers=headers, timeout=httpx.Timeout(timeout)
                )
            except httpx.TimeoutException as exc:
                last_exc = exc
                logger.debug(
                    "metrics_fetch_timeout",
                    url=url,
                    attempt=attempt,
                    timeout_secs=timeout,
                )
                continue
            except httpx.HTTPError as exc:
                raise FetchConnectionError(f"Request to {url} failed: {exc}") from exc

            if response.status_code in (401, 403):
                raise FetchAuthError(
                    response.status_code,
                    f"{url} rejected credentials ({response.status_code})",
                )
            try:
                response.raise_for_status()
            except httpx.HTTPStatusError as exc:
                raise FetchHTTPStatusError(
                    response.status_code,
                    f"{url} returned {response.status_code}",
                ) from exc
            return response

        raise FetchTimeoutError(
            f"{url} timed out after {len(multipliers)} attempts"
        ) from last_exc

    async def fetch_raw(
        self,
        url: str,
        auth: SourceAuth | None = None,
        timeout: float | None = None,
    ) -> str:
        """Fetch a text payload.

        Raises:
            FetchTimeoutError: Every escalated attempt timed out.
            FetchConnectionError: Transport failure.
            FetchAuthError: 401/403.
            FetchHTTPStatusError: Any other non-2xx status.
            FetchParseError: Empty or non-text body.
        """
        response = await self._get(url, auth, timeout)

        content_type = response.headers.get("content-type", "").lower()
        if content_type and not any(m in content_type for m in _TEXT_CONTENT_MARKERS):
            raise FetchParseError(f"{url} returned non-text content ({content_type})")

        text = response.text
        if not text.strip():
            raise FetchParseError(f"{url} returned an empty payload")
        return text

    async def fetch_json(
        self,
        url: str,
        auth: SourceAuth | None = None,
        timeout: float | None = None,
    ) -> Any:
        """Fetch and decode a JSON payload. Same errors as :meth:`fetch_raw`."""
        response = await self._get(url, auth, timeout)
        try:
            return response.json()
        except ValueError as exc:
            raise FetchParseError(f"{url} returned invalid JSON") from exc

    async def is_reachable(self, url: str, timeout: float = 5.0) -> bool:
        """Single bounded probe. Never raises."""
        self._request_count += 1
        try:
            response = await self._get_client().get(url, timeout=httpx.Timeout(timeout))
        except httpx.HTTPError as exc:
            logger.debug("metrics_probe_failed", url=url, error=str(exc))
            return False
        return response.status_code < 500
