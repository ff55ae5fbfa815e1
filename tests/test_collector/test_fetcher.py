"""Tests for the exposition parser and MetricsFetcher — httpx mocking, timeout escalation."""

from __future__ import annotations

import httpx
import pytest

from relaymon.collector.credentials import SourceAuth, SourceCredentials
from relaymon.collector.exceptions import (
    FetchAuthError,
    FetchConnectionError,
    FetchHTTPStatusError,
    FetchParseError,
    FetchTimeoutError,
)
from relaymon.collector.fetcher import MetricsFetcher, parse_wallet_balances
from relaymon.core.config import MetricsConfig
from relaymon.core.types import AuthMode

URL = "http://relayer.test/metrics"

SAMPLE = """\
# HELP wallet_balance The balance of each wallet Hermes manages
# TYPE wallet_balance gauge
wallet_balance{account="osmo1abc",chain="osmosis-1",denom="uosmo",otel_scope_name="hermes"} 12261010
wallet_balance{account="cosmos1xyz",chain="cosmoshub-4",denom="uatom"} 500000
backlog_size{chain="osmosis-1"} 3
"""


# ── Helpers ─────────────────────────────────────────────────────


def _fetcher(handler, **kw: object) -> MetricsFetcher:
    defaults: dict[str, object] = {
        "request_timeout_secs": 2.0,
        "timeout_multipliers": [1.0, 2.0, 3.0],
    }
    defaults.update(kw)
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return MetricsFetcher(MetricsConfig(**defaults), client=client)  # type: ignore[arg-type]


def _text(body: str, status: int = 200, content_type: str = "text/plain; version=0.0.4"):
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(status, text=body, headers={"content-type": content_type})
    return handler


# ── Parser ──────────────────────────────────────────────────────


class TestParseWalletBalances:
    def test_parses_labelled_lines(self) -> None:
        result = parse_wallet_balances(SAMPLE, timestamp=100.0)
        assert result.malformed == 0
        assert len(result.balances) == 2
        first = result.balances[0]
        assert first.account == "osmo1abc"
        assert first.chain == "osmosis-1"
        assert first.denom == "uosmo"
        assert first.scope == "hermes"
        assert first.raw_value == "12261010"
        assert first.timestamp == 100.0

    def test_scope_is_optional(self) -> None:
        result = parse_wallet_balances(SAMPLE)
        assert result.balances[1].scope == ""

    def test_label_order_does_not_matter(self) -> None:
        line = 'wallet_balance{denom="uatom",chain="cosmoshub-4",account="cosmos1xyz"} 7\n'
        result = parse_wallet_balances(line)
        assert len(result.balances) == 1
        assert result.balances[0].account == "cosmos1xyz"

    def test_decimal_values_kept_as_text(self) -> None:
        line = 'wallet_balance{account="a",chain="c",denom="d"} 103061216687315320000.5\n'
        result = parse_wallet_balances(line)
        assert result.balances[0].raw_value == "103061216687315320000.5"

    def test_other_metrics_and_comments_ignored(self) -> None:
        text = "# wallet_balance comment\nbacklog_size 3\nworkers{type=\"packet\"} 2\n"
        result = parse_wallet_balances(text)
        assert result.balances == []
        assert result.malformed == 0

    def test_missing_label_counts_as_malformed(self) -> None:
        text = 'wallet_balance{account="a",denom="d"} 5\n'
        result = parse_wallet_balances(text)
        assert result.balances == []
        assert result.malformed == 1

    def test_non_numeric_value_counts_as_malformed(self) -> None:
        text = 'wallet_balance{account="a",chain="c",denom="d"} NaN\n'
        result = parse_wallet_balances(text)
        assert result.malformed == 1

    def test_malformed_lines_do_not_hide_good_ones(self) -> None:
        text = SAMPLE + 'wallet_balance{account="a"} 1\n'
        result = parse_wallet_balances(text)
        assert len(result.balances) == 2
        assert result.malformed == 1

    def test_empty_text(self) -> None:
        result = parse_wallet_balances("")
        assert result.balances == []
        assert result.malformed == 0


# ── fetch_raw ───────────────────────────────────────────────────


class TestFetchRaw:
    async def test_returns_text(self) -> None:
        fetcher = _fetcher(_text(SAMPLE))
        text = await fetcher.fetch_raw(URL)
        assert "wallet_balance" in text
        assert fetcher.request_count == 1

    async def test_openmetrics_content_type_accepted(self) -> None:
        fetcher = _fetcher(_text(SAMPLE, content_type="application/openmetrics-text"))
        assert await fetcher.fetch_raw(URL)

    async def test_binary_content_rejected(self) -> None:
        fetcher = _fetcher(_text("PNG", content_type="image/png"))
        with pytest.raises(FetchParseError):
            await fetcher.fetch_raw(URL)

    async def test_empty_body_rejected(self) -> None:
        fetcher = _fetcher(_text("   \n"))
        with pytest.raises(FetchParseError):
            await fetcher.fetch_raw(URL)

    async def test_auth_failure(self) -> None:
        fetcher = _fetcher(_text("denied", status=401))
        with pytest.raises(FetchAuthError) as exc_info:
            await fetcher.fetch_raw(URL)
        assert exc_info.value.status_code == 401
        assert exc_info.value.retryable is False

    async def test_server_error(self) -> None:
        fetcher = _fetcher(_text("boom", status=503))
        with pytest.raises(FetchHTTPStatusError) as exc_info:
            await fetcher.fetch_raw(URL)
        assert exc_info.value.status_code == 503
        assert exc_info.value.retryable is True

    async def test_connection_error(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("refused", request=request)

        fetcher = _fetcher(handler)
        with pytest.raises(FetchConnectionError):
            await fetcher.fetch_raw(URL)
        assert fetcher.request_count == 1

    async def test_sends_auth_header(self) -> None:
        seen: dict[str, str] = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["auth"] = request.headers.get("Authorization", "")
            return httpx.Response(200, text=SAMPLE, headers={"content-type": "text/plain"})

        fetcher = _fetcher(handler)
        auth = SourceAuth(mode=AuthMode.BEARER, credentials=SourceCredentials(token="t0k"))
        await fetcher.fetch_raw(URL, auth)
        assert seen["auth"] == "Bearer t0k"


# ── Timeout escalation ──────────────────────────────────────────


class TestTimeoutEscalation:
    async def test_escalates_then_succeeds(self) -> None:
        timeouts: list[float] = []

        def handler(request: httpx.Request) -> httpx.Response:
            timeouts.append(request.extensions["timeout"]["read"])
            if len(timeouts) < 3:
                raise httpx.ReadTimeout("slow", request=request)
            return httpx.Response(200, text=SAMPLE, headers={"content-type": "text/plain"})

        fetcher = _fetcher(handler)
        await fetcher.fetch_raw(URL)
        assert timeouts == [2.0, 4.0, 6.0]
        assert fetcher.request_count == 3

    async def test_all_attempts_time_out(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectTimeout("slow", request=request)

        fetcher = _fetcher(handler)
        with pytest.raises(FetchTimeoutError):
            await fetcher.fetch_raw(URL)
        assert fetcher.request_count == 3

    async def test_per_call_base_timeout(self) -> None:
        timeouts: list[float] = []

        def handler(request: httpx.Request) -> httpx.Response:
            timeouts.append(request.extensions["timeout"]["read"])
            return httpx.Response(200, text=SAMPLE, headers={"content-type": "text/plain"})

        fetcher = _fetcher(handler)
        await fetcher.fetch_raw(URL, timeout=5.0)
        assert timeouts == [5.0]


# ── fetch_json / is_reachable ───────────────────────────────────


class TestFetchJson:
    async def test_decodes_json(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json={"status": "success", "result": []})

        fetcher = _fetcher(handler)
        data = await fetcher.fetch_json(URL)
        assert data["status"] == "success"

    async def test_invalid_json(self) -> None:
        fetcher = _fetcher(_text("not json", content_type="application/json"))
        with pytest.raises(FetchParseError):
            await fetcher.fetch_json(URL)


class TestIsReachable:
    async def test_reachable(self) -> None:
        fetcher = _fetcher(_text("ok"))
        assert await fetcher.is_reachable(URL) is True

    async def test_client_error_still_reachable(self) -> None:
        fetcher = _fetcher(_text("nope", status=404))
        assert await fetcher.is_reachable(URL) is True

    async def test_server_error_unreachable(self) -> None:
        fetcher = _fetcher(_text("down", status=502))
        assert await fetcher.is_reachable(URL) is False

    async def test_transport_error_unreachable(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("refused", request=request)

        fetcher = _fetcher(handler)
        assert await fetcher.is_reachable(URL) is False


class TestClientLifecycle:
    async def test_close_leaves_injected_client_open(self) -> None:
        client = httpx.AsyncClient(transport=httpx.MockTransport(_text("ok")))
        fetcher = MetricsFetcher(MetricsConfig(), client=client)
        await fetcher.close()
        assert not client.is_closed
        await client.aclose()
