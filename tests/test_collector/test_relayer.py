"""Tests for relayer REST retrieval and analysis."""

from __future__ import annotations

import httpx
import pytest

from relaymon.collector.exceptions import FetchConnectionError
from relaymon.collector.fetcher import MetricsFetcher
from relaymon.collector.normalizer import ChainNames
from relaymon.collector.relayer import (
    MAX_CHAIN_DETAILS,
    RelayerSnapshot,
    analyze_relayer,
    fetch_relayer_snapshot,
    worker_display_name,
    worker_status,
)
from relaymon.core.config import MetricsConfig, PendingPacketsConfig
from relaymon.core.types import MetricSource, Severity, SourceKind
from relaymon.monitor.conditions import (
    CHAIN_CONNECTION_ERROR,
    CLIENT_MISBEHAVIOUR,
    HIGH_PENDING_PACKETS,
    MODERATE_PENDING_PACKETS,
)

BASE = "http://hermes.test"


# ── Helpers ─────────────────────────────────────────────────────


def _source(**kw: object) -> MetricSource:
    defaults: dict[str, object] = {
        "id": 7,
        "name": "hermes",
        "url": BASE,
        "kind": SourceKind.RELAYER,
    }
    defaults.update(kw)
    return MetricSource(**defaults)  # type: ignore[arg-type]


def _ok(result: object) -> dict[str, object]:
    return {"status": "success", "result": result}


def _packet(i: int) -> dict[str, object]:
    return {
        "id": i,
        "object": {"type": "Packet", "src_chain_id": "osmosis-1", "dst_chain_id": "cosmoshub-4"},
        "data": None,
    }


def _client(misbehaviour: bool = False) -> dict[str, object]:
    return {
        "id": 99,
        "object": {
            "type": "Client",
            "src_chain_id": "osmosis-1",
            "dst_chain_id": "cosmoshub-4",
            "dst_client_id": "07-tendermint-1",
        },
        "data": {"misbehaviour": misbehaviour},
    }


def _snapshot(workers: dict[str, list], details: dict[str, object] | None = None) -> RelayerSnapshot:
    return RelayerSnapshot(
        chains=_ok(["osmosis-1", "cosmoshub-4"]),
        state=_ok({"workers": workers}),
        chain_details=details or {},
    )


def _analyze(snapshot: RelayerSnapshot, warning: int = 10, critical: int = 50):
    return analyze_relayer(
        _source(),
        snapshot,
        ChainNames(),
        PendingPacketsConfig(warning=warning, critical=critical),
    )


# ── Retrieval ───────────────────────────────────────────────────


class TestFetchRelayerSnapshot:
    async def test_fetches_chains_state_and_details(self) -> None:
        paths: list[str] = []

        def handler(request: httpx.Request) -> httpx.Response:
            paths.append(request.url.path)
            if request.url.path == "/chains":
                return httpx.Response(200, json=_ok(["osmosis-1", "cosmoshub-4"]))
            if request.url.path == "/state":
                return httpx.Response(200, json=_ok({"workers": {}}))
            if request.url.path == "/chain/cosmoshub-4":
                return httpx.Response(500, text="boom")
            return httpx.Response(200, json=_ok({"id": "osmosis-1"}))

        fetcher = MetricsFetcher(
            MetricsConfig(timeout_multipliers=[1.0]),
            client=httpx.AsyncClient(transport=httpx.MockTransport(handler)),
        )
        snapshot = await fetch_relayer_snapshot(fetcher, _source())
        assert paths[:2] == ["/chains", "/state"]
        assert snapshot.chain_details["osmosis-1"]["status"] == "success"
        assert snapshot.chain_details["cosmoshub-4"]["status"] == "error"

    async def test_detail_lookups_are_capped(self) -> None:
        chain_ids = [f"chain-{i}" for i in range(MAX_CHAIN_DETAILS + 5)]

        def handler(request: httpx.Request) -> httpx.Response:
            if request.url.path == "/chains":
                return httpx.Response(200, json=_ok(chain_ids))
            return httpx.Response(200, json=_ok({}))

        fetcher = MetricsFetcher(
            MetricsConfig(timeout_multipliers=[1.0]),
            client=httpx.AsyncClient(transport=httpx.MockTransport(handler)),
        )
        snapshot = await fetch_relayer_snapshot(fetcher, _source())
        assert len(snapshot.chain_details) == MAX_CHAIN_DETAILS

    async def test_chains_failure_propagates(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("refused", request=request)

        fetcher = MetricsFetcher(
            MetricsConfig(timeout_multipliers=[1.0]),
            client=httpx.AsyncClient(transport=httpx.MockTransport(handler)),
        )
        with pytest.raises(FetchConnectionError):
            await fetch_relayer_snapshot(fetcher, _source())


# ── Workers ─────────────────────────────────────────────────────


class TestWorkerHelpers:
    def test_packet_display_name(self) -> None:
        assert worker_display_name(_packet(1), ChainNames()) == "Osmosis → Cosmos Hub"

    def test_wallet_display_name(self) -> None:
        worker = {"object": {"type": "Wallet", "chain_id": "juno-1"}}
        assert worker_display_name(worker, ChainNames()) == "Juno"

    def test_unknown_worker(self) -> None:
        assert worker_display_name({}, ChainNames()) == "Unknown Worker"

    def test_status(self) -> None:
        assert worker_status(_packet(1)) == "unknown"
        assert worker_status(_client(False)) == "healthy"
        assert worker_status(_client(True)) == "warning"


# ── Analysis ────────────────────────────────────────────────────


class TestAnalyzeRelayer:
    def test_healthy(self) -> None:
        analysis = _analyze(_snapshot({"Packet": [_packet(1)], "Client": [_client()]}))
        assert analysis.status == "healthy"
        assert analysis.conditions == []
        assert analysis.total_workers == 2
        assert analysis.workers_by_type == {"Packet": 1, "Client": 1}
        assert [c["name"] for c in analysis.chains] == ["Osmosis", "Cosmos Hub"]

    def test_moderate_pending_packets(self) -> None:
        analysis = _analyze(_snapshot({"Packet": [_packet(i) for i in range(3)]}), warning=2, critical=5)
        assert analysis.status == "warning"
        assert [c.type for c in analysis.conditions] == [MODERATE_PENDING_PACKETS]
        assert analysis.conditions[0].details.count == 3

    def test_high_pending_packets(self) -> None:
        analysis = _analyze(_snapshot({"Packet": [_packet(i) for i in range(5)]}), warning=2, critical=5)
        assert analysis.status == "critical"
        assert analysis.conditions[0].type == HIGH_PENDING_PACKETS
        assert analysis.conditions[0].chain == "all"

    def test_misbehaviour(self) -> None:
        analysis = _analyze(_snapshot({"Client": [_client(misbehaviour=True)]}))
        assert analysis.status == "warning"
        condition = analysis.conditions[0]
        assert condition.type == CLIENT_MISBEHAVIOUR
        assert condition.chain == "osmosis-1"
        assert condition.discriminator == "07-tendermint-1"
        assert condition.severity == Severity.WARNING

    def test_failed_chain_detail(self) -> None:
        snapshot = _snapshot({}, details={
            "osmosis-1": _ok({}),
            "cosmoshub-4": {"status": "error", "result": "timeout"},
        })
        analysis = _analyze(snapshot)
        assert analysis.status == "critical"
        assert len(analysis.conditions) == 1
        assert analysis.conditions[0].type == CHAIN_CONNECTION_ERROR
        assert analysis.conditions[0].chain == "cosmoshub-4"
        assert analysis.conditions[0].details.error == "timeout"

    def test_unsuccessful_payloads(self) -> None:
        snapshot = RelayerSnapshot(chains={"status": "error"}, state="garbage")
        analysis = _analyze(snapshot)
        assert analysis.chains == []
        assert analysis.workers == []
        assert analysis.status == "healthy"

    def test_to_dict(self) -> None:
        analysis = _analyze(_snapshot({"Packet": [_packet(1)]}))
        data = analysis.to_dict()
        assert data["summary"]["totalWorkers"] == 1
        assert data["alertsCount"] == 0
