"""Relayer REST state retrieval and analysis.

Relayer sources expose ``/chains``, ``/state`` and ``/chain/{id}``, each
wrapped as ``{"status": "success", "result": ...}``.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Any

import structlog

from relaymon.collector.credentials import SourceAuth
from relaymon.collector.exceptions import FetchError
from relaymon.collector.fetcher import MetricsFetcher
from relaymon.collector.normalizer import ChainNames
from relaymon.core.config import PendingPacketsConfig
from relaymon.core.types import AlertCondition, MetricSource, Severity
from relaymon.monitor.conditions import (
    chain_connection_condition,
    client_misbehaviour_condition,
    pending_packets_condition,
)

logger = structlog.stdlib.get_logger()

MAX_CHAIN_DETAILS = 10


@dataclass
class RelayerSnapshot:
    """Raw responses from one relayer poll."""

    chains: Any = None
    state: Any = None
    chain_details: dict[str, Any] = field(default_factory=dict)


@dataclass
class RelayerAnalysis:
    source_id: int
    source_name: str
    status: str = "healthy"
    chains: list[dict[str, Any]] = field(default_factory=list)
    workers: list[dict[str, Any]] = field(default_factory=list)
    workers_by_type: dict[str, int] = field(default_factory=dict)
    conditions: list[AlertCondition] = field(default_factory=list)
    timestamp: float = field(default_factory=time.time)

    @property
    def total_workers(self) -> int:
        return len(self.workers)

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status,
            "chains": self.chains,
            "summary": {
                "totalWorkers": self.total_workers,
                "workersByType": self.workers_by_type,
            },
            "alertsCount": len(self.conditions),
        }


def _ok(body: Any) -> bool:
    return isinstance(body, dict) and body.get("status") == "success"


async def fetch_relayer_snapshot(
    fetcher: MetricsFetcher,
    source: MetricSource,
    auth: SourceAuth | None = None,
) -> RelayerSnapshot:
    """Fetch chains and state, then per-chain detail for the first few chains.

    Failures of ``/chains`` or ``/state`` propagate. A failed chain detail is
    recorded as an error entry so the analysis can raise a connection alert.
    """
    base = source.url.rstrip("/")
    timeout = source.timeout_secs
    snapshot = RelayerSnapshot(
        chains=await fetcher.fetch_json(f"{base}/chains", auth, timeout),
        state=await fetcher.fetch_json(f"{base}/state", auth, timeout),
    )

    if _ok(snapshot.chains) and isinstance(snapshot.chains.get("result"), list):
        for chain_id in snapshot.chains["result"][:MAX_CHAIN_DETAILS]:
            try:
                snapshot.chain_details[chain_id] = await fetcher.fetch_json(
                    f"{base}/chain/{chain_id}", auth, timeout
                )
            except FetchError as exc:
                logger.warning(
                    "relayer_chain_detail_failed",
                    source=source.name,
                    chain=chain_id,
                    error=str(exc),
                )
                snapshot.chain_details[chain_id] = {"status": "error", "result": str(exc)}
    return snapshot


def worker_display_name(worker: dict[str, Any], names: ChainNames) -> str:
    obj = worker.get("object")
    if not isinstance(obj, dict):
        return "Unknown Worker"
    kind = obj.get("type")
    if kind in ("Client", "Packet"):
        return f"{names.get(obj.get('src_chain_id', ''))} → {names.get(obj.get('dst_chain_id', ''))}"
    if kind == "Wallet":
        return names.get(obj.get("chain_id", ""))
    return str(kind)


def worker_status(worker: dict[str, Any]) -> str:
    data = worker.get("data")
    if not data:
        return "unknown"
    obj = worker.get("object") or {}
    if obj.get("type") == "Client" and isinstance(data, dict) and data.get("misbehaviour"):
        return "warning"
    return "healthy"


def analyze_relayer(
    source: MetricSource,
    snapshot: RelayerSnapshot,
    names: ChainNames,
    pending: PendingPacketsConfig,
) -> RelayerAnalysis:
    """Summarize chains and workers and derive alert conditions."""
    analysis = RelayerAnalysis(source_id=source.id, source_name=source.name)

    if _ok(snapshot.chains) and isinstance(snapshot.chains.get("result"), list):
        analysis.chains = [
            {"id": cid, "name": names.get(cid), "status": "active"}
            for cid in snapshot.chains["result"]
        ]

    workers: dict[str, Any] = {}
    if _ok(snapshot.state) and isinstance(snapshot.state.get("result"), dict):
        workers = snapshot.state["result"].get("workers") or {}

    for worker_type, worker_list in workers.items():
        items = worker_list if isinstance(worker_list, list) else []
        analysis.workers_by_type[worker_type] = len(items)
        for worker in items:
            if not isinstance(worker, dict):
                continue
            analysis.workers.append({
                "id": worker.get("id"),
                "type": worker_type,
                "object": worker.get("object"),
                "displayName": worker_display_name(worker, names),
                "status": worker_status(worker),
            })
            data = worker.get("data")
            if worker_type == "Client" and isinstance(data, dict) and data.get("misbehaviour"):
                analysis.conditions.append(client_misbehaviour_condition(worker, source.name))

    if "Packet" in analysis.workers_by_type:
        condition = pending_packets_condition(
            analysis.workers_by_type["Packet"],
            warning=pending.warning,
            critical=pending.critical,
            source=source.name,
        )
        if condition is not None:
            analysis.conditions.append(condition)

    for chain_id, detail in snapshot.chain_details.items():
        if not _ok(detail):
            analysis.conditions.append(chain_connection_condition(chain_id, detail, source.name))

    severities = {c.severity for c in analysis.conditions}
    if Severity.CRITICAL in severities:
        analysis.status = "critical"
    elif Severity.WARNING in severities:
        analysis.status = "warning"
    return analysis
