"""Condition detectors — turn observations into AlertConditions.

Each function is pure: it returns a condition (or None) and never persists,
deduplicates or delivers anything.
"""

from __future__ import annotations

from decimal import Decimal
from typing import Any

from relaymon.core.types import (
    AlertCondition,
    AlertDetails,
    MetricSource,
    NormalizedBalance,
    Severity,
)

LOW_BALANCE = "low_balance"
HIGH_PENDING_PACKETS = "high_pending_packets"
MODERATE_PENDING_PACKETS = "moderate_pending_packets"
CLIENT_MISBEHAVIOUR = "client_misbehaviour"
CHAIN_CONNECTION_ERROR = "chain_connection_error"
SOURCE_CONNECTIVITY = "source_connectivity"

PENDING_PACKET_TYPES = frozenset({HIGH_PENDING_PACKETS, MODERATE_PENDING_PACKETS})


def balance_severity(
    value: float | Decimal,
    critical_below: float,
    warning_below: float,
) -> Severity | None:
    """Strictly below ``critical_below`` is critical, below ``warning_below`` a warning."""
    v = float(value)
    if v < critical_below:
        return Severity.CRITICAL
    if v < warning_below:
        return Severity.WARNING
    return None


def value_equivalent(balance: NormalizedBalance, unit_values: dict[str, float]) -> float:
    """Balance expressed in abstract value units (per-denom multiplier, default 1.0)."""
    return float(balance.balance) * unit_values.get(balance.denom, 1.0)


def low_balance_condition(
    balance: NormalizedBalance,
    value: float,
    critical_below: float,
    warning_below: float,
    wallet_id: int | None = None,
) -> AlertCondition | None:
    severity = balance_severity(value, critical_below, warning_below)
    if severity is None:
        return None
    threshold = critical_below if severity == Severity.CRITICAL else warning_below
    return AlertCondition(
        type=LOW_BALANCE,
        severity=severity,
        chain=balance.chain,
        message=(
            f"Low balance alert: {balance.chain_name} {balance.symbol} wallet "
            f"has only {value:.2f} remaining"
        ),
        discriminator=f"{balance.account}:{balance.denom}",
        details=AlertDetails(
            address=balance.account,
            denom=balance.denom,
            balance=float(balance.balance),
            value_equivalent=value,
            threshold=threshold,
            wallet_id=wallet_id,
        ),
    )


def pending_packets_condition(
    count: int,
    warning: int,
    critical: int,
    source: str = "",
) -> AlertCondition | None:
    if count >= critical:
        return AlertCondition(
            type=HIGH_PENDING_PACKETS,
            severity=Severity.CRITICAL,
            chain="all",
            message=f"{count} packets pending (critical threshold: {critical})",
            discriminator=source or None,
            details=AlertDetails(count=count, threshold=critical, source=source or None),
        )
    if count >= warning:
        return AlertCondition(
            type=MODERATE_PENDING_PACKETS,
            severity=Severity.WARNING,
            chain="all",
            message=f"{count} packets pending (warning threshold: {warning})",
            discriminator=source or None,
            details=AlertDetails(count=count, threshold=warning, source=source or None),
        )
    return None


def client_misbehaviour_condition(worker: dict[str, Any], source: str = "") -> AlertCondition:
    obj = worker.get("object") or {}
    client_id = obj.get("dst_client_id")
    return AlertCondition(
        type=CLIENT_MISBEHAVIOUR,
        severity=Severity.WARNING,
        chain=obj.get("src_chain_id"),
        message=(
            "Client misbehaviour detected: "
            f"{obj.get('dst_chain_id')} -> {obj.get('src_chain_id')}"
        ),
        discriminator=client_id,
        details=AlertDetails(
            source=source or None,
            client_id=client_id,
            src_chain_id=obj.get("src_chain_id"),
            dst_chain_id=obj.get("dst_chain_id"),
            worker_id=worker.get("id"),
        ),
    )


def chain_connection_condition(
    chain_id: str, detail: Any, source: str = ""
) -> AlertCondition:
    error = None
    if isinstance(detail, dict):
        error = detail.get("result") if detail.get("status") == "error" else detail.get("status")
    return AlertCondition(
        type=CHAIN_CONNECTION_ERROR,
        severity=Severity.CRITICAL,
        chain=chain_id,
        message=f"Failed to connect to chain {chain_id}",
        details=AlertDetails(source=source or None, error=str(error) if error else None),
    )


def source_connectivity_condition(source: MetricSource, error: BaseException | str) -> AlertCondition:
    reason = str(error)
    return AlertCondition(
        type=SOURCE_CONNECTIVITY,
        severity=Severity.CRITICAL,
        chain=None,
        message=f"Failed to connect to metrics source: {source.name} ({reason})",
        discriminator=source.name,
        details=AlertDetails(source=source.name, url=source.url, error=reason),
    )
