"""Per-subscriber routing gates."""

from __future__ import annotations

from relaymon.core.types import AlertRecord, NotificationPreference
from relaymon.monitor.conditions import (
    HIGH_PENDING_PACKETS,
    LOW_BALANCE,
    MODERATE_PENDING_PACKETS,
)


def should_deliver(record: AlertRecord, pref: NotificationPreference | None) -> bool:
    """Whether ``record`` should be pushed to the subscriber owning ``pref``.

    Gates, in order: delivery configured and enabled, minimum severity,
    disabled types, disabled chains, then the optional threshold overrides.
    An override that is not set never blocks delivery.
    """
    if pref is None or not pref.enabled or not pref.gotify_url or not pref.gotify_token:
        return False

    t = pref.thresholds
    if record.severity < t.min_severity:
        return False
    if record.type in t.disabled_types:
        return False
    if record.chain_name and record.chain_name in t.disabled_chains:
        return False

    data = record.data
    if record.type == LOW_BALANCE and t.balance_threshold is not None:
        if data.value_equivalent is not None and data.value_equivalent >= t.balance_threshold:
            return False
    if record.type == MODERATE_PENDING_PACKETS and t.pending_warning is not None:
        if data.count is not None and data.count < t.pending_warning:
            return False
    if record.type == HIGH_PENDING_PACKETS and t.pending_critical is not None:
        if data.count is not None and data.count < t.pending_critical:
            return False
    if record.type == "failed_packets" and t.failed_packets is not None:
        if data.count is not None and data.count < t.failed_packets:
            return False

    return True
