"""Alert engine — conditions, deduplication, routing and Gotify delivery."""

from relaymon.monitor.channels import GotifyChannel, NotificationChannel
from relaymon.monitor.conditions import (
    balance_severity,
    chain_connection_condition,
    client_misbehaviour_condition,
    low_balance_condition,
    pending_packets_condition,
    source_connectivity_condition,
    value_equivalent,
)
from relaymon.monitor.dedup import DedupWindow, dedup_key
from relaymon.monitor.engine import AlertEngine
from relaymon.monitor.exceptions import InvalidAlertError, MonitorError
from relaymon.monitor.formatters import format_alert, format_alert_message, format_alert_title
from relaymon.monitor.routing import should_deliver
from relaymon.monitor.types import AlertMessage

__all__ = [
    "AlertEngine",
    "AlertMessage",
    "DedupWindow",
    "GotifyChannel",
    "InvalidAlertError",
    "MonitorError",
    "NotificationChannel",
    "balance_severity",
    "chain_connection_condition",
    "client_misbehaviour_condition",
    "dedup_key",
    "format_alert",
    "format_alert_message",
    "format_alert_title",
    "low_balance_condition",
    "pending_packets_condition",
    "should_deliver",
    "source_connectivity_condition",
    "value_equivalent",
]
