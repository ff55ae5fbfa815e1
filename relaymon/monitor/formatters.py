"""Pure functions that render AlertRecords into titles, markdown bodies and AlertMessages."""

from __future__ import annotations

import datetime

from relaymon.core.types import AlertRecord, Severity
from relaymon.monitor.types import AlertMessage

# ── Severity mappings ───────────────────────────────────────────

_ICONS: dict[Severity, str] = {
    Severity.INFO: "ℹ️",
    Severity.WARNING: "⚠️",
    Severity.CRITICAL: "🚨",
}

# Gotify priorities: 8 high, 5 normal, 2 low.
_PRIORITIES: dict[Severity, int] = {
    Severity.INFO: 2,
    Severity.WARNING: 5,
    Severity.CRITICAL: 8,
}

_DEFAULT_ICON = "📊"


def alert_icon(severity: Severity) -> str:
    return _ICONS.get(severity, _DEFAULT_ICON)


def gotify_priority(severity: Severity) -> int:
    return _PRIORITIES.get(severity, 5)


def _fmt_time(ts: float) -> str:
    dt = datetime.datetime.fromtimestamp(ts, tz=datetime.timezone.utc)
    return dt.strftime("%Y-%m-%d %H:%M:%S UTC")


# ── Formatters ──────────────────────────────────────────────────


def format_alert_title(record: AlertRecord) -> str:
    """``"🚨 IBC Monitor Alert [osmosis-1]"``; the chain part is omitted when unset."""
    chain_part = f" [{record.chain_name}]" if record.chain_name else ""
    return f"{alert_icon(record.severity)} IBC Monitor Alert{chain_part}"


def format_alert_message(record: AlertRecord) -> str:
    """Markdown body for push notifications and dashboard toasts."""
    lines = [f"**{record.type}**"]
    if record.chain_name:
        lines.append(f"**Chain:** {record.chain_name}")
    lines.append(f"**Severity:** {record.severity.label.upper()}")
    lines.append(f"**Details:** {record.message}")
    lines.append(f"**Time:** {_fmt_time(record.created_at)}")

    data = record.data
    if record.type == "client_misbehaviour" and data.client_id:
        lines.append(f"**Client:** {data.client_id}")
    if record.type in ("high_pending_packets", "moderate_pending_packets") and data.count:
        lines.append(f"**Count:** {data.count} packets")
    if record.type == "low_balance" and data.address:
        lines.append(f"**Wallet:** {data.address}")

    return "\n".join(lines)


def format_alert(record: AlertRecord, base_url: str = "") -> AlertMessage:
    """Convert an AlertRecord to an AlertMessage."""
    return AlertMessage(
        severity=record.severity,
        title=format_alert_title(record),
        body=format_alert_message(record),
        priority=gotify_priority(record.severity),
        icon=alert_icon(record.severity),
        click_url=f"{base_url.rstrip('/')}/alerts" if base_url else "",
        alert_type=record.type,
        timestamp=record.created_at,
        extras=record.data.to_dict(),
    )


def alert_event_payload(record: AlertRecord, base_url: str = "") -> dict[str, object]:
    """Payload pushed on the live ``new_alert`` / ``critical_alert`` events."""
    msg = format_alert(record, base_url)
    return {
        "id": record.id,
        "type": record.type,
        "chain": record.chain_name,
        "severity": record.severity.label,
        "message": record.message,
        "timestamp": record.created_at,
        "formatted": {
            "title": msg.title,
            "message": msg.body,
            "icon": msg.icon,
        },
    }


def format_test_notification(username: str, ts: float) -> AlertMessage:
    """Message sent when a user checks their push settings."""
    return AlertMessage(
        severity=Severity.WARNING,
        title="IBC Monitor Test",
        body=f"Test notification from IBC Monitor.\nUser: {username}\nTime: {_fmt_time(ts)}",
        priority=5,
        icon=_DEFAULT_ICON,
        alert_type="test_notification",
        timestamp=ts,
    )
