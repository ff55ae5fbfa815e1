"""Exception hierarchy for the alert engine."""

from __future__ import annotations


class MonitorError(Exception):
    """Base exception for alerting errors."""


class InvalidAlertError(MonitorError):
    """A manually triggered alert failed validation."""
