"""Core module — config, types, logging."""

from relaymon.core.config import Settings, get_settings, load_settings, reset_settings
from relaymon.core.logging import setup_logging
from relaymon.core.types import (
    AlertCondition,
    AlertDetails,
    AlertRecord,
    Identity,
    MetricSource,
    NormalizedBalance,
    RawBalance,
    Role,
    Severity,
    WalletRecord,
)

__all__ = [
    "AlertCondition",
    "AlertDetails",
    "AlertRecord",
    "Identity",
    "MetricSource",
    "NormalizedBalance",
    "RawBalance",
    "Role",
    "Settings",
    "Severity",
    "WalletRecord",
    "get_settings",
    "load_settings",
    "reset_settings",
    "setup_logging",
]
