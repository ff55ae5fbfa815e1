"""Domain types for the alert delivery subsystem."""

from __future__ import annotations

import time
from typing import Any

from pydantic import BaseModel, Field

from relaymon.core.types import Severity


class AlertMessage(BaseModel):
    """Rendered alert ready for delivery to a notification channel."""

    severity: Severity
    title: str
    body: str = ""
    priority: int = 5
    icon: str = ""
    click_url: str = ""
    alert_type: str = ""
    timestamp: float = Field(default_factory=time.time)
    extras: dict[str, Any] = Field(default_factory=dict)
