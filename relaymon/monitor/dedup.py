"""Time-windowed alert deduplication."""

from __future__ import annotations

import time
from collections.abc import Callable

from relaymon.core.types import AlertCondition, AlertRecord


def dedup_key(alert: AlertCondition | AlertRecord) -> str:
    """``type:chain-or-global:severity[:discriminator]``."""
    chain = alert.chain if isinstance(alert, AlertCondition) else alert.chain_name
    parts = [alert.type, chain or "global", alert.severity.label]
    if alert.discriminator:
        parts.append(alert.discriminator)
    return ":".join(parts)


class DedupWindow:
    """Remembers when each alert key was last dispatched.

    State is in-memory only and is lost on restart.
    """

    def __init__(
        self,
        window_secs: float = 300.0,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._window = window_secs
        self._clock = clock
        self._last_sent: dict[str, float] = {}

    def __len__(self) -> int:
        return len(self._last_sent)

    def is_duplicate(self, key: str) -> bool:
        last = self._last_sent.get(key)
        return last is not None and (self._clock() - last) < self._window

    def mark(self, key: str) -> None:
        self._last_sent[key] = self._clock()

    def check_and_mark(self, key: str) -> bool:
        """Return True if ``key`` is fresh (and record it), False if suppressed."""
        if self.is_duplicate(key):
            return False
        self.mark(key)
        return True

    def evict_older_than(self, max_age_secs: float) -> int:
        cutoff = self._clock() - max_age_secs
        stale = [k for k, ts in self._last_sent.items() if ts < cutoff]
        for k in stale:
            del self._last_sent[k]
        return len(stale)

    def entries(self) -> list[tuple[str, float]]:
        return sorted(self._last_sent.items(), key=lambda kv: kv[1], reverse=True)
