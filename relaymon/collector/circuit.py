"""Circuit breaker that fast-fails collection after sustained failures."""

from __future__ import annotations

import time
from collections.abc import Callable

import structlog

from relaymon.core.config import CircuitBreakerConfig

logger = structlog.stdlib.get_logger()


class CircuitBreaker:
    """Open once ``failure_threshold`` consecutive failures have been seen and
    the most recent one is younger than ``window_secs``.

    The breaker closes by itself when the window elapses, and resets on the
    first success.
    """

    def __init__(
        self,
        config: CircuitBreakerConfig | None = None,
        clock: Callable[[], float] = time.time,
        name: str = "",
    ) -> None:
        self._config = config or CircuitBreakerConfig()
        self._clock = clock
        self._name = name
        self._failures = 0
        self._last_failure: float | None = None

    @property
    def failure_count(self) -> int:
        return self._failures

    @property
    def last_failure_time(self) -> float | None:
        return self._last_failure

    @property
    def is_open(self) -> bool:
        if self._failures < self._config.failure_threshold or self._last_failure is None:
            return False
        return (self._clock() - self._last_failure) < self._config.window_secs

    def record_failure(self) -> None:
        was_open = self.is_open
        self._failures += 1
        self._last_failure = self._clock()
        if not was_open and self.is_open:
            logger.warning(
                "circuit_breaker_opened",
                source=self._name,
                failures=self._failures,
                window_secs=self._config.window_secs,
            )

    def record_success(self) -> None:
        if self._failures:
            logger.info("circuit_breaker_reset", source=self._name, failures=self._failures)
        self._failures = 0
        self._last_failure = None
