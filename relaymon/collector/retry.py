"""Retry policy with capped exponential backoff."""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import TypeVar

import structlog

from relaymon.collector.exceptions import FetchError, RetriesExhaustedError
from relaymon.core.config import RetryConfig

logger = structlog.stdlib.get_logger()

T = TypeVar("T")

Sleeper = Callable[[float], Awaitable[None]]


@dataclass(frozen=True)
class RetryPolicy:
    """``max_retries`` retries after the first attempt, so ``max_retries + 1`` calls."""

    max_retries: int = 3
    base_delay: float = 1.0
    multiplier: float = 2.0
    max_delay: float = 300.0

    @classmethod
    def from_config(cls, cfg: RetryConfig) -> RetryPolicy:
        return cls(
            max_retries=cfg.max_retries,
            base_delay=cfg.base_delay_secs,
            multiplier=cfg.multiplier,
            max_delay=cfg.max_delay_secs,
        )

    @property
    def max_attempts(self) -> int:
        return self.max_retries + 1

    def delay_for(self, attempt: int) -> float:
        """Delay before retry number ``attempt`` (1-based)."""
        if attempt < 1:
            return 0.0
        return min(self.base_delay * self.multiplier ** (attempt - 1), self.max_delay)


def _is_retryable(exc: BaseException) -> bool:
    if isinstance(exc, FetchError):
        return exc.retryable
    return True


async def retry_async(
    fn: Callable[[], Awaitable[T]],
    policy: RetryPolicy,
    *,
    operation: str = "operation",
    sleep: Sleeper = asyncio.sleep,
    on_retry: Callable[[int, BaseException, float], None] | None = None,
) -> T:
    """Call ``fn`` until it succeeds or the policy is exhausted.

    Non-retryable fetch errors (auth, malformed payload) end the loop at once.

    Raises:
        RetriesExhaustedError: Every attempt failed.
    """
    last_error: BaseException | None = None
    for attempt in range(1, policy.max_attempts + 1):
        try:
            return await fn()
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            last_error = exc
            logger.warning(
                "retry_attempt_failed",
                operation=operation,
                attempt=attempt,
                max_attempts=policy.max_attempts,
                error=str(exc),
            )
            if not _is_retryable(exc) or attempt >= policy.max_attempts:
                raise RetriesExhaustedError(attempt, exc) from exc
            delay = policy.delay_for(attempt)
            if on_retry is not None:
                on_retry(attempt, exc, delay)
            await sleep(delay)
    raise RetriesExhaustedError(policy.max_attempts, last_error)
