"""Exception hierarchy for metrics collection."""

from __future__ import annotations


class CollectorError(Exception):
    """Base exception for all collection errors."""


class FetchError(CollectorError):
    """A metrics or lookup request failed."""

    retryable = True


class FetchTimeoutError(FetchError):
    """The request did not complete within its timeout."""


class FetchConnectionError(FetchError):
    """The remote endpoint could not be reached."""


class FetchHTTPStatusError(FetchError):
    """The remote endpoint answered with a non-success status."""

    def __init__(self, status_code: int, message: str = "") -> None:
        self.status_code = status_code
        super().__init__(message or f"HTTP {status_code}")


class FetchAuthError(FetchHTTPStatusError):
    """401/403 from the remote endpoint. Never retried."""

    retryable = False


class FetchParseError(FetchError):
    """Empty, non-text or otherwise malformed payload."""

    retryable = False


class RetriesExhaustedError(CollectorError):
    """All retry attempts failed."""

    def __init__(self, attempts: int, last_error: BaseException | None = None) -> None:
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(f"Gave up after {attempts} attempts: {last_error}")
