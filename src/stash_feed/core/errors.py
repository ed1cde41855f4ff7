"""
Error taxonomy for the stash feed client.

Retryable conditions (``TransientNetworkError``, ``RateLimited``) are
resolved inside the fetcher. Everything else reaches the pagination driver,
which stops polling and re-raises.
"""
from typing import Optional


class FeedError(Exception):
    """Base class for all feed client errors."""


class TransientNetworkError(FeedError):
    """Connection-level failure while talking to the feed."""

    def __init__(self, endpoint: str, cause: BaseException):
        self.endpoint = endpoint
        self.cause = cause
        super().__init__(f"Network error on {endpoint}: {cause!r}")


class RateLimited(FeedError):
    """The server answered 429 and asked us to wait ``retry_after`` seconds."""

    def __init__(self, endpoint: str, retry_after: float, unexpected: bool = False):
        self.endpoint = endpoint
        self.retry_after = retry_after
        self.unexpected = unexpected
        super().__init__(
            f"Rate limited on {endpoint}, retry after {retry_after:g}s"
        )


class UnexpectedStatus(FeedError):
    """Non-2xx, non-429 response. Not retried."""

    def __init__(self, endpoint: str, status: int, body: str = ""):
        self.endpoint = endpoint
        self.status = status
        self.body = body
        super().__init__(f"Unexpected HTTP {status} from {endpoint}")


class RetryBudgetExhausted(FeedError):
    """The fetcher ran out of attempts for one request."""

    def __init__(
        self,
        endpoint: str,
        attempts: int,
        last_error: Optional[FeedError] = None
    ):
        self.endpoint = endpoint
        self.attempts = attempts
        self.last_error = last_error
        message = f"Fetch failed on endpoint {endpoint} after {attempts} attempts"
        if last_error is not None:
            message += f" (last error: {last_error})"
        super().__init__(message)


class ValidationError(FeedError):
    """Response body does not match the feed's schema contract."""

    def __init__(self, reason: str):
        self.reason = reason
        super().__init__(f"Invalid feed page: {reason}")


class SinkError(FeedError):
    """The sink could not accept a page of records."""


class FetchCancelled(FeedError):
    """The caller asked the client to stop while a fetch was in progress."""
