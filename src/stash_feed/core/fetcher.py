"""
Budget-aware HTTP fetcher with bounded retries.

This module implements the single outbound request path of the feed client:
- Waits while the server-reported budget is exhausted
- Sends the request with default credential and User-Agent headers
- Feeds every response's rate limit headers back into the budget tracker
- Retries 429 responses (honoring Retry-After) and connection failures
- Gives up with RetryBudgetExhausted after a fixed number of attempts
"""
import asyncio
import logging
import random
import threading
import time
from dataclasses import dataclass, field
from email.utils import parsedate_to_datetime
from enum import Enum
from typing import Any, Dict, Mapping, Optional

import aiohttp

from .config import FeedConfig
from .datasource import RequestSpec
from .errors import (
    FeedError,
    FetchCancelled,
    RateLimited,
    RetryBudgetExhausted,
    TransientNetworkError,
    UnexpectedStatus,
)
from .rate_budget import RateBudgetTracker, TimeProvider
from .telemetry import TelemetryDecision, create_event, get_recorder

logger = logging.getLogger(__name__)

THROTTLED_STATUS = 429


def deep_merge(base: Dict[str, Any], override: Mapping[str, Any]) -> Dict[str, Any]:
    """
    Merge ``override`` into a copy of ``base``.

    Nested dicts are merged recursively; any other value in ``override``
    replaces the one in ``base``.
    """
    result = dict(base)
    for key, value in override.items():
        if isinstance(value, Mapping) and isinstance(result.get(key), Mapping):
            result[key] = deep_merge(dict(result[key]), value)
        else:
            result[key] = value
    return result


@dataclass
class FetchResponse:
    """
    A successful (2xx) response.

    Attributes:
        url: URL that was requested
        status: HTTP status code
        headers: Response headers (case-insensitive)
        body: Raw response body
        attempts: Number of attempts it took
    """

    url: str
    status: int
    headers: Mapping[str, str]
    body: bytes
    attempts: int = 1

    def text(self, encoding: str = "utf-8") -> str:
        return self.body.decode(encoding, errors="replace")


class AttemptOutcome(Enum):
    """Result tag for one iteration of the retry loop."""
    SUCCESS = "success"
    RETRY = "retry"
    FATAL = "fatal"


@dataclass
class AttemptResult:
    outcome: AttemptOutcome
    response: Optional[FetchResponse] = None
    error: Optional[FeedError] = None
    backoff: float = 0.0  # extra sleep before the next attempt


@dataclass
class FetcherStats:
    """Counters for fetcher telemetry."""

    requests_total: int = 0
    requests_429: int = 0
    unexpected_429: int = 0
    transient_errors: int = 0
    budget_waits: int = 0
    total_wait_time: float = 0.0
    exhausted: int = 0

    def to_dict(self) -> Dict[str, Any]:
        """Convert stats to dictionary."""
        return {
            "requests_total": self.requests_total,
            "requests_429": self.requests_429,
            "unexpected_429": self.unexpected_429,
            "transient_errors": self.transient_errors,
            "budget_waits": self.budget_waits,
            "total_wait_time": self.total_wait_time,
            "exhausted": self.exhausted,
        }


class ThrottledFetcher:
    """
    Sends one logical request at a time while respecting the server budget.

    The retry loop is explicit: ``attempt`` is incremented before every
    request, and once ``max_attempts`` requests have been made without a
    definitive answer the fetch fails with RetryBudgetExhausted.
    """

    def __init__(
        self,
        session: aiohttp.ClientSession,
        token: str,
        config: Optional[FeedConfig] = None,
        tracker: Optional[RateBudgetTracker] = None,
        time_provider: Optional[TimeProvider] = None,
        cancel_event: Optional[asyncio.Event] = None,
        feed_name: str = "public-stash-tabs",
    ):
        """
        Initialize fetcher.

        Args:
            session: aiohttp session used for all requests
            token: Bearer token for the Authorization header
            config: Feed configuration (defaults if omitted)
            tracker: Budget tracker, may be shared between fetchers that
                use the same credential
            time_provider: Optional time provider (defaults to the tracker's)
            cancel_event: Set to make the fetcher stop at its next
                suspension point
            feed_name: Name used in telemetry events
        """
        self.session = session
        self.config = config or FeedConfig()
        self.tracker = tracker or RateBudgetTracker(
            headers=self.config.headers,
            time_provider=time_provider,
        )
        self.time_provider = time_provider or self.tracker.time_provider
        self.cancel_event = cancel_event or asyncio.Event()
        self.feed_name = feed_name

        self.default_options: Dict[str, Any] = {
            "headers": {
                "Authorization": f"Bearer {token}",
                "User-Agent": self.config.user_agent,
            },
        }
        if self.config.request_timeout is not None:
            self.default_options["timeout"] = aiohttp.ClientTimeout(
                total=self.config.request_timeout
            )

        self._stats = FetcherStats()
        self._stats_lock = threading.Lock()

    def _check_cancelled(self) -> None:
        if self.cancel_event.is_set():
            raise FetchCancelled("Fetch cancelled")

    def _parse_retry_after(self, retry_after: Optional[str]) -> float:
        """
        Parse Retry-After header value.

        Args:
            retry_after: Header value (either seconds or HTTP-date)

        Returns:
            Seconds to wait including the padding; never less than the padding
        """
        padding = self.config.retry.retry_after_padding
        if not retry_after:
            return float(padding)

        try:
            return max(0.0, float(retry_after)) + padding
        except ValueError:
            pass

        try:
            retry_date = parsedate_to_datetime(retry_after)
            wait_time = max(0.0, retry_date.timestamp() - self.time_provider.now())
            return wait_time + padding
        except (ValueError, TypeError):
            logger.warning(f"Malformed Retry-After header {retry_after!r}, ignoring")
            return float(padding)

    def _calculate_backoff(self, attempt: int, jitter: bool = True) -> float:
        """
        Calculate exponential backoff with optional jitter.

        Args:
            attempt: Attempt number that just failed (1-based)
            jitter: Whether to add random jitter

        Returns:
            Seconds to wait
        """
        retry = self.config.retry
        backoff = min(retry.base_backoff * (2 ** (attempt - 1)), retry.max_backoff)

        if jitter:
            # Add +/-25% jitter
            backoff *= 0.75 + random.random() * 0.5

        return backoff

    def _relevant_headers(self, headers: Mapping[str, str]) -> Dict[str, str]:
        relevant = {}
        names = self.config.headers
        for name in (names.rule, names.state, names.retry_after):
            if name in headers:
                relevant[name] = headers[name]
        return relevant

    def _build_options(self, request: RequestSpec) -> Dict[str, Any]:
        """Merge caller headers and options over the fetcher defaults."""
        overrides = deep_merge({"headers": dict(request.headers)}, request.options)
        return deep_merge(self.default_options, overrides)

    async def _wait_for_budget(self, request: RequestSpec, attempt: int) -> None:
        """Sleep until the tracker is no longer limited."""
        while self.tracker.is_limited():
            self._check_cancelled()
            wait_time = self.tracker.time_until_reset()

            logger.debug(f"Rate budget exhausted, sleeping {wait_time:.2f}s")

            with self._stats_lock:
                self._stats.budget_waits += 1
                self._stats.total_wait_time += wait_time

            get_recorder().record(create_event(
                feed=self.feed_name,
                endpoint=request.url,
                decision=TelemetryDecision.WAIT_BUDGET,
                sleep_s=wait_time,
                attempt=attempt,
                remaining=self.tracker.remaining,
            ))

            await self.time_provider.sleep(wait_time)

    async def _attempt(self, request: RequestSpec, attempt: int) -> AttemptResult:
        """Send the request once and classify the outcome."""
        self._check_cancelled()

        had_budget = self.tracker.remaining > 0
        options = self._build_options(request)
        headers = options.pop("headers", {})

        with self._stats_lock:
            self._stats.requests_total += 1

        start = time.perf_counter()
        try:
            async with self.session.request(
                request.method,
                request.url,
                params=request.query_params or None,
                headers=headers,
                **options,
            ) as response:
                body = await response.read()
                status = response.status
                response_headers = response.headers
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            error = TransientNetworkError(request.url, e)
            backoff = self._calculate_backoff(attempt)

            with self._stats_lock:
                self._stats.transient_errors += 1

            logger.warning(
                f"{error} (attempt {attempt}/{self.config.retry.max_attempts}), "
                f"backing off {backoff:.2f}s"
            )
            get_recorder().record(create_event(
                feed=self.feed_name,
                endpoint=request.url,
                decision=TelemetryDecision.BACKOFF_TRANSIENT,
                sleep_s=backoff,
                attempt=attempt,
                remaining=self.tracker.remaining,
            ))
            return AttemptResult(AttemptOutcome.RETRY, error=error, backoff=backoff)

        elapsed_ms = (time.perf_counter() - start) * 1000.0
        relevant_headers = self._relevant_headers(response_headers)

        # Keep the estimate current even for error responses
        budget = self.tracker.observe(response_headers)

        if status == THROTTLED_STATUS:
            retry_after = self._parse_retry_after(
                response_headers.get(self.config.headers.retry_after)
            )
            budget = self.tracker.force_limited(retry_after)

            with self._stats_lock:
                self._stats.requests_429 += 1
                if had_budget:
                    self._stats.unexpected_429 += 1

            if had_budget:
                logger.warning(
                    f"Unexpectedly rate limited on {request.url}, "
                    f"retrying in {retry_after:g}s"
                )
                decision = TelemetryDecision.UNEXPECTED_429
            else:
                logger.warning(f"Rate limit exceeded, retrying in {retry_after:g}s")
                decision = TelemetryDecision.BACKOFF_429

            get_recorder().record(create_event(
                feed=self.feed_name,
                endpoint=request.url,
                decision=decision,
                status=status,
                elapsed_ms=elapsed_ms,
                sleep_s=retry_after,
                headers_seen=relevant_headers,
                attempt=attempt,
                remaining=budget.remaining,
            ))
            return AttemptResult(
                AttemptOutcome.RETRY,
                error=RateLimited(request.url, retry_after, unexpected=had_budget),
            )

        get_recorder().record(create_event(
            feed=self.feed_name,
            endpoint=request.url,
            decision=TelemetryDecision.RESPONSE,
            status=status,
            elapsed_ms=elapsed_ms,
            headers_seen=relevant_headers,
            attempt=attempt,
            remaining=budget.remaining,
        ))

        if not 200 <= status < 300:
            text = body.decode("utf-8", errors="replace")
            logger.error(f"Unexpected HTTP {status} from {request.url}: {text[:200]}")
            return AttemptResult(
                AttemptOutcome.FATAL,
                error=UnexpectedStatus(request.url, status, text),
            )

        return AttemptResult(
            AttemptOutcome.SUCCESS,
            response=FetchResponse(
                url=request.url,
                status=status,
                headers=response_headers,
                body=body,
                attempts=attempt,
            ),
        )

    async def fetch(self, request: RequestSpec) -> FetchResponse:
        """
        Fetch ``request``, waiting and retrying as the server demands.

        Args:
            request: Request specification

        Returns:
            The 2xx response

        Raises:
            UnexpectedStatus: On any non-2xx, non-429 response
            RetryBudgetExhausted: After max_attempts throttled or failed attempts
            FetchCancelled: If the cancel event was set
        """
        max_attempts = self.config.retry.max_attempts
        attempt = 0
        last_error: Optional[FeedError] = None

        while attempt < max_attempts:
            attempt += 1
            await self._wait_for_budget(request, attempt)

            result = await self._attempt(request, attempt)

            if result.outcome is AttemptOutcome.SUCCESS:
                return result.response
            if result.outcome is AttemptOutcome.FATAL:
                raise result.error

            last_error = result.error
            if result.backoff > 0 and attempt < max_attempts:
                self._check_cancelled()
                with self._stats_lock:
                    self._stats.total_wait_time += result.backoff
                await self.time_provider.sleep(result.backoff)

        with self._stats_lock:
            self._stats.exhausted += 1

        error = RetryBudgetExhausted(request.url, attempt, last_error)
        logger.error(str(error))
        raise error

    def get_stats(self) -> FetcherStats:
        """Get current statistics."""
        with self._stats_lock:
            return FetcherStats(**self._stats.to_dict())

    def reset_stats(self) -> None:
        """Reset statistics."""
        with self._stats_lock:
            self._stats = FetcherStats()
