"""
Server-reported request budget tracking.

The feed reports its rate limit in two colon-separated headers:

- a rule header, ``limit:window[:restriction]``
- a state header, ``used:window[:restricted_for]``

The tracker rebuilds the remaining budget from those values after every
response instead of counting requests client side, since only the server
knows about other clients sharing the same budget. The reset instant is
recomputed from *now* on each response because the headers only carry a
relative window length.

Both headers may carry several comma separated windows (for instance a
10 second and a 60 second window). Each window is tracked on its own and
the budget is limited while any of them is exhausted, until the last of
the exhausted windows resets.
"""
import asyncio
import logging
import threading
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import List, Mapping, Optional, Sequence, Tuple

from .config import HeaderConfig

logger = logging.getLogger(__name__)

# Remaining budget assumed when the rule header is missing. Anything >= 1
# keeps the tracker unlimited, so missing telemetry never blocks requests.
MISSING_HEADER_REMAINING = 1


class TimeProvider(ABC):
    """Protocol for providing time values, allows injection of fake time in tests."""

    @abstractmethod
    def now(self) -> float:
        """Return current time in seconds since epoch."""
        pass

    @abstractmethod
    async def sleep(self, seconds: float) -> None:
        """Suspend the current task for ``seconds``."""
        pass


class SystemTimeProvider(TimeProvider):
    """Real time provider using system clock."""

    def now(self) -> float:
        return time.time()

    async def sleep(self, seconds: float) -> None:
        await asyncio.sleep(seconds)


class FakeTimeProvider(TimeProvider):
    """Fake time provider for deterministic tests. Sleeping advances time."""

    def __init__(self, initial_time: float = 1000.0):
        self._current_time = initial_time
        self._lock = threading.Lock()
        self.sleep_history: list[float] = []

    def now(self) -> float:
        with self._lock:
            return self._current_time

    async def sleep(self, seconds: float) -> None:
        with self._lock:
            self.sleep_history.append(seconds)
            self._current_time += seconds

    def advance(self, seconds: float) -> None:
        """Advance time by given seconds."""
        with self._lock:
            self._current_time += seconds

    def set(self, time: float) -> None:
        """Set absolute time."""
        with self._lock:
            self._current_time = time


@dataclass(frozen=True)
class RateBudget:
    """
    Snapshot of the request budget.

    Attributes:
        limit_per_window: Requests allowed per window, None when unknown
        remaining: Requests left before the server starts throttling
        window_reset_at: Epoch seconds at which the budget is restored
    """

    limit_per_window: Optional[int]
    remaining: int
    window_reset_at: float


def parse_rate_limit_rule(rule: str) -> Optional[Tuple[int, int]]:
    """
    Parse the first two fields of one ``a:b[:c...]`` rule.

    Returns:
        (first, second) integers, or None if malformed
    """
    parts = rule.strip().split(":")
    if len(parts) < 2:
        return None

    try:
        return int(parts[0]), int(parts[1])
    except ValueError:
        return None


def parse_rate_limit_header(value: Optional[str]) -> List[Optional[Tuple[int, int]]]:
    """
    Parse a rate limit header carrying one or more comma separated rules.

    The server reports several windows at once (e.g. ``8:10:60,15:60:300``),
    and the state header lists the matching states in the same order.

    Args:
        value: Raw header value

    Returns:
        One entry per rule, None for a malformed rule; empty if absent
    """
    if not value:
        return []
    return [parse_rate_limit_rule(rule) for rule in value.split(",")]


@dataclass(frozen=True)
class RuleBudget:
    """Budget of a single server window."""

    limit: int
    remaining: int
    reset_at: float


def combine_rules(rules: Sequence[RuleBudget]) -> RuleBudget:
    """
    Reduce per-window budgets to the one that constrains the next request.

    If any window is exhausted, the result is the exhausted window that
    resets last. Otherwise it is the window with the fewest requests left.
    """
    exhausted = [rule for rule in rules if rule.remaining <= 0]
    if exhausted:
        return max(exhausted, key=lambda rule: rule.reset_at)
    return min(rules, key=lambda rule: rule.remaining)

    first_rule = value.split(",")[0]
    parts = first_rule.strip().split(":")
    if len(parts) < 2:
        return None

    try:
        return int(parts[0]), int(parts[1])
    except ValueError:
        return None


class RateBudgetTracker:
    """
    Tracks the server-communicated request budget for one credential.

    All accessors take an internal lock so the same tracker can be shared by
    several fetchers using one credential. The lock is never held across a
    sleep.
    """

    def __init__(
        self,
        headers: Optional[HeaderConfig] = None,
        time_provider: Optional[TimeProvider] = None,
        missing_header_remaining: int = MISSING_HEADER_REMAINING,
    ):
        """
        Initialize tracker.

        Args:
            headers: Names of the rule and state headers
            time_provider: Optional time provider (defaults to system time)
            missing_header_remaining: Budget assumed when no rule is reported
        """
        self.headers = headers or HeaderConfig()
        self.time_provider = time_provider or SystemTimeProvider()
        self.missing_header_remaining = missing_header_remaining

        self._lock = threading.Lock()
        self._limit: Optional[int] = None
        self._remaining = missing_header_remaining
        self._reset_at = self.time_provider.now()
        self._rules: Tuple[RuleBudget, ...] = ()

    @property
    def remaining(self) -> int:
        with self._lock:
            return self._remaining

    @property
    def rules(self) -> Tuple[RuleBudget, ...]:
        """Per-window budgets from the last response, in header order."""
        with self._lock:
            return self._rules

    @property
    def limit_per_window(self) -> Optional[int]:
        with self._lock:
            return self._limit

    @property
    def window_reset_at(self) -> float:
        with self._lock:
            return self._reset_at

    def snapshot(self) -> RateBudget:
        """Return a consistent copy of the current budget."""
        with self._lock:
            return RateBudget(
                limit_per_window=self._limit,
                remaining=self._remaining,
                window_reset_at=self._reset_at,
            )

    def is_limited(self) -> bool:
        """True iff no budget is left and the window has not reset yet."""
        now = self.time_provider.now()
        with self._lock:
            return self._remaining <= 0 and now < self._reset_at

    def time_until_reset(self) -> float:
        """Seconds until the window resets. Only meaningful while limited."""
        now = self.time_provider.now()
        with self._lock:
            return max(0.0, self._reset_at - now)

    def observe(self, headers: Mapping[str, str]) -> RateBudget:
        """
        Update the budget from response headers.

        Called for every response, including error responses.

        Args:
            headers: Response headers (case-insensitive mapping preferred)

        Returns:
            The budget after the update
        """
        rules = parse_rate_limit_header(headers.get(self.headers.rule))
        states = parse_rate_limit_header(headers.get(self.headers.state))
        now = self.time_provider.now()

        windows = []
        for index, rule in enumerate(rules):
            if rule is None:
                continue
            limit, window = rule
            state = states[index] if index < len(states) else None
            used = state[0] if state is not None else 0
            windows.append(RuleBudget(limit=limit, remaining=max(0, limit - used), reset_at=now + window))

        with self._lock:
            self._rules = tuple(windows)
            if not windows:
                # Fail open: no rule means we cannot know the budget
                self._limit = None
                self._remaining = self.missing_header_remaining
                self._reset_at = now
            else:
                binding = combine_rules(windows)
                self._limit = binding.limit
                self._remaining = binding.remaining
                self._reset_at = binding.reset_at

            budget = RateBudget(
                limit_per_window=self._limit,
                remaining=self._remaining,
                window_reset_at=self._reset_at,
            )

        logger.debug(
            f"Updated rate budget: remaining={budget.remaining} "
            f"limit={budget.limit_per_window} "
            f"reset_in={budget.window_reset_at - now:.2f}s"
        )
        return budget

    def force_limited(self, retry_after_seconds: float) -> RateBudget:
        """
        Mark the budget as exhausted for ``retry_after_seconds``.

        Used when the server throttles regardless of what the headers said.
        """
        now = self.time_provider.now()
        with self._lock:
            self._remaining = 0
            self._reset_at = now + retry_after_seconds
            return RateBudget(
                limit_per_window=self._limit,
                remaining=self._remaining,
                window_reset_at=self._reset_at,
            )
