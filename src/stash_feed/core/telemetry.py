"""
Structured telemetry for fetcher decisions.

Each decision the fetcher takes (observe a response, wait for the budget window,
back off after a 429 or a network error) is recorded as an event. Events
are logged as JSON or key=value lines and can optionally be aggregated in
memory, which is what the tests use to assert on wait behavior.
"""
import json
import logging
import threading
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)


class TelemetryLevel(Enum):
    """Telemetry verbosity levels."""
    INFO = "info"
    DEBUG = "debug"


class TelemetryDecision(Enum):
    """Fetcher decision types."""
    WAIT_BUDGET = "wait_budget"              # Slept until the budget window reset
    BACKOFF_429 = "backoff_429"              # Throttled while budget was known exhausted
    UNEXPECTED_429 = "unexpected_429"        # Throttled although budget looked available
    BACKOFF_TRANSIENT = "backoff_transient"  # Network failure, backing off
    RESPONSE = "response"                    # Response received and observed


# Decisions that are worth an INFO line even at INFO verbosity
_NOTABLE_DECISIONS = {
    TelemetryDecision.WAIT_BUDGET.value,
    TelemetryDecision.BACKOFF_429.value,
    TelemetryDecision.UNEXPECTED_429.value,
    TelemetryDecision.BACKOFF_TRANSIENT.value,
}


@dataclass
class TelemetryEvent:
    """
    A single telemetry event.

    Attributes:
        timestamp: ISO 8601 timestamp of event
        feed: Feed name
        endpoint: URL being fetched
        decision: Fetcher decision
        status: HTTP status code (None before a response exists)
        elapsed_ms: Request duration in milliseconds
        sleep_s: Time slept because of this decision
        headers_seen: Rate limit headers present on the response
        attempt: Attempt number within the current fetch (1-based)
        remaining: Budget remaining after the decision, None if unknown
    """
    timestamp: str
    feed: str
    endpoint: str
    decision: str
    status: Optional[int] = None
    elapsed_ms: float = 0.0
    sleep_s: float = 0.0
    headers_seen: Dict[str, str] = field(default_factory=dict)
    attempt: int = 1
    remaining: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        """Convert event to dictionary for logging."""
        return {k: v for k, v in asdict(self).items() if v is not None or k == "status"}

    def to_json(self) -> str:
        """Convert event to JSON string."""
        return json.dumps(self.to_dict(), default=str)

    def to_keyvalue(self) -> str:
        """Convert event to key=value format."""
        pairs = []
        for key, value in self.to_dict().items():
            if isinstance(value, dict):
                for subkey, subval in value.items():
                    pairs.append(f"{key}.{subkey}={subval}")
            else:
                pairs.append(f"{key}={value}")
        return " ".join(pairs)


@dataclass
class TelemetryStats:
    """Aggregated statistics, useful for tests and runtime monitoring."""
    total_events: int = 0
    total_sleeps: int = 0
    total_sleep_time: float = 0.0
    decisions_by_type: Dict[str, int] = field(default_factory=dict)
    status_codes: Dict[int, int] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        """Convert stats to dictionary."""
        return {
            "total_events": self.total_events,
            "total_sleeps": self.total_sleeps,
            "total_sleep_time": self.total_sleep_time,
            "decisions_by_type": dict(self.decisions_by_type),
            "status_codes": dict(self.status_codes),
        }


class TelemetryRecorder:
    """
    Records and emits structured telemetry events.

    Thread-safe. With ``keep_events`` it also keeps an event history so tests
    can inspect exactly what the fetcher decided; long-running pollers leave
    it off.
    """

    def __init__(
        self,
        level: TelemetryLevel = TelemetryLevel.INFO,
        format_json: bool = True,
        collect_stats: bool = False,
        keep_events: bool = False,
    ):
        """
        Initialize telemetry recorder.

        Args:
            level: Logging verbosity level
            format_json: If True, log as JSON; otherwise use key=value
            collect_stats: If True, collect in-memory statistics
            keep_events: If True, keep every event for get_events()
        """
        self.level = level
        self.format_json = format_json
        self.collect_stats = collect_stats
        self.keep_events = keep_events

        self._stats = TelemetryStats()
        self._stats_lock = threading.Lock()

        self._events: List[TelemetryEvent] = []
        self._events_lock = threading.Lock()

    def record(self, event: TelemetryEvent) -> None:
        """
        Record a telemetry event.

        Args:
            event: Event to record
        """
        log_message = event.to_json() if self.format_json else event.to_keyvalue()

        if self.level == TelemetryLevel.DEBUG:
            logger.debug(log_message)
        elif event.decision in _NOTABLE_DECISIONS or (event.status and event.status >= 400):
            logger.info(log_message)
        else:
            logger.debug(log_message)

        if self.collect_stats:
            with self._stats_lock:
                self._stats.total_events += 1

                if event.sleep_s > 0:
                    self._stats.total_sleeps += 1
                    self._stats.total_sleep_time += event.sleep_s

                self._stats.decisions_by_type[event.decision] = (
                    self._stats.decisions_by_type.get(event.decision, 0) + 1
                )

                if event.status:
                    self._stats.status_codes[event.status] = (
                        self._stats.status_codes.get(event.status, 0) + 1
                    )

        if self.keep_events:
            with self._events_lock:
                self._events.append(event)

    def get_stats(self) -> TelemetryStats:
        """Get current statistics snapshot."""
        with self._stats_lock:
            return TelemetryStats(
                total_events=self._stats.total_events,
                total_sleeps=self._stats.total_sleeps,
                total_sleep_time=self._stats.total_sleep_time,
                decisions_by_type=self._stats.decisions_by_type.copy(),
                status_codes=self._stats.status_codes.copy(),
            )

    def reset_stats(self) -> None:
        """Reset statistics."""
        with self._stats_lock:
            self._stats = TelemetryStats()

    def get_events(self, decision: Optional[TelemetryDecision] = None) -> List[TelemetryEvent]:
        """Get recorded events, optionally only those with one decision."""
        with self._events_lock:
            events = self._events.copy()
        if decision is None:
            return events
        return [event for event in events if event.decision == decision.value]

    def clear_events(self) -> None:
        """Clear event history."""
        with self._events_lock:
            self._events.clear()


_global_recorder: Optional[TelemetryRecorder] = None
_recorder_lock = threading.Lock()


def get_recorder() -> TelemetryRecorder:
    """
    Get the global telemetry recorder instance.

    Creates a default recorder if none exists.
    """
    global _global_recorder

    if _global_recorder is None:
        with _recorder_lock:
            if _global_recorder is None:
                _global_recorder = TelemetryRecorder()

    return _global_recorder


def set_recorder(recorder: TelemetryRecorder) -> None:
    """
    Set the global telemetry recorder instance.

    Args:
        recorder: Recorder instance to use globally
    """
    global _global_recorder

    with _recorder_lock:
        _global_recorder = recorder


def create_event(
    feed: str,
    endpoint: str,
    decision: TelemetryDecision,
    status: Optional[int] = None,
    elapsed_ms: float = 0.0,
    sleep_s: float = 0.0,
    headers_seen: Optional[Dict[str, str]] = None,
    attempt: int = 1,
    remaining: Optional[int] = None,
) -> TelemetryEvent:
    """Helper to create a telemetry event with current timestamp."""
    return TelemetryEvent(
        timestamp=datetime.now(timezone.utc).isoformat(),
        feed=feed,
        endpoint=endpoint,
        decision=decision.value,
        status=status,
        elapsed_ms=elapsed_ms,
        sleep_s=sleep_s,
        headers_seen=headers_seen or {},
        attempt=attempt,
        remaining=remaining,
    )
