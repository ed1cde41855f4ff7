"""Core types for the rate-adaptive feed client."""

from stash_feed.core.config import (
    ConfigValidationError,
    FeedConfig,
    HeaderConfig,
    RetryConfig,
    load_config,
    validate_config,
)
from stash_feed.core.cursor_store import FileCursorStore, MemoryCursorStore
from stash_feed.core.datasource import (
    CursorStore,
    FeedSource,
    InitialCursorSource,
    Page,
    RequestSpec,
    Sink,
)
from stash_feed.core.driver import DriverState, DriverStats, PaginationDriver
from stash_feed.core.errors import (
    FeedError,
    FetchCancelled,
    RateLimited,
    RetryBudgetExhausted,
    SinkError,
    TransientNetworkError,
    UnexpectedStatus,
    ValidationError,
)
from stash_feed.core.fetcher import FetchResponse, ThrottledFetcher, deep_merge
from stash_feed.core.rate_budget import (
    MISSING_HEADER_REMAINING,
    FakeTimeProvider,
    RateBudget,
    RateBudgetTracker,
    SystemTimeProvider,
    TimeProvider,
)

__all__ = [
    # config
    "ConfigValidationError",
    "FeedConfig",
    "HeaderConfig",
    "RetryConfig",
    "load_config",
    "validate_config",
    # datasource
    "CursorStore",
    "FeedSource",
    "InitialCursorSource",
    "Page",
    "RequestSpec",
    "Sink",
    # cursor_store
    "FileCursorStore",
    "MemoryCursorStore",
    # driver
    "DriverState",
    "DriverStats",
    "PaginationDriver",
    # errors
    "FeedError",
    "FetchCancelled",
    "RateLimited",
    "RetryBudgetExhausted",
    "SinkError",
    "TransientNetworkError",
    "UnexpectedStatus",
    "ValidationError",
    # fetcher
    "FetchResponse",
    "ThrottledFetcher",
    "deep_merge",
    # rate_budget
    "MISSING_HEADER_REMAINING",
    "FakeTimeProvider",
    "RateBudget",
    "RateBudgetTracker",
    "SystemTimeProvider",
    "TimeProvider",
]
