"""
Feed source interface and supporting types.

This module defines the seams between the polling core and the things it
does not own: the feed's request/response shape, the sink that stores
records, the place a cursor is persisted and the source of the very first
cursor.
"""

from abc import ABC, abstractmethod
from collections.abc import Sequence
from dataclasses import dataclass, field
from typing import Any


@dataclass
class RequestSpec:
    """
    Specification for an HTTP request.

    Attributes:
        url: Full URL to request
        method: HTTP method (GET, POST, etc.)
        headers: HTTP headers as key-value pairs
        query_params: Query string parameters
        options: Extra transport options merged over the fetcher defaults
    """
    url: str
    method: str = "GET"
    headers: dict[str, str] = field(default_factory=dict)
    query_params: dict[str, Any] = field(default_factory=dict)
    options: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class Page:
    """
    One decoded batch of feed records.

    Attributes:
        cursor: Cursor to request the following page with
        records: Records contained in this page
        metadata: Additional metadata (request cursor, body size, ...)
    """
    cursor: str
    records: Sequence[Any]
    metadata: dict[str, Any] = field(default_factory=dict)


class FeedSource(ABC):
    """
    A cursor-paginated feed.

    Subclasses know how to turn a cursor into a request and a response body
    into a page. They do not perform I/O themselves.
    """

    @property
    @abstractmethod
    def name(self) -> str:
        """
        Unique identifier for this feed.

        Returns:
            The name of the feed (e.g., "public-stash-tabs")
        """
        pass

    @abstractmethod
    def prepare_request(self, cursor: str) -> RequestSpec:
        """
        Prepare the request for the page at ``cursor``.

        Args:
            cursor: Opaque continuation token

        Returns:
            A RequestSpec with url, method, headers, and query parameters
        """
        pass

    @abstractmethod
    def decode(self, body: bytes | str, request_cursor: str | None = None) -> Page:
        """
        Decode a raw response body into a page.

        Args:
            body: Raw response body
            request_cursor: Cursor the page was requested with

        Raises:
            ValidationError: If the body violates the feed's schema
        """
        pass


class Sink(ABC):
    """Receives every decoded page's records exactly once, in feed order."""

    @abstractmethod
    def accept(self, records: Sequence[Any]) -> None:
        """
        Store a batch of records.

        Raises:
            SinkError: If the records could not be stored
        """
        pass


class CursorStore(ABC):
    """Remembers the last processed cursor between process restarts."""

    @abstractmethod
    def load(self) -> str | None:
        """Return the persisted cursor, or None if there is none."""
        pass

    @abstractmethod
    def save(self, cursor: str) -> None:
        """Persist ``cursor`` as the next one to request."""
        pass


class InitialCursorSource(ABC):
    """Provides a starting cursor when nothing has been persisted yet."""

    @abstractmethod
    async def get_initial_cursor(self) -> str:
        pass
