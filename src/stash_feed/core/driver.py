"""
Cursor-driven poll loop.

The driver owns the cursor. Each iteration fetches the page at the current
cursor, decodes it, hands its records to the sink and only then advances
the cursor to the page's ``next_change_id``. Fatal errors move the driver
to FAILED and are re-raised; nothing is retried here.
"""
import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional

from .datasource import CursorStore, FeedSource, InitialCursorSource, Page, Sink
from .errors import FetchCancelled, SinkError
from .fetcher import ThrottledFetcher

logger = logging.getLogger(__name__)

DEFAULT_CURSOR = "0"


class DriverState(Enum):
    """Lifecycle of a PaginationDriver."""
    POLLING = "polling"
    STOPPED = "stopped"  # cancelled from outside
    FAILED = "failed"    # terminal


@dataclass
class DriverStats:
    """Running totals over all processed pages."""

    pages: int = 0
    stashes: int = 0
    items: int = 0
    bytes: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "pages": self.pages,
            "stashes": self.stashes,
            "items": self.items,
            "bytes": self.bytes,
        }


class PaginationDriver:
    """
    Drains a cursor-paginated feed into a sink, one page at a time.

    Example:
        driver = PaginationDriver(fetcher, PublicStashSource(config), sink)
        await driver.run()
    """

    def __init__(
        self,
        fetcher: ThrottledFetcher,
        source: FeedSource,
        sink: Sink,
        cursor_store: Optional[CursorStore] = None,
        initial_cursor_source: Optional[InitialCursorSource] = None,
        default_cursor: str = DEFAULT_CURSOR,
    ):
        """
        Initialize driver.

        Args:
            fetcher: Fetcher used for every page request
            source: Feed that builds requests and decodes pages
            sink: Receives each page's records
            cursor_store: Optional persistence for the cursor
            initial_cursor_source: Consulted when no cursor is persisted
            default_cursor: Cursor used when neither of the above has one
        """
        self.fetcher = fetcher
        self.source = source
        self.sink = sink
        self.cursor_store = cursor_store
        self.initial_cursor_source = initial_cursor_source
        self.default_cursor = default_cursor

        self.state = DriverState.POLLING
        self.cursor: Optional[str] = None
        self.error: Optional[BaseException] = None
        self.stats = DriverStats()

    @property
    def cancel_event(self) -> asyncio.Event:
        return self.fetcher.cancel_event

    def stop(self) -> None:
        """Ask the loop to stop at its next suspension point."""
        logger.info("Stop requested")
        self.cancel_event.set()

    async def resolve_initial_cursor(self) -> str:
        """Persisted cursor first, then the initial cursor source, then the default."""
        if self.cursor_store is not None:
            stored = self.cursor_store.load()
            if stored:
                logger.info(f"Resuming from persisted cursor {stored}")
                return stored

        if self.initial_cursor_source is not None:
            cursor = await self.initial_cursor_source.get_initial_cursor()
            logger.info(f"Starting from initial cursor {cursor}")
            return cursor

        logger.info(f"Starting from default cursor {self.default_cursor}")
        return self.default_cursor

    def _fail(self, error: BaseException) -> None:
        self.state = DriverState.FAILED
        self.error = error
        logger.error(f"Polling {self.source.name} failed at cursor {self.cursor}: {error}")

    def _persist(self, cursor: str) -> None:
        if self.cursor_store is None:
            return
        try:
            self.cursor_store.save(cursor)
        except OSError as e:
            # Persistence only shortens restarts; polling continues
            logger.warning(f"Could not persist cursor {cursor}: {e}")

    def _deliver(self, page: Page) -> None:
        try:
            self.sink.accept(page.records)
        except SinkError:
            raise
        except Exception as e:
            raise SinkError(f"Sink rejected page at cursor {self.cursor}: {e}") from e

    def _update_stats(self, page: Page) -> None:
        self.stats.pages += 1
        self.stats.stashes += len(page.records)
        self.stats.items += sum(len(getattr(record, "items", ())) for record in page.records)
        self.stats.bytes += page.metadata.get("bytes", 0)

        logger.debug(
            f"Processed page: {len(page.records)} stashes. "
            f"Total: {self.stats.stashes} stashes / {self.stats.items} items / "
            f"{self.stats.bytes} bytes"
        )

    async def step(self) -> Page:
        """
        Process exactly one page and advance the cursor.

        Returns:
            The page that was delivered to the sink

        Raises:
            RuntimeError: If the driver already failed
            FeedError: Any fatal error; the driver is FAILED afterwards
            Exception: Errors from the cursor store or initial cursor source
                (e.g. poe.ninja unreachable) also leave the driver FAILED
        """
        if self.state is DriverState.FAILED:
            raise RuntimeError(f"Driver failed earlier: {self.error}")

        try:
            if self.cursor is None:
                self.cursor = await self.resolve_initial_cursor()

            logger.info(f"Fetching {self.source.name} with change id {self.cursor}")
            response = await self.fetcher.fetch(self.source.prepare_request(self.cursor))
            page = self.source.decode(response.body, self.cursor)
            self._deliver(page)
        except FetchCancelled:
            self.state = DriverState.STOPPED
            raise
        except Exception as e:
            self._fail(e)
            raise

        self._update_stats(page)
        self.cursor = page.cursor
        self._persist(page.cursor)
        return page

    async def run(self, max_pages: Optional[int] = None) -> DriverStats:
        """
        Poll until a fatal error, cancellation or ``max_pages`` pages.

        Returns:
            Totals for the run

        Raises:
            FeedError: The fatal error that moved the driver to FAILED
        """
        processed = 0

        try:
            while max_pages is None or processed < max_pages:
                if self.cancel_event.is_set():
                    self.state = DriverState.STOPPED
                    break
                await self.step()
                processed += 1
        except FetchCancelled:
            logger.info(f"Polling {self.source.name} cancelled at cursor {self.cursor}")
        finally:
            logger.info(
                f"Poll loop finished in state {self.state.value}: "
                f"{self.stats.pages} pages, {self.stats.stashes} stashes, "
                f"{self.stats.items} items"
            )

        return self.stats
