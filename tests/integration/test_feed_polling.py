"""
Integration tests for the feed client using the stub server.

Tests drive the real fetcher and driver over HTTP with aiohttp against a
local stub server. Time is fake, so throttling waits are recorded instead
of slept.

Test scenarios:
1. Draining pages → cursor chain follows next_change_id
2. 429 with Retry-After → waits, then resumes with the same cursor
3. Budget exhausted by headers → waits for the window before the next page
4. Persistent throttling → bounded retries, driver FAILED
5. Malformed page → ValidationError, nothing delivered or persisted
6. Connection refused → transient retries, then RetryBudgetExhausted
"""
import logging
from collections.abc import Sequence
from typing import Any

import pytest
from aiohttp import ClientSession

from stash_feed.core import (
    DriverState,
    FakeTimeProvider,
    FeedConfig,
    FileCursorStore,
    PaginationDriver,
    RateLimited,
    RetryBudgetExhausted,
    RetryConfig,
    Sink,
    ThrottledFetcher,
    TransientNetworkError,
    UnexpectedStatus,
    ValidationError,
)
from stash_feed.core.telemetry import (
    TelemetryDecision,
    TelemetryLevel,
    TelemetryRecorder,
    set_recorder,
)
from stash_feed.datasources.public_stash import PublicStashSource
from stash_feed.sinks.price_notes import PriceNoteSink
from stash_feed.sinks.stats import StatsSink
from tests.integration.stub_server import (
    StubResponse,
    StubServer,
    error_response,
    page_response,
    throttle_response,
)

logger = logging.getLogger(__name__)

TEST_HOST = "127.0.0.1"
TEST_PORT = 18890


class CollectingSink(Sink):
    def __init__(self):
        self.batches: list[Sequence[Any]] = []

    def accept(self, records: Sequence[Any]) -> None:
        self.batches.append(records)


@pytest.fixture
async def stub_server():
    """Provide stub server for integration tests."""
    server = StubServer(host=TEST_HOST, port=TEST_PORT)
    await server.start()

    yield server

    await server.stop()


@pytest.fixture
async def session():
    async with ClientSession() as session:
        yield session


@pytest.fixture
def fake_time():
    """Provide fake time provider."""
    return FakeTimeProvider(initial_time=1000.0)


@pytest.fixture
def recorder():
    recorder = TelemetryRecorder(
        level=TelemetryLevel.DEBUG, format_json=False, collect_stats=True, keep_events=True,
    )
    set_recorder(recorder)
    return recorder


@pytest.fixture
def feed_config(stub_server):
    """Provide feed config pointing to stub server."""
    return FeedConfig(
        api_base=stub_server.get_url("/"),
        product="stash-feed-it",
        version="0.0.1",
        contact="it@example.com",
    )


@pytest.fixture
def fetcher(session, feed_config, fake_time, recorder):
    return ThrottledFetcher(session, token="it-token", config=feed_config, time_provider=fake_time)


@pytest.fixture
def sink():
    return CollectingSink()


@pytest.fixture
def driver(fetcher, feed_config, sink):
    return PaginationDriver(fetcher, PublicStashSource(feed_config), sink)


class TestDraining:
    """Scenario 1: the cursor chain follows next_change_id."""

    async def test_pages_in_order(self, stub_server, driver, sink, fake_time):
        stub_server.enqueue_responses([
            page_response("A"),
            page_response("B"),
            page_response("C"),
        ])

        stats = await driver.run(max_pages=3)

        assert stub_server.requested_ids == ["0", "A", "B"]
        assert driver.cursor == "C"
        assert [batch[0].id for batch in sink.batches] == ["stash-A", "stash-B", "stash-C"]
        assert stats.pages == 3
        assert stats.items == 3
        assert fake_time.sleep_history == []

    async def test_request_headers(self, stub_server, driver):
        stub_server.enqueue_response(page_response("A"))

        await driver.step()

        entry = stub_server.request_history[0]
        assert entry["path"] == "/public-stash-tabs"
        assert entry["headers"]["Authorization"] == "Bearer it-token"
        assert entry["headers"]["User-Agent"] == "OAuth stash-feed-it/0.0.1 (contact: it@example.com)"

    async def test_real_sinks(self, stub_server, fetcher, feed_config):
        points = []
        stats_sink = StatsSink(downstream=PriceNoteSink(on_prices=points.extend))
        driver = PaginationDriver(fetcher, PublicStashSource(feed_config), stats_sink)
        stub_server.enqueue_responses([page_response("A"), page_response("B")])

        await driver.run(max_pages=2)

        assert stats_sink.stashes == 2
        assert [point.item_id for point in points] == ["item-A", "item-B"]
        assert all(point.value == 1.0 and point.currency == "chaos" for point in points)


class TestThrottling:
    """Scenarios 2 and 3: explicit throttling and budget exhaustion."""

    async def test_retry_after_then_resume(self, stub_server, driver, fake_time, recorder):
        stub_server.enqueue_responses([
            throttle_response(retry_after=2),
            throttle_response(retry_after=3),
            throttle_response(retry_after=1),
            page_response("A"),
        ])

        await driver.step()

        assert stub_server.requested_ids == ["0", "0", "0", "0"]
        assert fake_time.sleep_history == [3.0, 4.0, 2.0]
        assert driver.cursor == "A"

        stats = recorder.get_stats()
        assert stats.status_codes == {429: 3, 200: 1}

    async def test_throttle_with_headers(self, stub_server, driver, fake_time, fetcher):
        stub_server.enqueue_responses([
            throttle_response(retry_after=5, include_rate_headers=True),
            page_response("A"),
        ])

        await driver.step()

        assert fake_time.sleep_history == [6.0]
        assert fetcher.tracker.remaining == 29

    async def test_budget_window_wait(self, stub_server, driver, fake_time, recorder):
        stub_server.enqueue_responses([
            page_response("A", limit=30, used=30, window=10),
            page_response("B", limit=30, used=1, window=10),
        ])

        await driver.run(max_pages=2)

        assert fake_time.sleep_history == [pytest.approx(10.0)]
        assert len(recorder.get_events(TelemetryDecision.WAIT_BUDGET)) == 1
        assert recorder.get_events(TelemetryDecision.UNEXPECTED_429) == []


class TestFailures:
    """Scenarios 4-6: fatal errors stop the loop."""

    async def test_persistent_throttling(self, stub_server, driver, sink):
        stub_server.enqueue_responses([throttle_response(retry_after=1) for _ in range(7)])

        with pytest.raises(RetryBudgetExhausted) as exc_info:
            await driver.run()

        assert isinstance(exc_info.value.last_error, RateLimited)
        assert stub_server.request_count == 6
        assert driver.state is DriverState.FAILED
        assert sink.batches == []

    async def test_malformed_page(self, stub_server, fetcher, feed_config, sink, tmp_path):
        store = FileCursorStore(tmp_path / "cursor")
        store.save("resume-here")
        driver = PaginationDriver(fetcher, PublicStashSource(feed_config), sink, cursor_store=store)
        stub_server.enqueue_response(StubResponse(status=200, body='{"next_change_id": "X"}'))

        with pytest.raises(ValidationError):
            await driver.run()

        assert stub_server.requested_ids == ["resume-here"]
        assert driver.state is DriverState.FAILED
        assert sink.batches == []
        assert store.load() == "resume-here"

    async def test_resume_persists_progress(self, stub_server, fetcher, feed_config, sink, tmp_path):
        store = FileCursorStore(tmp_path / "cursor")
        driver = PaginationDriver(fetcher, PublicStashSource(feed_config), sink, cursor_store=store)
        stub_server.enqueue_responses([page_response("A"), page_response("B"), error_response(500)])

        with pytest.raises(UnexpectedStatus):
            await driver.run()

        assert driver.state is DriverState.FAILED
        assert store.load() == "B"
        assert stub_server.requested_ids == ["0", "A", "B"]

    async def test_connection_refused(self, session, fake_time, recorder):
        config = FeedConfig(
            api_base=f"http://{TEST_HOST}:1",
            retry=RetryConfig(max_attempts=3, base_backoff=0.5),
        )
        fetcher = ThrottledFetcher(session, token="t", config=config, time_provider=fake_time)
        driver = PaginationDriver(fetcher, PublicStashSource(config), CollectingSink())

        with pytest.raises(RetryBudgetExhausted) as exc_info:
            await driver.run()

        assert exc_info.value.attempts == 3
        assert isinstance(exc_info.value.last_error, TransientNetworkError)
        assert len(fake_time.sleep_history) == 2
        assert len(recorder.get_events(TelemetryDecision.BACKOFF_TRANSIENT)) == 3
