"""Sink that only counts what passes through it."""

import logging
from collections.abc import Sequence
from typing import Any

from stash_feed.core.datasource import Sink

logger = logging.getLogger(__name__)


class StatsSink(Sink):
    """Counts stashes and items per league; optionally forwards to another sink."""

    def __init__(self, downstream: Sink | None = None):
        self.downstream = downstream
        self.batches = 0
        self.stashes = 0
        self.items = 0
        self.items_by_league: dict[str, int] = {}

    def accept(self, records: Sequence[Any]) -> None:
        if self.downstream is not None:
            self.downstream.accept(records)

        self.batches += 1
        for stash in records:
            self.stashes += 1
            self.items += len(stash.items)
            league = stash.league or "unknown"
            self.items_by_league[league] = self.items_by_league.get(league, 0) + len(stash.items)

        logger.debug(
            f"Batch {self.batches}: {len(records)} stashes. "
            f"Total: {self.stashes} stashes / {self.items} items"
        )
