"""
Price extraction from item and stash notes.

Players price items with notes such as ``~price 5 chaos`` or
``~price 1/2 divine``. A stash tab named like a price note prices every
item in it that has no note of its own.
"""

import logging
import math
import re
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from typing import Any

from stash_feed.core.datasource import Sink

logger = logging.getLogger(__name__)

PRICE_PREFIX = "~price"

_LEADING_INT = re.compile(r"\s*([+-]?\d+)")


@dataclass(frozen=True)
class NoteValue:
    value: float
    currency: str


@dataclass(frozen=True)
class PricePoint:
    """A priced item seen in the feed."""

    stash_id: str
    item_id: str | None
    league: str | None
    base_type: str
    type_line: str
    value: float
    currency: str


def _leading_int(text: str) -> int | None:
    match = _LEADING_INT.match(text)
    return int(match.group(1)) if match else None


def extract_note_value(note: str | None) -> NoteValue | None:
    """
    Parse a ``~price <amount>[/<divisor>] <currency>`` note.

    Returns:
        The price, or None if the note is not a valid price note
    """
    if note is None:
        return None

    tokens = note.split(" ")
    if len(tokens) < 3 or tokens[0] != PRICE_PREFIX:
        return None

    fraction = tokens[1].split("/")
    numerator = _leading_int(fraction[0])
    if numerator is None:
        return None

    value = float(numerator)
    if len(fraction) > 1:
        denominator = _leading_int(fraction[1])
        if denominator is not None and denominator > 0:
            value = numerator / denominator

    if not math.isfinite(value):
        return None

    return NoteValue(value=value, currency=tokens[2].lower())


class PriceNoteSink(Sink):
    """
    Collects a PricePoint for every priced item and hands each batch to
    ``on_prices``.
    """

    def __init__(self, on_prices: Callable[[list[PricePoint]], None] | None = None):
        self.on_prices = on_prices
        self.total_points = 0

    def extract(self, records: Sequence[Any]) -> list[PricePoint]:
        points = []
        for stash in records:
            stash_value = extract_note_value(stash.stash)

            for item in stash.items:
                item_value = extract_note_value(item.note) or stash_value
                if item_value is None:
                    continue

                points.append(PricePoint(
                    stash_id=stash.id,
                    item_id=item.id,
                    league=item.league or stash.league,
                    base_type=item.baseType,
                    type_line=item.typeLine,
                    value=item_value.value,
                    currency=item_value.currency,
                ))
        return points

    def accept(self, records: Sequence[Any]) -> None:
        points = self.extract(records)
        self.total_points += len(points)

        if self.on_prices is not None:
            self.on_prices(points)

        logger.info(f"Extracted {len(points)} price points")
