"""
Public stash tab feed.

Builds ``GET {api_base}/public-stash-tabs?id={cursor}`` requests and
decodes their bodies:

    {"next_change_id": "...", "stashes": [StashChange, ...]}

Decoding is all-or-nothing. If any part of the body violates the schema the
whole page is rejected, because the ``next_change_id`` of a malformed page
cannot be trusted to continue the feed.
"""

import json
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic import ValidationError as PydanticValidationError

from stash_feed.core.config import FeedConfig
from stash_feed.core.datasource import FeedSource, Page, RequestSpec
from stash_feed.core.errors import ValidationError


class Item(BaseModel):
    """
    An item inside a stash.

    Only the fields every item carries are validated; the remaining
    properties (mods, sockets, influences, ...) are kept as extra fields.
    """

    model_config = ConfigDict(extra="allow")

    verified: bool
    w: int
    h: int
    icon: str
    name: str
    typeLine: str
    baseType: str
    identified: bool
    ilvl: int
    id: Optional[str] = None
    league: Optional[str] = None
    note: Optional[str] = None
    stackSize: Optional[int] = None
    frameType: Optional[int] = None
    x: Optional[int] = None
    y: Optional[int] = None
    inventoryId: Optional[str] = None


class StashChange(BaseModel):
    """One changed stash tab."""

    model_config = ConfigDict(extra="allow")

    id: str
    public: bool
    accountName: Optional[str] = None
    stash: Optional[str] = None
    lastCharacterName: Optional[str] = None
    stashType: str
    league: Optional[str] = None
    items: list[Item] = Field(default_factory=list)


class PublicStashPage(BaseModel):
    """Top-level response body of the public stash endpoint."""

    next_change_id: str = Field(..., min_length=1)
    stashes: list[StashChange]


def _describe(error: PydanticValidationError) -> str:
    first = error.errors()[0]
    location = ".".join(str(part) for part in first["loc"]) or "<root>"
    return f"{location}: {first['msg']} ({error.error_count()} error(s))"


class PageDecoder:
    """Turns a raw public stash body into a Page or raises ValidationError."""

    def decode(self, body: bytes | str, request_cursor: str | None = None) -> Page:
        """
        Decode and validate a response body.

        Args:
            body: Raw JSON body
            request_cursor: Cursor the page was requested with, kept in metadata

        Returns:
            Page whose records are StashChange models

        Raises:
            ValidationError: If the body is not valid JSON or violates the schema
        """
        try:
            data: Any = json.loads(body)
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            raise ValidationError(f"body is not valid JSON: {e}") from e

        if not isinstance(data, dict):
            raise ValidationError(f"expected a JSON object, got {type(data).__name__}")

        try:
            parsed = PublicStashPage.model_validate(data)
        except PydanticValidationError as e:
            raise ValidationError(_describe(e)) from e

        return Page(
            cursor=parsed.next_change_id,
            records=tuple(parsed.stashes),
            metadata={
                "bytes": len(body.encode("utf-8")) if isinstance(body, str) else len(body),
                "request_cursor": request_cursor,
            },
        )


class PublicStashSource(FeedSource):
    """The public stash tab change feed."""

    def __init__(
        self,
        config: Optional[FeedConfig] = None,
        decoder: Optional[PageDecoder] = None
    ):
        self.config = config or FeedConfig()
        self.decoder = decoder or PageDecoder()

    @property
    def name(self) -> str:
        """Return the feed name."""
        return "public-stash-tabs"

    def prepare_request(self, cursor: str) -> RequestSpec:
        """
        Prepare the request for the page at ``cursor``.

        Credential and User-Agent headers are added by the fetcher.
        """
        return RequestSpec(
            url=self.config.url,
            method="GET",
            query_params={"id": cursor},
        )

    def decode(self, body: bytes | str, request_cursor: str | None = None) -> Page:
        return self.decoder.decode(body, request_cursor)
