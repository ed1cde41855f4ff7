"""
Initial cursor from poe.ninja.

Starting the public stash feed at ``"0"`` means replaying years of history.
poe.ninja publishes the change id it is currently at, which is close to the
head of the feed.
"""

import json
import logging
from typing import Optional

import aiohttp

from stash_feed.core.datasource import InitialCursorSource
from stash_feed.core.errors import UnexpectedStatus, ValidationError

logger = logging.getLogger(__name__)

NINJA_STATS_URL = "https://poe.ninja/api/data/getstats"


class NinjaCursorSource(InitialCursorSource):
    """Fetches the latest ``next_change_id`` known to poe.ninja."""

    def __init__(
        self,
        session: aiohttp.ClientSession,
        url: str = NINJA_STATS_URL,
        user_agent: Optional[str] = None
    ):
        self.session = session
        self.url = url
        self.user_agent = user_agent

    async def get_initial_cursor(self) -> str:
        """
        Return the current head of the feed.

        Raises:
            UnexpectedStatus: If poe.ninja answers with a non-2xx status
            ValidationError: If the response has no next_change_id
        """
        headers = {"User-Agent": self.user_agent} if self.user_agent else {}

        async with self.session.get(self.url, headers=headers) as response:
            body = await response.text()
            if not 200 <= response.status < 300:
                logger.error(
                    f"Failed to fetch initial next change ID: HTTP {response.status}"
                )
                raise UnexpectedStatus(self.url, response.status, body)

        try:
            data = json.loads(body)
        except json.JSONDecodeError as e:
            raise ValidationError(f"poe.ninja stats are not valid JSON: {e}") from e

        next_change_id = data.get("next_change_id") if isinstance(data, dict) else None
        if not next_change_id:
            logger.error("next_change_id is missing in poe.ninja stats")
            raise ValidationError("next_change_id is missing in poe.ninja stats")

        return str(next_change_id)
