"""
Bearer token providers.

The fetcher only needs an opaque token string. These helpers obtain one,
either pre-issued or through the OAuth client credentials grant that the
public stash API requires (scope ``service:psapi``).
"""
import logging
from abc import ABC, abstractmethod
from typing import Optional

import aiohttp

from .errors import UnexpectedStatus, ValidationError

logger = logging.getLogger(__name__)

OAUTH_TOKEN_URL = "https://www.pathofexile.com/oauth/token"
PUBLIC_STASH_SCOPE = "service:psapi"


class TokenProvider(ABC):
    """Supplies the bearer token used for feed requests."""

    @abstractmethod
    async def get_token(self) -> str:
        pass


class StaticTokenProvider(TokenProvider):
    """Wraps a token that was issued elsewhere."""

    def __init__(self, token: str):
        if not token:
            raise ValueError("token must not be empty")
        self._token = token

    async def get_token(self) -> str:
        return self._token


class ClientCredentialsProvider(TokenProvider):
    """
    Requests a token with the OAuth client credentials grant.

    The token is cached for the lifetime of the provider; call
    ``invalidate()`` to force a new request.
    """

    def __init__(
        self,
        session: aiohttp.ClientSession,
        client_id: str,
        client_secret: str,
        scope: str = PUBLIC_STASH_SCOPE,
        token_url: str = OAUTH_TOKEN_URL,
        user_agent: Optional[str] = None,
    ):
        if not client_id or not client_secret:
            raise ValueError("client_id and client_secret are required")

        self.session = session
        self.client_id = client_id
        self.client_secret = client_secret
        self.scope = scope
        self.token_url = token_url
        self.user_agent = user_agent
        self._token: Optional[str] = None

    def invalidate(self) -> None:
        self._token = None

    async def get_token(self) -> str:
        """
        Return the cached token, requesting one first if needed.

        Raises:
            UnexpectedStatus: If the token endpoint rejects the request
            ValidationError: If the response carries no access_token
        """
        if self._token is not None:
            logger.debug("Using cached token")
            return self._token

        logger.info("Fetching new token")
        data = {
            "client_id": self.client_id,
            "client_secret": self.client_secret,
            "grant_type": "client_credentials",
            "scope": self.scope,
        }
        headers = {"User-Agent": self.user_agent} if self.user_agent else {}

        async with self.session.post(self.token_url, data=data, headers=headers) as response:
            if not 200 <= response.status < 300:
                body = await response.text()
                raise UnexpectedStatus(self.token_url, response.status, body)
            payload = await response.json(content_type=None)

        token = payload.get("access_token") if isinstance(payload, dict) else None
        if not token:
            raise ValidationError("OAuth response has no access_token")

        self._token = token
        return token
