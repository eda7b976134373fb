"""Credential authorities: where the token provider gets bearer tokens from."""

import time
from typing import Callable, Optional

import httpx

from apilayer.core.logging import get_logger
from apilayer.models import TokenGrant

logger = get_logger(__name__)


class StaticTokenAuthority:
    """Hand out a fixed token (API key, personal access token).

    Each grant is reported valid for ``lifetime`` seconds, so the provider
    re-asks periodically and a rotated key is picked up.
    """

    def __init__(
        self,
        token: str,
        lifetime: float = 3600.0,
        clock: Callable[[], float] = time.time,
    ):
        self._token = token
        self.lifetime = lifetime
        self._clock = clock

    async def __call__(self, scopes: frozenset[str]) -> TokenGrant:
        return TokenGrant(access_token=self._token, expires_at=self._clock() + self.lifetime)


class ClientCredentialsAuthority:
    """OAuth2 client-credentials grant against a token endpoint.

    Scopes are sent space separated. HTTP and network errors propagate so
    the token provider can turn them into an authentication failure.
    """

    def __init__(
        self,
        token_url: str,
        client_id: str,
        client_secret: str,
        http_client: Optional[httpx.AsyncClient] = None,
        timeout: float = 10.0,
    ):
        self.token_url = token_url
        self.client_id = client_id
        self._client_secret = client_secret
        self._http_client = http_client
        self.timeout = timeout

    async def _post(self, data: dict[str, str]) -> httpx.Response:
        if self._http_client is not None:
            return await self._http_client.post(self.token_url, data=data)
        async with httpx.AsyncClient(timeout=self.timeout) as client:
            return await client.post(self.token_url, data=data)

    async def __call__(self, scopes: frozenset[str]) -> dict:
        data = {
            "grant_type": "client_credentials",
            "client_id": self.client_id,
            "client_secret": self._client_secret,
        }
        if scopes:
            data["scope"] = " ".join(sorted(scopes))

        response = await self._post(data)
        response.raise_for_status()
        logger.debug(f"Token endpoint answered {response.status_code}")
        return response.json()
