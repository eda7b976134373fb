"""Tests for the credential authorities."""

from urllib.parse import parse_qs

import httpx
import pytest
import respx

from apilayer.exceptions import AuthFailedError
from apilayer.models import TokenGrant
from apilayer.providers.authority import ClientCredentialsAuthority, StaticTokenAuthority
from apilayer.services.token_provider import TokenProvider

TOKEN_URL = "https://login.example.test/tenant/oauth2/v2.0/token"


class TestStaticTokenAuthority:

    @pytest.mark.asyncio
    async def test_grant(self, clock):
        authority = StaticTokenAuthority("pat-123", lifetime=600, clock=clock)
        grant = await authority(frozenset())
        assert isinstance(grant, TokenGrant)
        assert grant.access_token == "pat-123"
        assert grant.expires_at == clock() + 600

    @pytest.mark.asyncio
    async def test_empty_token_fails_in_provider(self, clock):
        provider = TokenProvider(StaticTokenAuthority("", clock=clock), clock=clock)
        with pytest.raises(AuthFailedError):
            await provider.get_token()


class TestClientCredentialsAuthority:

    @pytest.mark.asyncio
    @respx.mock
    async def test_posts_client_credentials(self):
        route = respx.post(TOKEN_URL).mock(
            return_value=httpx.Response(
                200,
                json={"access_token": "abc", "expires_in": 3599, "token_type": "Bearer"},
            )
        )
        authority = ClientCredentialsAuthority(TOKEN_URL, "client", "secret")

        grant = await authority(frozenset({"b.read", "a.read"}))

        assert grant["access_token"] == "abc"
        form = parse_qs(route.calls.last.request.content.decode())
        assert form["grant_type"] == ["client_credentials"]
        assert form["client_id"] == ["client"]
        assert form["client_secret"] == ["secret"]
        assert form["scope"] == ["a.read b.read"]

    @pytest.mark.asyncio
    @respx.mock
    async def test_works_through_provider(self, clock):
        respx.post(TOKEN_URL).mock(
            return_value=httpx.Response(200, json={"access_token": "abc", "expires_in": 3600})
        )
        provider = TokenProvider(
            ClientCredentialsAuthority(TOKEN_URL, "client", "secret"), clock=clock
        )
        credential = await provider.get_token(["a.read"])
        assert credential.token == "abc"
        assert credential.expires_at == clock() + 3600

    @pytest.mark.asyncio
    @respx.mock
    async def test_http_error_becomes_auth_failure(self, clock):
        respx.post(TOKEN_URL).mock(return_value=httpx.Response(400, json={"error": "invalid_client"}))
        provider = TokenProvider(
            ClientCredentialsAuthority(TOKEN_URL, "client", "wrong"), clock=clock
        )
        with pytest.raises(AuthFailedError):
            await provider.get_token()

    @pytest.mark.asyncio
    @respx.mock
    async def test_shared_client(self):
        respx.post(TOKEN_URL).mock(
            return_value=httpx.Response(200, json={"access_token": "abc", "expires_in": 60})
        )
        async with httpx.AsyncClient() as client:
            authority = ClientCredentialsAuthority(TOKEN_URL, "c", "s", http_client=client)
            grant = await authority(frozenset())
        assert grant["expires_in"] == 60
