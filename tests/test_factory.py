"""Tests for wiring a client from settings."""

import httpx
import pytest
import respx
from unittest.mock import AsyncMock, MagicMock, patch

from apilayer.core.config import Settings
from apilayer.factory import build_authority, build_cache, build_client
from apilayer.models import Success
from apilayer.providers.authority import ClientCredentialsAuthority, StaticTokenAuthority
from apilayer.services.observability import QueueEventSink

BASE_URL = "https://api.example.test"


def make_settings(tmp_path, **overrides):
    values = dict(
        _env_file=None,
        api_base_url=BASE_URL,
        auth_static_token="pat-123",
        cache_local_dir=tmp_path / "cache",
    )
    values.update(overrides)
    return Settings(**values)


def make_redis_client():
    client = MagicMock()
    client.get = AsyncMock(return_value=None)
    client.setex = AsyncMock()
    client.delete = AsyncMock()
    client.aclose = AsyncMock()
    return client


class TestBuildCache:

    def test_disabled(self, tmp_path):
        assert build_cache(make_settings(tmp_path, cache_enabled=False)) is None

    def test_memory_and_local(self, tmp_path):
        cache = build_cache(make_settings(tmp_path, cache_local_ttl=120))

        assert [t.name for t in cache.tiers] == ["memory", "local"]
        assert cache.local.ttl == 120

    def test_memory_only(self, tmp_path):
        cache = build_cache(make_settings(tmp_path, cache_local_enabled=False))
        assert [t.name for t in cache.tiers] == ["memory"]

    def test_remote_from_client(self, tmp_path):
        redis_client = make_redis_client()
        cache = build_cache(make_settings(tmp_path), redis_client=redis_client)

        assert [t.name for t in cache.tiers] == ["memory", "local", "remote"]
        assert cache.remote.backend.prefix == "apilayer:v1"

    def test_remote_from_settings(self, tmp_path):
        cache = build_cache(make_settings(tmp_path, redis_enabled=True, cache_remote_ttl=900))
        assert cache.remote.ttl == 900


class TestBuildAuthority:

    def test_static_token(self, tmp_path):
        assert isinstance(build_authority(make_settings(tmp_path)), StaticTokenAuthority)

    def test_client_credentials(self, tmp_path):
        config = make_settings(
            tmp_path,
            auth_static_token="",
            auth_token_url="https://login.example.test/token",
            auth_client_id="client",
            auth_client_secret="secret",
        )
        assert isinstance(build_authority(config), ClientCredentialsAuthority)

    def test_nothing_configured(self, tmp_path):
        with pytest.raises(ValueError):
            build_authority(make_settings(tmp_path, auth_static_token=""))


class TestBuildClient:

    def test_settings_flow_into_components(self, tmp_path):
        config = make_settings(
            tmp_path,
            rate_limit_max_calls=7,
            rate_limit_max_retry_after=45,
            client_max_retries=3,
            client_timeout=12,
            token_safety_margin=30,
            api_scopes=["read"],
        )
        client = build_client(config, transport=AsyncMock())

        assert client.rate_limiter.max_calls == 7
        assert client.rate_limiter.max_defer == 45
        assert client.retry_policy.max_retries == 3
        assert client.timeout == 12
        assert client.token_provider.safety_margin == 30
        assert client.scopes == frozenset({"read"})

    def test_base_url_required_without_transport(self, tmp_path):
        with pytest.raises(ValueError):
            build_client(make_settings(tmp_path, api_base_url=""))

    @pytest.mark.asyncio
    async def test_transport_override(self, tmp_path):
        transport = AsyncMock(return_value=Success(b"payload"))
        events = QueueEventSink()
        client = build_client(
            make_settings(tmp_path, cache_local_enabled=False),
            transport=transport,
            event_sink=events,
        )

        assert await client.get("/items") == b"payload"
        assert await client.get("/items") == b"payload"

        assert transport.await_count == 1
        method, path, headers, body, params = transport.await_args.args
        assert headers["Authorization"] == "Bearer pat-123"
        assert [e.cache_hit for e in events.drain()] == [False, True]

    @pytest.mark.asyncio
    async def test_aclose_leaves_host_redis_open(self, tmp_path):
        redis_client = make_redis_client()
        client = build_client(
            make_settings(tmp_path, cache_local_enabled=False),
            transport=AsyncMock(return_value=Success(b"payload")),
            redis_client=redis_client,
        )

        await client.get("/items")
        await client.aclose()

        redis_client.setex.assert_awaited_once()
        redis_client.aclose.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_aclose_closes_own_redis(self, tmp_path):
        redis_client = make_redis_client()
        with patch("apilayer.core.cache.aioredis.from_url", return_value=redis_client) as from_url:
            client = build_client(
                make_settings(tmp_path, cache_local_enabled=False, redis_enabled=True),
                transport=AsyncMock(return_value=Success(b"payload")),
            )
            await client.get("/items")
            await client.aclose()

        from_url.assert_called_once_with("redis://localhost:6379/0")
        redis_client.aclose.assert_awaited_once()

    @pytest.mark.asyncio
    @respx.mock
    async def test_end_to_end_over_http(self, tmp_path):
        route = respx.get(f"{BASE_URL}/items").mock(
            side_effect=[
                httpx.Response(503),
                httpx.Response(200, json={"items": [1, 2]}),
            ]
        )
        config = make_settings(
            tmp_path,
            cache_local_enabled=False,
            client_base_backoff=0.01,
            client_backoff_jitter=0,
        )

        async with build_client(config) as client:
            assert await client.get_json("/items") == {"items": [1, 2]}

        assert route.call_count == 2
        assert route.calls.last.request.headers["Authorization"] == "Bearer pat-123"
