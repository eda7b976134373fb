"""Factory assembling a ResilientApiClient from settings.

The host application calls ``build_client`` once and owns the returned
client; the limiter, token provider and cache live on that instance, not in
module globals.
"""

from typing import Any, Optional

from apilayer.core.cache import FileCache, InMemoryCache, RedisCache
from apilayer.core.config import Settings
from apilayer.core.logging import get_logger
from apilayer.providers.authority import ClientCredentialsAuthority, StaticTokenAuthority
from apilayer.providers.retry import RetryPolicy
from apilayer.providers.transport import HttpxTransport, Transport, create_http_client
from apilayer.services.api_client import ResilientApiClient
from apilayer.services.observability import EventSink
from apilayer.services.rate_limiter import SlidingWindowRateLimiter
from apilayer.services.tiered_cache import CacheTier, TieredCache
from apilayer.services.token_provider import CredentialAuthority, TokenProvider

logger = get_logger(__name__)


def build_cache(config: Settings, redis_client: Optional[Any] = None) -> Optional[TieredCache]:
    """Build the tiered cache described by ``config`` (None when disabled)."""
    if not config.cache_enabled:
        return None

    memory = CacheTier(InMemoryCache(config.cache_memory_capacity), config.cache_memory_ttl)
    local = None
    if config.cache_local_enabled:
        local = CacheTier(FileCache(config.cache_local_dir), config.cache_local_ttl)
    remote = None
    if config.redis_enabled or redis_client is not None:
        remote = CacheTier(
            RedisCache(config.redis_url, prefix=config.cache_remote_prefix, client=redis_client),
            config.cache_remote_ttl,
        )
    return TieredCache(memory, local, remote)


def build_authority(config: Settings) -> CredentialAuthority:
    """Pick the credential authority configured in ``config``.

    Raises:
        ValueError: If neither a static token nor a token endpoint is set.
    """
    if config.auth_static_token:
        return StaticTokenAuthority(
            config.auth_static_token, lifetime=config.auth_static_token_lifetime
        )
    if config.auth_token_url:
        return ClientCredentialsAuthority(
            config.auth_token_url,
            config.auth_client_id,
            config.auth_client_secret,
            timeout=config.httpx_connect_timeout,
        )
    raise ValueError(
        "No credential authority configured: set APILAYER_AUTH_STATIC_TOKEN "
        "or APILAYER_AUTH_TOKEN_URL"
    )


def build_client(
    config: Optional[Settings] = None,
    transport: Optional[Transport] = None,
    authority: Optional[CredentialAuthority] = None,
    event_sink: Optional[EventSink] = None,
    redis_client: Optional[Any] = None,
) -> ResilientApiClient:
    """Wire every component from settings.

    Args:
        config: Settings to use (defaults to a fresh ``Settings()``)
        transport: Transport override; by default an ``HttpxTransport`` on
            ``api_base_url`` with a pooled client closed by ``aclose``
        authority: Credential authority override
        event_sink: Observability sink (defaults to logging)
        redis_client: Pre-built redis client for the remote tier; the host
            keeps ownership and closes it itself

    Returns:
        A ready ResilientApiClient. Close it with ``await client.aclose()``.
    """
    config = config or Settings()
    on_close = []

    if transport is None:
        if not config.api_base_url:
            raise ValueError("APILAYER_API_BASE_URL is required without a transport")
        http_client = create_http_client(config)
        on_close.append(http_client.aclose)
        transport = HttpxTransport(config.api_base_url, http_client=http_client)

    cache = build_cache(config, redis_client)
    if cache is not None and cache.remote is not None and redis_client is None:
        # A host-supplied redis client stays with the host
        on_close.append(cache.remote.backend.close)

    client = ResilientApiClient(
        transport=transport,
        token_provider=TokenProvider(
            authority or build_authority(config),
            safety_margin=config.token_safety_margin,
        ),
        rate_limiter=SlidingWindowRateLimiter(
            max_calls=config.rate_limit_max_calls,
            window_seconds=config.rate_limit_window_seconds,
            max_defer=config.rate_limit_max_retry_after,
        ),
        cache=cache,
        retry_policy=RetryPolicy(
            max_retries=config.client_max_retries,
            base_delay=config.client_base_backoff,
            max_delay=config.client_backoff_cap,
            jitter=config.client_backoff_jitter,
        ),
        timeout=config.client_timeout,
        scopes=config.api_scopes,
        event_sink=event_sink,
        on_close=on_close,
    )
    logger.info(
        f"API client ready: {config.rate_limit_max_calls} calls/"
        f"{config.rate_limit_window_seconds:g}s, "
        f"cache tiers={[t.name for t in cache.tiers] if cache else []}"
    )
    return client
