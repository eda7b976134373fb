"""Stateful services shared by concurrent API calls."""

from apilayer.services.api_client import ResilientApiClient
from apilayer.services.observability import (
    CompositeEventSink,
    EventSink,
    LoggingEventSink,
    QueueEventSink,
)
from apilayer.services.rate_limiter import SlidingWindowRateLimiter
from apilayer.services.tiered_cache import CacheTier, TieredCache, make_cache_key
from apilayer.services.token_provider import CredentialAuthority, TokenProvider

__all__ = [
    "ResilientApiClient",
    "CompositeEventSink",
    "EventSink",
    "LoggingEventSink",
    "QueueEventSink",
    "SlidingWindowRateLimiter",
    "CacheTier",
    "TieredCache",
    "make_cache_key",
    "CredentialAuthority",
    "TokenProvider",
]
