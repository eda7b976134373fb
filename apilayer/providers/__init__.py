"""Boundaries to the outside world.

This package provides:
- HTTP transport and response classification (HttpxTransport)
- Credential authorities (StaticTokenAuthority, ClientCredentialsAuthority)
- Retry policy with capped exponential backoff (RetryPolicy)
"""

from apilayer.providers.authority import ClientCredentialsAuthority, StaticTokenAuthority
from apilayer.providers.retry import RetryPolicy
from apilayer.providers.transport import (
    HttpxTransport,
    Transport,
    classify_response,
    create_http_client,
    parse_retry_after,
)

__all__ = [
    # Transport
    "HttpxTransport",
    "Transport",
    "classify_response",
    "create_http_client",
    "parse_retry_after",
    # Authorities
    "ClientCredentialsAuthority",
    "StaticTokenAuthority",
    # Retry
    "RetryPolicy",
]
