"""HTTP transport boundary built on httpx.

The transport performs exactly one HTTP exchange and classifies its result
into an ``ApiCallOutcome``; it never retries and never raises for HTTP or
network errors.
"""

import math
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Any, AsyncGenerator, Awaitable, Callable, Mapping, Optional, Protocol

import httpx

from apilayer.core.config import Settings
from apilayer.core.logging import get_logger
from apilayer.models import (
    ApiCallOutcome,
    AuthFailed,
    PermanentFailure,
    RateLimited,
    Success,
    TransientFailure,
)

logger = get_logger(__name__)


class Transport(Protocol):
    """Callable performing a single request attempt."""

    def __call__(
        self,
        method: str,
        path: str,
        headers: Mapping[str, str],
        body: Any = None,
        params: Optional[Mapping[str, Any]] = None,
    ) -> Awaitable[ApiCallOutcome]: ...


def parse_retry_after(
    value: Optional[str],
    now: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
) -> Optional[float]:
    """Parse a Retry-After header given as delta-seconds or an HTTP date.

    Returns:
        Seconds to wait (never negative), or None if absent, unparseable or
        not finite.
    """
    if value is None:
        return None
    value = value.strip()
    if not value:
        return None
    try:
        seconds = float(value)
    except ValueError:
        pass
    else:
        if not math.isfinite(seconds):
            logger.debug(f"Ignoring non-finite Retry-After header: {value!r}")
            return None
        return max(0.0, seconds)
    try:
        when = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        logger.debug(f"Ignoring unparseable Retry-After header: {value!r}")
        return None
    if when.tzinfo is None:
        when = when.replace(tzinfo=timezone.utc)
    return max(0.0, (when - now()).total_seconds())


def classify_response(
    status_code: int,
    headers: Mapping[str, str],
    content: bytes,
) -> ApiCallOutcome:
    """Map an HTTP response onto an outcome.

    2xx is success, 401 an auth failure, 429 a rate limit (with the parsed
    Retry-After), 5xx transient and every other status permanent.
    """
    if 200 <= status_code < 300:
        return Success(payload=content, status_code=status_code, headers=dict(headers))
    if status_code == 401:
        return AuthFailed(reason="credential rejected (401)")
    if status_code == 429:
        retry_after = next(
            (v for k, v in headers.items() if k.lower() == "retry-after"), None
        )
        return RateLimited(retry_after=parse_retry_after(retry_after))
    if status_code >= 500:
        return TransientFailure(cause=f"server error ({status_code})")
    return PermanentFailure(cause=f"request rejected ({status_code})", status_code=status_code)


def create_http_client(config: Settings) -> httpx.AsyncClient:
    """Create an HTTP client with pooled connections and granular timeouts.

    The caller owns the client and must close it:
        async with create_http_client(settings) as client:
            ...
    """
    timeout = httpx.Timeout(
        connect=config.httpx_connect_timeout,
        read=config.httpx_read_timeout,
        write=config.httpx_write_timeout,
        pool=config.httpx_pool_timeout,
    )
    limits = httpx.Limits(
        max_connections=config.httpx_max_connections,
        max_keepalive_connections=config.httpx_max_keepalive_connections,
        keepalive_expiry=config.httpx_keepalive_expiry,
    )
    return httpx.AsyncClient(timeout=timeout, limits=limits)


class HttpxTransport:
    """Transport sending requests to one base URL with httpx.

    Accepts an external ``httpx.AsyncClient`` for connection pooling, or
    creates a short-lived one per request if none is provided.
    """

    def __init__(
        self,
        base_url: str,
        http_client: Optional[httpx.AsyncClient] = None,
        timeout: float = 30.0,
    ):
        """Initialize the transport.

        Args:
            base_url: The API base URL
            http_client: Optional shared HTTP client for connection pooling
            timeout: Request timeout in seconds for per-request clients
        """
        self.base_url = base_url.rstrip('/')
        self._http_client = http_client
        self.timeout = timeout

    @asynccontextmanager
    async def _client_context(self) -> AsyncGenerator[httpx.AsyncClient, None]:
        if self._http_client is not None:
            yield self._http_client
            return
        client = httpx.AsyncClient(timeout=self.timeout)
        try:
            yield client
        finally:
            await client.aclose()

    def _get_endpoint_url(self, path: str) -> str:
        return f"{self.base_url}/{path.lstrip('/')}"

    async def __call__(
        self,
        method: str,
        path: str,
        headers: Mapping[str, str],
        body: Any = None,
        params: Optional[Mapping[str, Any]] = None,
    ) -> ApiCallOutcome:
        request_kwargs: dict[str, Any] = {"headers": dict(headers)}
        if params:
            request_kwargs["params"] = params
        if isinstance(body, (bytes, bytearray, str)):
            request_kwargs["content"] = body
        elif body is not None:
            request_kwargs["json"] = body

        url = self._get_endpoint_url(path)
        try:
            async with self._client_context() as client:
                response = await client.request(method.upper(), url, **request_kwargs)
        except httpx.TimeoutException as e:
            logger.debug(f"{method} {path} timed out: {type(e).__name__}")
            return TransientFailure(cause=f"timeout ({type(e).__name__})")
        except httpx.TransportError as e:
            logger.debug(f"{method} {path} network error: {type(e).__name__}")
            return TransientFailure(cause=f"network error ({type(e).__name__})")

        return classify_response(response.status_code, response.headers, response.content)
