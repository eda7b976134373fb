"""Resilient API client: caching, rate limiting, authentication and retry
around a single transport.

One logical call runs through these steps:

1. cache check (GET/HEAD only, unless bypassed)
2. admission by the rate limiter, waiting as long as it asks
3. credential lookup through the token provider
4. dispatch through the transport
5. outcome handling: return, retry (rate limited, transient, first auth
   failure) or give up (permanent failure, exhausted retries, deadline)

Every suspension point is bounded by the call deadline.
"""

import asyncio
import json
import time
import uuid
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Iterable, Mapping, Optional

from apilayer.core.logging import get_log_context, get_logger
from apilayer.exceptions import (
    ApiLayerError,
    AuthFailedError,
    CacheWriteError,
    PermanentFailureError,
    TransientFailureError,
)
from apilayer.models import (
    ApiCallOutcome,
    AuthFailed,
    CallEvent,
    Credential,
    InvalidateResult,
    OutcomeKind,
    PermanentFailure,
    RateLimited,
    Success,
    TransientFailure,
)
from apilayer.providers.retry import RetryPolicy
from apilayer.providers.transport import Transport
from apilayer.services.observability import EventSink, LoggingEventSink
from apilayer.services.rate_limiter import SlidingWindowRateLimiter
from apilayer.services.tiered_cache import TieredCache, make_cache_key
from apilayer.services.token_provider import TokenProvider

logger = get_logger(__name__)

CACHEABLE_METHODS = frozenset({"GET", "HEAD"})

DEADLINE_EXCEEDED = "deadline exceeded"


@dataclass
class _CallState:
    """Book-keeping for one logical call."""
    request_id: str
    method: str
    path: str
    started: float
    deadline: float
    attempts: int = 0
    waited: float = 0.0
    auth_refreshed: bool = False


class ResilientApiClient:
    """Perform API calls against one service with caching, rate limiting,
    token authentication and retries.

    The limiter, token provider and cache are shared, explicitly passed
    instances; several calls may run concurrently against them.

    Example:
        >>> client = ResilientApiClient(transport, tokens, limiter, cache)
        >>> payload = await client.get("/projects", params={"top": 10})
    """

    def __init__(
        self,
        transport: Transport,
        token_provider: TokenProvider,
        rate_limiter: SlidingWindowRateLimiter,
        cache: Optional[TieredCache] = None,
        retry_policy: Optional[RetryPolicy] = None,
        timeout: float = 30.0,
        scopes: Iterable[str] = (),
        event_sink: Optional[EventSink] = None,
        default_headers: Optional[Mapping[str, str]] = None,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        on_close: Iterable[Callable[[], Awaitable[None]]] = (),
    ):
        """Initialize the client.

        Args:
            transport: Async callable performing one HTTP exchange
            token_provider: Source of bearer credentials
            rate_limiter: Shared sliding window limiter
            cache: Tiered response cache, None disables caching
            retry_policy: Retry bounds and backoff (defaults to RetryPolicy())
            timeout: Default overall deadline per call in seconds
            scopes: Default scopes requested for credentials
            event_sink: Receives one CallEvent per finished call
            default_headers: Headers sent with every request
            clock: Time source, must match the limiter's and provider's
            sleep: Coroutine used for every wait
            on_close: Coroutines run by ``aclose`` (e.g. closing pools)
        """
        if timeout <= 0:
            raise ValueError("timeout must be positive")
        self.transport = transport
        self.token_provider = token_provider
        self.rate_limiter = rate_limiter
        self.cache = cache
        self.retry_policy = retry_policy or RetryPolicy()
        self.timeout = timeout
        self.scopes = frozenset(scopes)
        self.default_headers = dict(default_headers or {})
        self._event_sink = event_sink if event_sink is not None else LoggingEventSink()
        self._clock = clock
        self._sleep = sleep
        self._on_close = list(on_close)

    async def __aenter__(self) -> "ResilientApiClient":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        """Release resources handed over at construction."""
        callbacks, self._on_close = self._on_close, []
        for callback in callbacks:
            await callback()

    # Convenience wrappers

    async def get(self, path: str, **kwargs: Any) -> bytes:
        return await self.request("GET", path, **kwargs)

    async def get_json(self, path: str, **kwargs: Any) -> Any:
        return json.loads(await self.request("GET", path, **kwargs))

    async def post(self, path: str, **kwargs: Any) -> bytes:
        return await self.request("POST", path, **kwargs)

    async def put(self, path: str, **kwargs: Any) -> bytes:
        return await self.request("PUT", path, **kwargs)

    async def patch(self, path: str, **kwargs: Any) -> bytes:
        return await self.request("PATCH", path, **kwargs)

    async def delete(self, path: str, **kwargs: Any) -> bytes:
        return await self.request("DELETE", path, **kwargs)

    async def invalidate(
        self,
        path: str,
        method: str = "GET",
        params: Optional[Mapping[str, Any]] = None,
        body: Any = None,
    ) -> Optional[InvalidateResult]:
        """Drop the cached response of a request, if caching is enabled."""
        if self.cache is None:
            return None
        return await self.cache.invalidate(make_cache_key(method, path, params, body))

    async def request(
        self,
        method: str,
        path: str,
        *,
        params: Optional[Mapping[str, Any]] = None,
        body: Any = None,
        headers: Optional[Mapping[str, str]] = None,
        scopes: Optional[Iterable[str]] = None,
        bypass_cache: bool = False,
        timeout: Optional[float] = None,
    ) -> bytes:
        """Perform one logical API call.

        Args:
            method: HTTP method
            path: Path relative to the transport's base URL
            params: Query parameters
            body: Request body (bytes/str sent as-is, anything else as JSON)
            headers: Extra request headers
            scopes: Credential scopes, defaults to the client's scopes
            bypass_cache: Skip the cache lookup and store for this call
            timeout: Overall deadline for this call, defaults to the client's

        Returns:
            The response payload.

        Raises:
            AuthFailedError: No valid credential, or it was rejected twice
            PermanentFailureError: The server rejected the request (4xx)
            TransientFailureError: Retries or the deadline ran out
        """
        method = method.upper()
        now = self._clock()
        call = _CallState(
            request_id=uuid.uuid4().hex[:12],
            method=method,
            path=path,
            started=now,
            deadline=now + (self.timeout if timeout is None else timeout),
        )
        scope_set = self.scopes if scopes is None else frozenset(scopes)

        cache_key = None
        if self.cache is not None and method in CACHEABLE_METHODS and not bypass_cache:
            cache_key = make_cache_key(method, path, params, body)
            entry, tier = await self.cache.lookup(cache_key)
            if entry is not None:
                logger.debug(
                    f"Cache hit for {method} {path}",
                    extra=get_log_context(request_id=call.request_id, cache_tier=tier),
                )
                self._emit(call, OutcomeKind.SUCCESS, cache_tier=tier)
                return entry.value

        try:
            outcome = await self._run(call, params, body, headers, scope_set)
        except ApiLayerError as e:
            e.attempts = call.attempts
            e.elapsed = self._clock() - call.started
            logger.warning(
                f"{method} {path} failed: {e.kind}: {e.message}",
                extra=get_log_context(
                    request_id=call.request_id,
                    method=method,
                    path=path,
                    outcome=e.kind,
                    attempts=call.attempts,
                ),
            )
            self._emit(
                call,
                OutcomeKind(e.kind),
                status_code=getattr(e, "status_code", None),
                error=e.message,
            )
            raise

        if cache_key is not None:
            await self._store(cache_key, outcome.payload)
        self._emit(call, OutcomeKind.SUCCESS, status_code=outcome.status_code)
        return outcome.payload

    async def _run(
        self,
        call: _CallState,
        params: Optional[Mapping[str, Any]],
        body: Any,
        headers: Optional[Mapping[str, str]],
        scopes: frozenset[str],
    ) -> Success:
        while True:
            await self._admit(call)
            credential = await self._authenticate(call, scopes)
            call.attempts += 1
            outcome = await self._dispatch(call, credential, params, body, headers)

            if isinstance(outcome, Success):
                return outcome

            if isinstance(outcome, PermanentFailure):
                raise PermanentFailureError(outcome.cause, status_code=outcome.status_code)

            if isinstance(outcome, AuthFailed):
                if call.auth_refreshed:
                    raise AuthFailedError(f"credential rejected after refresh: {outcome.reason}")
                if not self.retry_policy.can_retry(call.attempts):
                    raise AuthFailedError(f"credential rejected: {outcome.reason}")
                call.auth_refreshed = True
                logger.info(
                    f"Credential rejected for {call.method} {call.path}, refreshing once",
                    extra=get_log_context(request_id=call.request_id),
                )
                await self._authenticate(call, scopes, force_refresh=True)
                continue

            if not self.retry_policy.can_retry(call.attempts):
                raise TransientFailureError(
                    f"gave up after {call.attempts} attempts, last outcome: "
                    f"{self._describe(outcome)}"
                )

            if isinstance(outcome, RateLimited):
                wait = outcome.retry_after
                if wait is None:
                    wait = self.retry_policy.backoff(call.attempts - 1)
                logger.info(
                    f"Rate limited on {call.method} {call.path}, retry in {wait:.2f}s",
                    extra=get_log_context(request_id=call.request_id, attempts=call.attempts),
                )
                self.rate_limiter.defer(wait)
                continue

            delay = self.retry_policy.backoff(call.attempts - 1)
            logger.warning(
                f"Attempt {call.attempts}/{self.retry_policy.max_retries} for "
                f"{call.method} {call.path} ended in {self._describe(outcome)}. "
                f"Waiting {delay:.2f}s...",
                extra=get_log_context(request_id=call.request_id, attempts=call.attempts),
            )
            await self._pause(call, delay)

    @staticmethod
    def _describe(outcome: ApiCallOutcome) -> str:
        if isinstance(outcome, TransientFailure):
            return f"{outcome.kind.value} ({outcome.cause})"
        return outcome.kind.value

    def _remaining(self, call: _CallState) -> float:
        remaining = call.deadline - self._clock()
        if remaining <= 0:
            raise TransientFailureError(DEADLINE_EXCEEDED)
        return remaining

    async def _pause(self, call: _CallState, delay: float) -> None:
        """Sleep ``delay`` seconds, capped by the deadline.

        Raises:
            TransientFailureError: Once the deadline is reached before the
                wait is over.
        """
        remaining = self._remaining(call)
        if delay >= remaining:
            await self._sleep(remaining)
            call.waited += remaining
            raise TransientFailureError(
                f"{DEADLINE_EXCEEDED} (next attempt would wait {delay:.2f}s)"
            )
        await self._sleep(delay)
        call.waited += delay

    async def _admit(self, call: _CallState) -> None:
        while True:
            wait = self.rate_limiter.admit()
            if wait <= 0:
                return
            await self._pause(call, wait)

    async def _authenticate(
        self,
        call: _CallState,
        scopes: frozenset[str],
        force_refresh: bool = False,
    ) -> Credential:
        deadline = asyncio.timeout(self._remaining(call))
        try:
            async with deadline:
                return await self.token_provider.get_token(
                    scopes, force_refresh=force_refresh
                )
        except TimeoutError:
            if not deadline.expired():
                raise
            raise TransientFailureError(
                f"{DEADLINE_EXCEEDED} while acquiring a credential"
            ) from None

    async def _dispatch(
        self,
        call: _CallState,
        credential: Credential,
        params: Optional[Mapping[str, Any]],
        body: Any,
        headers: Optional[Mapping[str, str]],
    ) -> ApiCallOutcome:
        request_headers = {**self.default_headers, **(headers or {})}
        request_headers.update(credential.authorization_header())
        deadline = asyncio.timeout(self._remaining(call))
        try:
            async with deadline:
                return await self.transport(
                    call.method, call.path, request_headers, body, params
                )
        except ApiLayerError:
            raise
        except Exception as e:
            if deadline.expired():
                raise TransientFailureError(f"{DEADLINE_EXCEEDED} during dispatch") from None
            # Includes a TimeoutError raised by the transport itself
            logger.warning(
                f"Transport raised {type(e).__name__} for {call.method} {call.path}",
                extra=get_log_context(request_id=call.request_id),
            )
            return TransientFailure(cause=type(e).__name__)

    async def _store(self, key: str, payload: bytes) -> None:
        try:
            result = await self.cache.put(key, payload)
        except CacheWriteError as e:
            logger.warning(f"Response not cached: {e}")
            return
        if result.soft_failure:
            logger.debug(f"Response cached locally only: {result.error}")

    def _emit(
        self,
        call: _CallState,
        outcome: OutcomeKind,
        cache_tier: Optional[str] = None,
        status_code: Optional[int] = None,
        error: Optional[str] = None,
    ) -> None:
        event = CallEvent(
            method=call.method,
            path=call.path,
            outcome=outcome,
            attempts=call.attempts,
            waited=call.waited,
            elapsed=self._clock() - call.started,
            cache_hit=cache_tier is not None,
            cache_tier=cache_tier,
            status_code=status_code,
            error=error,
            request_id=call.request_id,
        )
        try:
            self._event_sink(event)
        except Exception as e:
            logger.warning(f"Event sink failed: {e}")
