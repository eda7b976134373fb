"""Bearer credential provider with single-flight refresh."""

import asyncio
import time
from typing import Any, Awaitable, Callable, Iterable, Mapping, Optional, Union

from pydantic import ValidationError

from apilayer.core.logging import get_logger
from apilayer.exceptions import AuthFailedError
from apilayer.models import Credential, TokenGrant

logger = get_logger(__name__)

CredentialAuthority = Callable[
    [frozenset[str]], Awaitable[Union[TokenGrant, Mapping[str, Any]]]
]


class TokenProvider:
    """Supply valid credentials, refreshing them shortly before they expire.

    Credentials are cached per scope set. While an acquisition for a scope
    set is running, every other caller for the same scopes awaits that one
    acquisition instead of starting its own.

    Failures are not retried here; an ``AuthFailedError`` goes straight back
    to the caller, and the next call starts a fresh acquisition.
    """

    def __init__(
        self,
        authority: CredentialAuthority,
        safety_margin: float = 60.0,
        clock: Callable[[], float] = time.time,
    ):
        """Initialize the provider.

        Args:
            authority: Async callable returning a token grant for a scope set
            safety_margin: Seconds of remaining lifetime below which a
                cached credential is refreshed
            clock: Time source, epoch seconds
        """
        if safety_margin < 0:
            raise ValueError("safety_margin must not be negative")
        self._authority = authority
        self.safety_margin = safety_margin
        self._clock = clock
        self._credentials: dict[frozenset[str], Credential] = {}
        self._inflight: dict[frozenset[str], asyncio.Future] = {}

    async def get_token(
        self,
        scopes: Optional[Iterable[str]] = None,
        force_refresh: bool = False,
    ) -> Credential:
        """Return a credential valid for at least the safety margin.

        Args:
            scopes: Scopes the credential must be issued for
            force_refresh: Ignore the cached credential (e.g. after the
                server rejected it)

        Raises:
            AuthFailedError: If the authority fails or answers with a
                malformed or already expiring grant.
        """
        key = frozenset(scopes or ())

        if not force_refresh:
            cached = self._credentials.get(key)
            if cached is not None and cached.is_valid(self._clock(), self.safety_margin):
                return cached

        inflight = self._inflight.get(key)
        if inflight is None:
            if force_refresh:
                self._credentials.pop(key, None)
            inflight = asyncio.ensure_future(self._acquire(key))
            self._inflight[key] = inflight
            inflight.add_done_callback(lambda fut, key=key: self._finish(key, fut))

        # shield: one cancelled waiter must not cancel the shared acquisition
        return await asyncio.shield(inflight)

    def _finish(self, key: frozenset[str], fut: asyncio.Future) -> None:
        if self._inflight.get(key) is fut:
            del self._inflight[key]
        # exception() also marks the failure retrieved when no waiter is left
        if not fut.cancelled() and fut.exception() is not None:
            logger.debug(f"Credential acquisition failed for scopes {sorted(key)}")

    async def _acquire(self, key: frozenset[str]) -> Credential:
        logger.debug(f"Acquiring credential for scopes {sorted(key)}")
        try:
            raw = await self._authority(key)
        except AuthFailedError:
            raise
        except Exception as e:
            logger.warning(f"Credential authority error: {type(e).__name__}")
            raise AuthFailedError(f"credential acquisition failed: {type(e).__name__}") from e

        try:
            grant = raw if isinstance(raw, TokenGrant) else TokenGrant.model_validate(raw)
        except ValidationError as e:
            logger.warning("Credential authority returned a malformed grant")
            raise AuthFailedError("malformed token grant") from e

        now = self._clock()
        credential = Credential(
            token=grant.access_token,
            expires_at=grant.resolve_expiry(now),
            scopes=key,
        )
        if not credential.is_valid(now, self.safety_margin):
            raise AuthFailedError("issued credential expires within the safety margin")

        self._credentials[key] = credential
        logger.info(
            f"Credential refreshed for scopes {sorted(key)}, "
            f"valid for {credential.expires_at - now:.0f}s"
        )
        return credential

    def invalidate(self, scopes: Optional[Iterable[str]] = None) -> None:
        """Drop cached credentials for one scope set, or all when ``scopes`` is None."""
        if scopes is None:
            self._credentials.clear()
        else:
            self._credentials.pop(frozenset(scopes), None)
