"""Three-tier response cache: memory, local persistent storage, shared remote.

Reads probe the tiers from fastest to slowest and promote hits into the
faster tiers. Writes go through every tier; the remote write is best-effort.
"""

import hashlib
import json
import re
import time
from dataclasses import dataclass
from typing import Any, Callable, Mapping, Optional

from apilayer.core.cache import CacheBackend, InMemoryCache
from apilayer.core.logging import get_logger
from apilayer.exceptions import CacheWriteError
from apilayer.models import CacheEntry, InvalidateResult, PutResult

logger = get_logger(__name__)

_SLASHES = re.compile(r"/{2,}")


def make_cache_key(
    method: str,
    path: str,
    params: Optional[Mapping[str, Any]] = None,
    body: Any = None,
) -> str:
    """Build the cache key identifying a request.

    The key is the upper-cased method, the normalized path and a SHA-256
    fingerprint of the sorted query parameters and body, so two requests
    that differ only in parameter order share a key.
    """
    normalized_path = "/" + _SLASHES.sub("/", path.strip()).strip("/")
    if isinstance(body, (bytes, bytearray)):
        body = hashlib.sha256(body).hexdigest()
    fingerprint_source = json.dumps(
        {"params": sorted((params or {}).items()), "body": body},
        sort_keys=True,
        ensure_ascii=False,
        default=str,
    )
    fingerprint = hashlib.sha256(fingerprint_source.encode()).hexdigest()
    return f"{method.upper()}:{normalized_path}:{fingerprint}"


@dataclass
class CacheTier:
    """A backend together with the time-to-live enforced on reads from it."""
    backend: CacheBackend
    ttl: float
    name: str = ""

    def __post_init__(self) -> None:
        if self.ttl <= 0:
            raise ValueError("tier ttl must be positive")
        if not self.name:
            self.name = self.backend.name


class TieredCache:
    """Cache composed of a memory tier plus optional local and remote tiers.

    While a lookup for a key is in flight the key carries a generation
    counter, bumped by ``put`` and ``invalidate``. A promotion is only
    written back if the generation is unchanged, and a promotion write that
    lands after a change is deleted again, so a concurrent invalidation is
    never undone by a read that started before it. No lock is held while
    awaiting a tier.

    Remote tier errors never fail an operation: on read they count as a
    miss, on write or delete they are reported in the returned result.
    """

    def __init__(
        self,
        memory: CacheTier,
        local: Optional[CacheTier] = None,
        remote: Optional[CacheTier] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.memory = memory
        self.local = local
        self.remote = remote
        self._clock = clock
        self._epoch = 0
        self._generations: dict[str, int] = {}
        self._lookups: dict[str, int] = {}

    @classmethod
    def memory_only(
        cls,
        ttl: float = 60.0,
        capacity: int = 1024,
        clock: Callable[[], float] = time.time,
    ) -> "TieredCache":
        return cls(CacheTier(InMemoryCache(capacity, clock=clock), ttl), clock=clock)

    @property
    def tiers(self) -> list[CacheTier]:
        return [t for t in (self.memory, self.local, self.remote) if t is not None]

    def _generation(self, key: str) -> tuple[int, int]:
        return self._epoch, self._generations.get(key, 0)

    def _bump(self, key: str) -> None:
        # Only lookups in flight compare generations
        if key in self._lookups:
            self._generations[key] = self._generations.get(key, 0) + 1

    def _enter_lookup(self, key: str) -> None:
        self._lookups[key] = self._lookups.get(key, 0) + 1

    def _exit_lookup(self, key: str) -> None:
        remaining = self._lookups[key] - 1
        if remaining:
            self._lookups[key] = remaining
        else:
            del self._lookups[key]
            self._generations.pop(key, None)

    async def _read_tier(self, tier: CacheTier, key: str) -> Optional[CacheEntry]:
        if tier is self.memory:
            raw = await tier.backend.get(key)
        else:
            try:
                raw = await tier.backend.get(key)
            except Exception as e:
                logger.warning(
                    f"Cache read from {tier.name} tier failed, treating as miss: {e}"
                )
                return None
        if raw is None:
            return None

        try:
            entry = CacheEntry.from_bytes(key, raw)
        except ValueError as e:
            logger.warning(f"Discarding unreadable {tier.name} cache record: {e}")
            return None
        if entry.is_expired(self._clock(), tier.ttl):
            return None
        return entry

    def _remaining_ttl(self, tier: CacheTier, entry: CacheEntry) -> float:
        return tier.ttl - entry.age(self._clock())

    async def get(self, key: str) -> Optional[CacheEntry]:
        """Return the freshest entry for ``key`` from the fastest tier holding it."""
        entry, _ = await self.lookup(key)
        return entry

    async def lookup(self, key: str) -> tuple[Optional[CacheEntry], Optional[str]]:
        """Like ``get`` but also return the name of the tier that answered."""
        self._enter_lookup(key)
        try:
            generation = self._generation(key)
            faster: list[CacheTier] = []
            for tier in self.tiers:
                entry = await self._read_tier(tier, key)
                if entry is None:
                    faster.append(tier)
                    continue
                if faster:
                    await self._promote(entry, faster, generation)
                return entry, tier.name
            return None, None
        finally:
            self._exit_lookup(key)

    async def _promote(
        self, entry: CacheEntry, tiers: list[CacheTier], generation: tuple[int, int]
    ) -> None:
        raw = entry.to_bytes()
        for tier in tiers:
            if self._generation(entry.key) != generation:
                logger.debug(f"Skipping promotion of {entry.key[:32]}, key changed meanwhile")
                return
            ttl = self._remaining_ttl(tier, entry)
            if ttl <= 0:
                continue
            try:
                await tier.backend.set(entry.key, raw, ttl)
            except Exception as e:
                logger.warning(f"Promotion into {tier.name} tier failed: {e}")
                continue
            if self._generation(entry.key) != generation:
                # A put or invalidate ran while the write was pending
                await self._undo_promotion(tier, entry.key)
                return

    async def _undo_promotion(self, tier: CacheTier, key: str) -> None:
        logger.debug(f"Rolling back stale promotion of {key[:32]} in {tier.name} tier")
        try:
            await tier.backend.delete(key)
        except Exception as e:
            logger.warning(f"Rollback of stale promotion in {tier.name} tier failed: {e}")

    async def put(self, key: str, value: bytes) -> PutResult:
        """Write ``value`` through every tier.

        Raises:
            CacheWriteError: If the memory or local tier rejects the write.
        """
        self._bump(key)
        entry = CacheEntry(key=key, value=value, created_at=self._clock())
        raw = entry.to_bytes()

        for tier in (self.memory, self.local):
            if tier is None:
                continue
            try:
                await tier.backend.set(key, raw, tier.ttl)
            except Exception as e:
                raise CacheWriteError(key, tier.name, str(e)) from e

        if self.remote is None:
            return PutResult()
        try:
            await self.remote.backend.set(key, raw, self.remote.ttl)
        except Exception as e:
            logger.warning(f"Remote cache write failed for {key[:32]}: {e}")
            return PutResult(remote_stored=False, error=str(e))
        return PutResult()

    async def invalidate(self, key: str) -> InvalidateResult:
        """Remove ``key`` from every tier. Removing an absent key is a no-op."""
        self._bump(key)
        await self.memory.backend.delete(key)
        if self.local is not None:
            await self.local.backend.delete(key)
        if self.remote is None:
            return InvalidateResult()
        try:
            await self.remote.backend.delete(key)
        except Exception as e:
            logger.warning(f"Remote cache delete failed for {key[:32]}: {e}")
            return InvalidateResult(remote_deleted=False, error=str(e))
        return InvalidateResult()

    async def clear(self) -> None:
        """Empty every tier. Remote failures are logged."""
        self._epoch += 1
        self._generations.clear()
        for tier in self.tiers:
            try:
                await tier.backend.clear()
            except Exception as e:
                if tier is not self.remote:
                    raise
                logger.warning(f"Remote cache clear failed: {e}")
