"""Cache backends used as tiers of the tiered response cache.

Provides a pluggable byte-oriented backend interface with an in-memory LRU
implementation, a local file-based implementation and a Redis implementation.
"""

from abc import ABC, abstractmethod
from collections import OrderedDict
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Optional
import asyncio
import hashlib
import math
import os
import struct
import tempfile
import time

import redis.asyncio as aioredis

from apilayer.core.logging import get_logger

logger = get_logger(__name__)


@dataclass
class _CacheEntry:
    """Internal cache entry with TTL tracking."""

    value: bytes
    expires_at: float | None = None

    def is_expired(self, now: float) -> bool:
        """Check if the entry has expired."""
        if self.expires_at is None:
            return False
        return now > self.expires_at


class CacheBackend(ABC):
    """Abstract base class for cache backends.

    Keys are strings and values are opaque bytes. Implementations must be
    safe for concurrent use from one event loop.
    """

    name: str = "cache"

    @abstractmethod
    async def get(self, key: str) -> bytes | None:
        """Retrieve a value from the cache.

        Args:
            key: The cache key to look up.

        Returns:
            The cached value as bytes, or None if not found or expired.
        """

    @abstractmethod
    async def set(self, key: str, value: bytes, ttl: float) -> None:
        """Store a value in the cache.

        Args:
            key: The cache key.
            value: The value to store (as bytes).
            ttl: Time-to-live in seconds; zero or less means no expiry.
        """

    @abstractmethod
    async def delete(self, key: str) -> None:
        """Remove a value from the cache. Absent keys are not an error."""

    @abstractmethod
    async def clear(self) -> None:
        """Clear all entries from the cache."""

    async def exists(self, key: str) -> bool:
        return await self.get(key) is not None


class InMemoryCache(CacheBackend):
    """Bounded in-memory cache with LRU eviction and TTL support.

    Entries are kept in an OrderedDict in recency order; once ``capacity`` is
    exceeded the least recently used entry is dropped.

    Note: data is lost when the process exits.
    """

    name = "memory"

    def __init__(
        self,
        capacity: int = 1024,
        clock: Callable[[], float] = time.time,
    ) -> None:
        if capacity < 1:
            raise ValueError("capacity must be at least 1")
        self.capacity = capacity
        self._clock = clock
        self._data: OrderedDict[str, _CacheEntry] = OrderedDict()
        self._lock = asyncio.Lock()

    def __len__(self) -> int:
        return len(self._data)

    async def get(self, key: str) -> bytes | None:
        async with self._lock:
            entry = self._data.get(key)
            if entry is None:
                return None
            if entry.is_expired(self._clock()):
                del self._data[key]
                return None
            self._data.move_to_end(key)
            return entry.value

    async def set(self, key: str, value: bytes, ttl: float) -> None:
        async with self._lock:
            expires_at = self._clock() + ttl if ttl > 0 else None
            self._data[key] = _CacheEntry(value=value, expires_at=expires_at)
            self._data.move_to_end(key)
            while len(self._data) > self.capacity:
                evicted, _ = self._data.popitem(last=False)
                logger.debug(f"Evicted least recently used key {evicted[:32]}")

    async def delete(self, key: str) -> None:
        async with self._lock:
            self._data.pop(key, None)

    async def clear(self) -> None:
        async with self._lock:
            self._data.clear()

    async def cleanup_expired(self) -> int:
        """Remove all expired entries from the cache.

        Returns:
            Number of entries removed.
        """
        async with self._lock:
            now = self._clock()
            expired_keys = [
                key for key, entry in self._data.items() if entry.is_expired(now)
            ]
            for key in expired_keys:
                del self._data[key]
            return len(expired_keys)


_FILE_HEADER = struct.Struct(">d")


class FileCache(CacheBackend):
    """Local persistent cache storing one file per key.

    File names are the SHA-256 of the key. Each file holds an 8-byte expiry
    header (0.0 for no expiry) followed by the value. Writes go to a
    temporary file first and are moved into place, so readers never see a
    partial record. Blocking file I/O runs in a worker thread.
    """

    name = "local"

    def __init__(
        self,
        directory: str | Path,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.directory = Path(directory)
        self._clock = clock

    def _path_for(self, key: str) -> Path:
        digest = hashlib.sha256(key.encode()).hexdigest()
        return self.directory / digest[:2] / f"{digest}.bin"

    def _read(self, key: str) -> bytes | None:
        path = self._path_for(key)
        try:
            raw = path.read_bytes()
        except FileNotFoundError:
            return None
        if len(raw) < _FILE_HEADER.size:
            path.unlink(missing_ok=True)
            return None
        (expires_at,) = _FILE_HEADER.unpack_from(raw)
        if expires_at and self._clock() > expires_at:
            path.unlink(missing_ok=True)
            return None
        return raw[_FILE_HEADER.size:]

    def _write(self, key: str, value: bytes, ttl: float) -> None:
        path = self._path_for(key)
        path.parent.mkdir(parents=True, exist_ok=True)
        expires_at = self._clock() + ttl if ttl > 0 else 0.0
        fd, tmp_name = tempfile.mkstemp(dir=path.parent, suffix=".tmp")
        try:
            with os.fdopen(fd, "wb") as fh:
                fh.write(_FILE_HEADER.pack(expires_at))
                fh.write(value)
            os.replace(tmp_name, path)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise

    def _delete(self, key: str) -> None:
        self._path_for(key).unlink(missing_ok=True)

    def _clear(self) -> None:
        if not self.directory.exists():
            return
        for path in self.directory.glob("*/*.bin"):
            path.unlink(missing_ok=True)

    async def get(self, key: str) -> bytes | None:
        return await asyncio.to_thread(self._read, key)

    async def set(self, key: str, value: bytes, ttl: float) -> None:
        await asyncio.to_thread(self._write, key, value, ttl)

    async def delete(self, key: str) -> None:
        await asyncio.to_thread(self._delete, key)

    async def clear(self) -> None:
        await asyncio.to_thread(self._clear)


class RedisCache(CacheBackend):
    """Redis-based cache implementation, shared between processes.

    Keys are namespaced with ``prefix`` so ``clear`` only touches this
    layer's records.

    Example:
        >>> cache = RedisCache("redis://localhost:6379/0")
        >>> await cache.set("key", b"value", ttl=300)
    """

    name = "remote"

    def __init__(
        self,
        redis_url: str = "redis://localhost:6379/0",
        prefix: str = "apilayer:v1",
        client: Optional[Any] = None,
    ) -> None:
        """Initialize the Redis cache.

        Args:
            redis_url: Redis connection URL (e.g., "redis://localhost:6379/0")
            prefix: Namespace prepended to every key
            client: Pre-built ``redis.asyncio`` client (the URL is then unused)
        """
        self._redis_url = redis_url
        self.prefix = prefix
        self._redis = client

    def _get_client(self) -> Any:
        if self._redis is None:
            self._redis = aioredis.from_url(self._redis_url)
        return self._redis

    def _key(self, key: str) -> str:
        return f"{self.prefix}:cache:{key}"

    async def get(self, key: str) -> bytes | None:
        client = self._get_client()
        return await client.get(self._key(key))

    async def set(self, key: str, value: bytes, ttl: float) -> None:
        client = self._get_client()
        if ttl > 0:
            # Redis expiries are whole seconds
            await client.setex(self._key(key), max(1, math.ceil(ttl)), value)
        else:
            await client.set(self._key(key), value)

    async def delete(self, key: str) -> None:
        client = self._get_client()
        await client.delete(self._key(key))

    async def exists(self, key: str) -> bool:
        client = self._get_client()
        return await client.exists(self._key(key)) > 0

    async def clear(self) -> None:
        client = self._get_client()
        keys = [k async for k in client.scan_iter(match=f"{self.prefix}:cache:*")]
        if keys:
            await client.delete(*keys)

    async def close(self) -> None:
        """Close the Redis connection."""
        if self._redis is not None:
            await self._redis.aclose()
            self._redis = None
