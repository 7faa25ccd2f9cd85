"""
EphemeralCache - Short-lived cache-aside tier with stampede-free fills.

Features:
- Per-call TTL, lazy expiry on read plus a periodic sweep
- At most one in-flight fill per key; concurrent misses share its result
- Optional capacity bound with least-recently-stored eviction
- Expired records retained for a grace period for explicit stale fallback
"""

import asyncio
import hashlib
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Generic, Iterable, TypeVar

from loguru import logger

from kiniro.services.clock import Clock, system_clock
from kiniro.services.deduplicator import RequestDeduplicator
from kiniro.services.errors import UpstreamFailure, UpstreamTimeout

T = TypeVar("T")


@dataclass
class CacheRecord(Generic[T]):
    """A single cache record with metadata."""

    key: str
    value: T
    stored_at_ms: int
    ttl_seconds: int
    stale_until_ms: int

    @property
    def expires_at_ms(self) -> int:
        return self.stored_at_ms + self.ttl_seconds * 1000

    def is_fresh(self, now_ms: int) -> bool:
        """Fresh while strictly inside the TTL."""
        return now_ms < self.expires_at_ms

    def is_retained(self, now_ms: int) -> bool:
        """Still usable as a stale fallback."""
        return now_ms < self.stale_until_ms


@dataclass
class CacheResult(Generic[T]):
    """Result from cache lookup."""

    data: T
    from_cache: str  # 'memory' | 'stale'
    is_stale: bool


@dataclass
class FillResult(Generic[T]):
    """Outcome of ``try_get_or_set``: either a value or the upstream failure."""

    value: T | None = None
    error: UpstreamFailure | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


class EphemeralCache:
    """
    In-process cache-aside store with request coalescing.

    Usage:
        cache = EphemeralCache(max_size=1000)

        popular = await cache.get_or_set(
            "popular:limit=20", 1800, lambda: catalog.get_popular(20)
        )
    """

    def __init__(
        self,
        max_size: int | None = None,
        fill_timeout: float | None = None,
        stale_while_revalidate: bool = True,
        clock: Clock = system_clock,
        debug: bool = False,
    ):
        if max_size is not None and max_size <= 0:
            raise ValueError("max_size must be positive or None")
        # Insertion order is store order; the first key is the least recently stored
        self._memory: dict[str, CacheRecord[Any]] = {}
        self._max_size = max_size
        self._fill_timeout = fill_timeout
        self._stale_while_revalidate = stale_while_revalidate
        self._clock = clock
        self._debug = debug
        self._lock = asyncio.Lock()
        self._fills = RequestDeduplicator(name="EphemeralCache.fill", debug=debug)
        self._stats = CacheStats()

    @staticmethod
    def make_key(name: str, params: dict[str, Any] | None = None) -> str:
        """Build a cache key like ``popular:limit=20`` from a name and params."""
        if params:
            sorted_params = ":".join(f"{k}={v}" for k, v in sorted(params.items()))
            full_key = f"{name}:{sorted_params}"
        else:
            full_key = name

        # Hash long keys
        if len(full_key) > 200:
            hash_val = hashlib.md5(full_key.encode()).hexdigest()[:16]
            return f"{name}:{hash_val}"

        return full_key

    async def get(self, key: str, allow_stale: bool = False) -> CacheResult[Any] | None:
        """
        Get value from cache.

        Returns a fresh CacheResult, or with ``allow_stale`` an expired record
        that is still inside its grace period. None otherwise.
        """
        now_ms = self._clock.now_ms()
        async with self._lock:
            record = self._memory.get(key)
            if record is None:
                self._stats.misses += 1
                self._log(f"MISS: {key[:50]}...")
                return None

            if record.is_fresh(now_ms):
                self._stats.hits += 1
                self._log(f"HIT: {key[:50]}...")
                return CacheResult(data=record.value, from_cache="memory", is_stale=False)

            if not record.is_retained(now_ms):
                del self._memory[key]
                self._stats.misses += 1
                self._log(f"EXPIRED: {key[:50]}...")
                return None

            if allow_stale:
                self._stats.stale_hits += 1
                self._log(f"STALE HIT: {key[:50]}...")
                return CacheResult(data=record.value, from_cache="stale", is_stale=True)

            self._stats.misses += 1
            return None

    async def set(self, key: str, value: Any, ttl_seconds: int) -> CacheRecord[Any]:
        """
        Store a value with its own TTL, replacing any previous record.

        Args:
            key: Cache key
            value: Data to cache
            ttl_seconds: Time to live for this record
        """
        if ttl_seconds <= 0:
            raise ValueError("ttl_seconds must be positive")

        now_ms = self._clock.now_ms()
        ttl_ms = ttl_seconds * 1000
        stale_until = now_ms + ttl_ms * 2 if self._stale_while_revalidate else now_ms + ttl_ms
        record = CacheRecord(
            key=key,
            value=value,
            stored_at_ms=now_ms,
            ttl_seconds=ttl_seconds,
            stale_until_ms=stale_until,
        )

        async with self._lock:
            self._memory.pop(key, None)
            if self._max_size is not None:
                while len(self._memory) >= self._max_size:
                    self._evict_oldest()
            self._memory[key] = record
            self._log(f"SET: {key[:50]}... (TTL: {ttl_seconds}s)")
        return record

    async def get_or_set(
        self,
        key: str,
        ttl_seconds: int,
        compute: Callable[[], Awaitable[T]],
        stale_on_error: bool = False,
    ) -> T:
        """
        Return the fresh cached value or compute, store and return a new one.

        Concurrent callers missing on the same key share a single ``compute``
        call and receive its result or its failure. A failed compute stores
        nothing. With ``stale_on_error`` an expired record still inside its
        grace period is served instead of raising.

        Raises:
            UpstreamFailure: compute raised or timed out
        """
        cached = await self.get(key)
        if cached is not None:
            return cached.data

        try:
            return await self._fills.dedupe(
                key, lambda: self._fill(key, ttl_seconds, compute)
            )
        except UpstreamFailure as e:
            if stale_on_error:
                stale = await self.get(key, allow_stale=True)
                if stale is not None:
                    logger.warning(f"Fill for {key} failed, serving stale value: {e}")
                    return stale.data
            raise

    async def try_get_or_set(
        self,
        key: str,
        ttl_seconds: int,
        compute: Callable[[], Awaitable[T]],
        stale_on_error: bool = False,
    ) -> FillResult[T]:
        """Like ``get_or_set`` but reports upstream failure as a value."""
        try:
            value = await self.get_or_set(key, ttl_seconds, compute, stale_on_error)
        except UpstreamFailure as e:
            return FillResult(error=e)
        return FillResult(value=value)

    async def _fill(
        self,
        key: str,
        ttl_seconds: int,
        compute: Callable[[], Awaitable[T]],
    ) -> T:
        # A fill that finished between our miss and joining the registry counts
        async with self._lock:
            record = self._memory.get(key)
            if record is not None and record.is_fresh(self._clock.now_ms()):
                return record.value

        self._stats.fills += 1
        self._log(f"FILL: {key[:50]}...")
        try:
            if self._fill_timeout is not None:
                value = await asyncio.wait_for(compute(), self._fill_timeout)
            else:
                value = await compute()
        except asyncio.TimeoutError as e:
            self._stats.fill_failures += 1
            raise UpstreamTimeout(None, self._fill_timeout or 0, key=key) from e
        except UpstreamFailure as e:
            self._stats.fill_failures += 1
            if e.key is None:
                e.key = key
            raise
        except Exception as e:
            self._stats.fill_failures += 1
            raise UpstreamFailure(
                f"Fill for '{key}' failed: {type(e).__name__}: {e}", key=key
            ) from e

        await self.set(key, value, ttl_seconds)
        return value

    async def invalidate(self, key: str) -> bool:
        """Remove a record regardless of its TTL."""
        async with self._lock:
            if key in self._memory:
                del self._memory[key]
                self._log(f"INVALIDATE: {key[:50]}...")
                return True
            return False

    async def invalidate_many(self, prefix_or_keys: str | Iterable[str]) -> int:
        """
        Remove records by key prefix (a string) or by explicit keys.

        Returns:
            Number of records removed
        """
        async with self._lock:
            if isinstance(prefix_or_keys, str):
                keys_to_delete = [k for k in self._memory if k.startswith(prefix_or_keys)]
            else:
                keys_to_delete = [k for k in set(prefix_or_keys) if k in self._memory]
            for key in keys_to_delete:
                del self._memory[key]

            if keys_to_delete:
                self._log(f"INVALIDATE_MANY: {len(keys_to_delete)} entries removed")

            return len(keys_to_delete)

    async def clear(self) -> None:
        """Clear all cache entries."""
        async with self._lock:
            count = len(self._memory)
            self._memory.clear()
            self._log(f"CLEAR: {count} entries removed")

    async def cleanup_expired(self) -> int:
        """Remove all records past their grace period. Returns count of removed entries."""
        now_ms = self._clock.now_ms()
        async with self._lock:
            expired_keys = [
                k for k, v in self._memory.items() if not v.is_retained(now_ms)
            ]
            for key in expired_keys:
                del self._memory[key]

            if expired_keys:
                self._log(f"CLEANUP: {len(expired_keys)} expired entries removed")

            return len(expired_keys)

    def peek(self, key: str) -> CacheRecord[Any] | None:
        """Raw record regardless of freshness; does not touch stats."""
        return self._memory.get(key)

    async def close(self) -> None:
        await self._fills.cancel_all()

    def _evict_oldest(self) -> None:
        """Evict the least recently stored record."""
        if not self._memory:
            return
        oldest_key = next(iter(self._memory))
        del self._memory[oldest_key]
        self._stats.evictions += 1
        self._log(f"EVICT: {oldest_key[:50]}...")

    def get_stats(self) -> "CacheStats":
        """Get cache statistics."""
        self._stats.size = len(self._memory)
        self._stats.max_size = self._max_size
        self._stats.coalesced = self._fills.get_stats().joined
        return self._stats

    def _log(self, message: str) -> None:
        """Log debug message if debug mode is enabled."""
        if self._debug:
            logger.debug(f"[EphemeralCache] {message}")


@dataclass
class CacheStats:
    """Cache statistics."""

    hits: int = 0
    misses: int = 0
    stale_hits: int = 0
    fills: int = 0
    fill_failures: int = 0
    coalesced: int = 0
    evictions: int = 0
    size: int = 0
    max_size: int | None = None

    @property
    def hit_rate(self) -> float:
        """Calculate cache hit rate."""
        total = self.hits + self.stale_hits + self.misses
        if total == 0:
            return 0.0
        return (self.hits + self.stale_hits) / total

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "hits": self.hits,
            "misses": self.misses,
            "stale_hits": self.stale_hits,
            "fills": self.fills,
            "fill_failures": self.fill_failures,
            "coalesced": self.coalesced,
            "evictions": self.evictions,
            "size": self.size,
            "max_size": self.max_size,
            "hit_rate": f"{self.hit_rate:.2%}",
        }
