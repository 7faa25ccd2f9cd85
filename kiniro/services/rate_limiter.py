"""
RateLimiter - Per-identity, per-category request quotas.

Algorithm: fixed window. The window for an (identity, category) pair opens
with the first request and closes ``window_seconds`` later; the next request
after that opens a fresh window with the counter at zero. Every attempt is
counted (increment-then-check), so a rejected attempt still increments the
stored count past the limit.

If the counter store fails, the limiter either lets the request through
(fail open, the default) or rejects it (fail closed), and logs the
degradation either way.
"""

import asyncio
from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from dataclasses import dataclass, replace
from typing import Any, AsyncIterator, Mapping

from loguru import logger
from sqlalchemy.exc import SQLAlchemyError

from kiniro.datastore.engine import Database
from kiniro.datastore.repositories import RateWindowRepository
from kiniro.policies import DEFAULT_RATE_LIMITS, RateLimitRule
from kiniro.services.clock import Clock, seconds_until, system_clock
from kiniro.services.errors import (
    RateLimitExceededError,
    StoreUnavailable,
    UnknownCategoryError,
)


@dataclass
class RateWindow:
    """Live counter for one (identity, category) pair."""

    identity: str
    category: str
    window_start_ms: int
    count: int
    limit: int
    window_seconds: int

    @property
    def reset_at_ms(self) -> int:
        return self.window_start_ms + self.window_seconds * 1000

    def has_elapsed(self, now_ms: int) -> bool:
        return now_ms >= self.reset_at_ms


@dataclass
class RateLimitDecision:
    """Outcome of a rate limit check. A rejection is a value, not an exception."""

    success: bool
    remaining: int
    retry_after_seconds: int
    limit: int
    reset_at_ms: int
    degraded: bool = False  # counter store failed, policy decided

    def raise_for_limit(self, identity: str, category: str) -> None:
        """Raise ``RateLimitExceededError`` if the request was rejected."""
        if not self.success:
            raise RateLimitExceededError(identity, category, self.retry_after_seconds)

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "limit": self.limit,
            "remaining": self.remaining,
            "retry_after": self.retry_after_seconds,
            "reset": self.reset_at_ms,
        }


class CounterStore(ABC):
    """Backing store for rate windows."""

    @abstractmethod
    async def get(self, identity: str, category: str) -> RateWindow | None: ...

    @abstractmethod
    async def put(self, window: RateWindow) -> None: ...

    @abstractmethod
    async def purge_expired(self, now_ms: int) -> int:
        """Drop windows that have rolled over. Returns count removed."""
        ...


class MemoryCounterStore(CounterStore):
    """Process-local counters."""

    def __init__(self):
        self._windows: dict[tuple[str, str], RateWindow] = {}

    async def get(self, identity: str, category: str) -> RateWindow | None:
        window = self._windows.get((identity, category))
        return replace(window) if window else None

    async def put(self, window: RateWindow) -> None:
        self._windows[(window.identity, window.category)] = replace(window)

    async def purge_expired(self, now_ms: int) -> int:
        expired = [k for k, w in self._windows.items() if w.has_elapsed(now_ms)]
        for key in expired:
            del self._windows[key]
        return len(expired)

    def __len__(self) -> int:
        return len(self._windows)


class SQLCounterStore(CounterStore):
    """Counters persisted in the ``rate_windows`` table."""

    def __init__(self, database: Database):
        self._db = database

    async def get(self, identity: str, category: str) -> RateWindow | None:
        try:
            async with self._db.session() as session:
                row = await RateWindowRepository(session).get(identity, category)
        except (SQLAlchemyError, OSError) as e:
            raise StoreUnavailable(f"Rate window read failed: {e}", service_id="rate_limiter") from e
        if row is None:
            return None
        return RateWindow(
            identity=row.identity,
            category=row.category,
            window_start_ms=row.window_start_ms,
            count=row.count,
            limit=row.limit,
            window_seconds=row.window_seconds,
        )

    async def put(self, window: RateWindow) -> None:
        try:
            async with self._db.session() as session:
                await RateWindowRepository(session).save(
                    identity=window.identity,
                    category=window.category,
                    window_start_ms=window.window_start_ms,
                    count=window.count,
                    limit=window.limit,
                    window_seconds=window.window_seconds,
                )
        except (SQLAlchemyError, OSError) as e:
            raise StoreUnavailable(f"Rate window write failed: {e}", service_id="rate_limiter") from e

    async def purge_expired(self, now_ms: int) -> int:
        try:
            async with self._db.session() as session:
                return await RateWindowRepository(session).delete_expired(now_ms)
        except (SQLAlchemyError, OSError) as e:
            raise StoreUnavailable(f"Rate window purge failed: {e}", service_id="rate_limiter") from e


class _KeyLock:
    def __init__(self):
        self.lock = asyncio.Lock()
        self.users = 0


class RateLimiter:
    """
    Fixed-window rate limiter keyed by (identity, category).

    Usage:
        limiter = RateLimiter(MemoryCounterStore())

        decision = await limiter.check(identity_for(uid=uid, ip=ip), "search")
        if not decision.success:
            return too_many_requests(decision)
    """

    def __init__(
        self,
        store: CounterStore | None = None,
        rules: dict[str, RateLimitRule] | None = None,
        fail_open: bool = True,
        store_timeout: float | None = 2.0,
        clock: Clock = system_clock,
    ):
        self._store = store if store is not None else MemoryCounterStore()
        self._rules = dict(rules or DEFAULT_RATE_LIMITS)
        self._fail_open = fail_open
        self._store_timeout = store_timeout
        self._clock = clock
        self._locks: dict[tuple[str, str], _KeyLock] = {}

    @property
    def fail_open(self) -> bool:
        return self._fail_open

    def get_rule(self, category: str) -> RateLimitRule:
        rule = self._rules.get(category)
        if rule is None:
            raise UnknownCategoryError(category)
        return rule

    async def check(self, identity: str, category: str) -> RateLimitDecision:
        """
        Count one request for ``identity`` in ``category`` and decide on it.

        Raises:
            UnknownCategoryError: no rule configured for ``category``
        """
        rule = self.get_rule(category)

        async with self._locked((identity, category)):
            now_ms = self._clock.now_ms()
            try:
                window = await self._with_timeout(self._store.get(identity, category))
                if window is None or window.has_elapsed(now_ms):
                    window = RateWindow(
                        identity=identity,
                        category=category,
                        window_start_ms=now_ms,
                        count=0,
                        limit=rule.limit,
                        window_seconds=rule.window_seconds,
                    )
                window.count += 1
                await self._with_timeout(self._store.put(window))
            except Exception as e:
                return self._degraded(identity, category, rule, now_ms, e)

        success = window.count <= window.limit
        return RateLimitDecision(
            success=success,
            remaining=max(0, window.limit - window.count),
            retry_after_seconds=0 if success else seconds_until(window.reset_at_ms, now_ms),
            limit=window.limit,
            reset_at_ms=window.reset_at_ms,
        )

    async def enforce(self, identity: str, category: str) -> RateLimitDecision:
        """``check`` that raises ``RateLimitExceededError`` on rejection."""
        decision = await self.check(identity, category)
        decision.raise_for_limit(identity, category)
        return decision

    async def purge_expired(self) -> int:
        """Drop every rolled-over window from the counter store."""
        removed = await self._with_timeout(self._store.purge_expired(self._clock.now_ms()))
        if removed:
            logger.debug(f"Purged {removed} expired rate windows")
        return removed

    def _degraded(
        self,
        identity: str,
        category: str,
        rule: RateLimitRule,
        now_ms: int,
        error: Exception,
    ) -> RateLimitDecision:
        policy = "open" if self._fail_open else "closed"
        logger.warning(
            f"Rate limit store unavailable for {category}/{identity}, "
            f"failing {policy}: {type(error).__name__}: {error}"
        )
        reset_at_ms = now_ms + rule.window_seconds * 1000
        if self._fail_open:
            return RateLimitDecision(
                success=True,
                remaining=rule.limit,
                retry_after_seconds=0,
                limit=rule.limit,
                reset_at_ms=reset_at_ms,
                degraded=True,
            )
        return RateLimitDecision(
            success=False,
            remaining=0,
            retry_after_seconds=rule.window_seconds,
            limit=rule.limit,
            reset_at_ms=reset_at_ms,
            degraded=True,
        )

    @asynccontextmanager
    async def _locked(self, key: tuple[str, str]) -> AsyncIterator[None]:
        # Serializes read-increment-write per pair; unused locks are dropped
        entry = self._locks.get(key)
        if entry is None:
            entry = self._locks[key] = _KeyLock()
        entry.users += 1
        try:
            async with entry.lock:
                yield
        finally:
            entry.users -= 1
            if entry.users == 0:
                self._locks.pop(key, None)

    async def _with_timeout(self, coro):
        if self._store_timeout is None:
            return await coro
        return await asyncio.wait_for(coro, self._store_timeout)


def identity_for(uid: str | None = None, ip: str | None = None) -> str:
    """Rate limit identity: the user id when authenticated, else the address."""
    if uid:
        return f"uid:{uid}"
    return f"ip:{ip or 'unknown'}"


def client_ip(headers: Mapping[str, str]) -> str:
    """
    Client address from proxy headers.

    Takes the first ``x-forwarded-for`` entry, then ``x-real-ip``,
    falling back to ``"unknown"``.
    """
    forwarded_for = headers.get("x-forwarded-for")
    if forwarded_for:
        first_ip = forwarded_for.split(",")[0].strip()
        if first_ip:
            return first_ip

    real_ip = headers.get("x-real-ip")
    if real_ip and real_ip.strip():
        return real_ip.strip()

    return "unknown"
