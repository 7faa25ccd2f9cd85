"""
Unit tests for RateLimiter.
"""
import asyncio

import pytest

from kiniro.policies import RateLimitRule
from kiniro.services.errors import RateLimitExceededError, UnknownCategoryError
from kiniro.services.rate_limiter import (
    MemoryCounterStore,
    RateLimiter,
    SQLCounterStore,
    client_ip,
    identity_for,
)

RULES = {
    "search": RateLimitRule(limit=3, window_seconds=60),
    "calendar": RateLimitRule(limit=1, window_seconds=60),
}


class BrokenStore(MemoryCounterStore):
    async def get(self, identity, category):
        raise ConnectionError("counter store offline")


class SlowStore(MemoryCounterStore):
    """Yields between read and write to expose lost updates."""

    async def get(self, identity, category):
        window = await super().get(identity, category)
        await asyncio.sleep(0.001)
        return window


@pytest.fixture
def limiter(clock):
    return RateLimiter(MemoryCounterStore(), rules=RULES, clock=clock)


class TestWindow:
    """Fixed-window counting."""

    @pytest.mark.asyncio
    async def test_limit_then_reject_with_retry_after(self, limiter, clock):
        """Test that the (L+1)th request is rejected with the time left in the window."""
        decisions = [await limiter.check("ip:1.2.3.4", "search") for _ in range(3)]
        assert [d.success for d in decisions] == [True, True, True]
        assert [d.remaining for d in decisions] == [2, 1, 0]

        rejected = await limiter.check("ip:1.2.3.4", "search")
        assert not rejected.success
        assert rejected.remaining == 0
        assert rejected.retry_after_seconds == 60

        clock.advance(30)
        rejected = await limiter.check("ip:1.2.3.4", "search")
        assert not rejected.success
        assert rejected.retry_after_seconds == 30

    @pytest.mark.asyncio
    async def test_window_rollover_resets_count(self, limiter, clock):
        """Test that the first request after the window starts a new one."""
        for _ in range(4):
            await limiter.check("ip:a", "search")

        clock.advance(60)
        decision = await limiter.check("ip:a", "search")

        assert decision.success
        assert decision.remaining == 2
        assert decision.reset_at_ms == clock.now_ms() + 60_000

    @pytest.mark.asyncio
    async def test_identities_are_independent(self, limiter):
        """Test that one identity exhausting its quota does not affect another."""
        for _ in range(4):
            await limiter.check("ip:a", "search")

        assert (await limiter.check("ip:b", "search")).success

    @pytest.mark.asyncio
    async def test_categories_are_independent(self, limiter):
        """Test that quotas are counted per category."""
        assert (await limiter.check("uid:u", "calendar")).success
        assert not (await limiter.check("uid:u", "calendar")).success
        assert (await limiter.check("uid:u", "search")).success

    @pytest.mark.asyncio
    async def test_concurrent_checks_never_overshoot(self, clock):
        """Test that concurrent checks for one pair admit exactly the limit."""
        limiter = RateLimiter(
            SlowStore(), rules={"search": RateLimitRule(limit=5, window_seconds=60)}, clock=clock
        )

        decisions = await asyncio.gather(*(limiter.check("ip:x", "search") for _ in range(10)))

        assert sum(d.success for d in decisions) == 5
        assert sorted(d.remaining for d in decisions if d.success) == [0, 1, 2, 3, 4]

    @pytest.mark.asyncio
    async def test_unknown_category(self, limiter):
        """Test that an unconfigured category is a configuration error."""
        with pytest.raises(UnknownCategoryError):
            await limiter.check("ip:a", "nope")

    @pytest.mark.asyncio
    async def test_enforce_raises_on_rejection(self, limiter):
        """Test the raising variant."""
        await limiter.enforce("ip:a", "calendar")

        with pytest.raises(RateLimitExceededError) as exc_info:
            await limiter.enforce("ip:a", "calendar")
        assert exc_info.value.retry_after == 60
        assert exc_info.value.category == "calendar"


class TestDegradedStore:
    """Behavior when the counter store is unreachable."""

    @pytest.mark.asyncio
    async def test_fail_open(self, clock):
        """Test that fail-open admits the request and flags it degraded."""
        limiter = RateLimiter(BrokenStore(), rules=RULES, fail_open=True, clock=clock)

        decision = await limiter.check("ip:a", "search")

        assert decision.success
        assert decision.degraded
        assert decision.remaining == 3

    @pytest.mark.asyncio
    async def test_fail_closed(self, clock):
        """Test that fail-closed rejects with a full window retry."""
        limiter = RateLimiter(BrokenStore(), rules=RULES, fail_open=False, clock=clock)

        decision = await limiter.check("ip:a", "search")

        assert not decision.success
        assert decision.degraded
        assert decision.retry_after_seconds == 60


class TestSQLCounterStore:
    """RateLimiter over the SQLite-backed counter store."""

    @pytest.mark.asyncio
    async def test_counts_persist_across_limiters(self, database, clock):
        """Test that a second limiter on the same database sees the count."""
        first = RateLimiter(SQLCounterStore(database), rules=RULES, clock=clock)
        second = RateLimiter(SQLCounterStore(database), rules=RULES, clock=clock)

        assert (await first.check("ip:a", "calendar")).success
        decision = await second.check("ip:a", "calendar")

        assert not decision.success
        assert decision.retry_after_seconds == 60

    @pytest.mark.asyncio
    async def test_rollover(self, database, clock):
        """Test window rollover with persisted counters."""
        limiter = RateLimiter(SQLCounterStore(database), rules=RULES, clock=clock)
        await limiter.check("ip:a", "calendar")
        await limiter.check("ip:a", "calendar")

        clock.advance(61)
        assert (await limiter.check("ip:a", "calendar")).success


class TestIdentity:
    """Identity and client address helpers."""

    def test_identity_prefers_uid(self):
        """Test that authenticated users are keyed by uid."""
        assert identity_for(uid="abc", ip="1.1.1.1") == "uid:abc"
        assert identity_for(ip="1.1.1.1") == "ip:1.1.1.1"
        assert identity_for() == "ip:unknown"

    def test_client_ip_from_forwarded_for(self):
        """Test that the first forwarded address wins."""
        headers = {"x-forwarded-for": " 10.0.0.1 , 10.0.0.2", "x-real-ip": "10.0.0.9"}
        assert client_ip(headers) == "10.0.0.1"

    def test_client_ip_fallbacks(self):
        """Test x-real-ip and the unknown fallback."""
        assert client_ip({"x-real-ip": "10.0.0.9"}) == "10.0.0.9"
        assert client_ip({}) == "unknown"


class TestCounterStoreSelection:
    """The limiter uses the store it is given."""

    @pytest.mark.asyncio
    async def test_empty_store_is_kept(self, clock):
        """Test that an empty caller-supplied store is used, not replaced."""
        store = MemoryCounterStore()
        limiter = RateLimiter(store, rules=RULES, clock=clock)

        await limiter.check("ip:a", "search")

        assert len(store) == 1

    @pytest.mark.asyncio
    async def test_empty_broken_store_triggers_fail_closed(self, clock):
        """Test that a failing store that has never held a window still fails closed."""
        limiter = RateLimiter(BrokenStore(), rules=RULES, fail_open=False, clock=clock)

        decisions = [await limiter.check("ip:a", "search") for _ in range(2)]

        assert [d.success for d in decisions] == [False, False]
        assert all(d.degraded for d in decisions)


class TestPurge:
    """Removal of rolled-over windows."""

    @pytest.mark.asyncio
    async def test_memory_purge_drops_elapsed_windows(self, clock):
        """Test that only windows past their reset time are removed."""
        store = MemoryCounterStore()
        limiter = RateLimiter(store, rules=RULES, clock=clock)
        await limiter.check("ip:a", "search")
        clock.advance(30)
        await limiter.check("ip:b", "search")

        clock.advance(30)
        assert await limiter.purge_expired() == 1
        assert len(store) == 1

        clock.advance(30)
        assert await limiter.purge_expired() == 1
        assert len(store) == 0

    @pytest.mark.asyncio
    async def test_sql_purge_deletes_rows(self, database, clock):
        """Test that expired rate_windows rows are deleted and live ones kept."""
        limiter = RateLimiter(SQLCounterStore(database), rules=RULES, clock=clock)
        await limiter.check("ip:a", "calendar")
        clock.advance(30)
        await limiter.check("ip:b", "calendar")

        clock.advance(30)
        assert await limiter.purge_expired() == 1

        # ip:b is still inside its window
        assert not (await limiter.check("ip:b", "calendar")).success
        assert (await limiter.check("ip:a", "calendar")).success
