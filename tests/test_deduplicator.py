"""
Unit tests for RequestDeduplicator.
"""
import asyncio

import pytest

from kiniro.services.deduplicator import RequestDeduplicator


class TestRequestDeduplicator:
    """Tests for shared in-flight requests."""

    @pytest.mark.asyncio
    async def test_same_key_runs_once(self):
        """Test that concurrent callers with one key share one execution."""
        dedup = RequestDeduplicator()
        calls = 0

        async def request():
            nonlocal calls
            calls += 1
            await asyncio.sleep(0.01)
            return {"calls": calls}

        results = await asyncio.gather(*(dedup.dedupe("k", request) for _ in range(4)))

        assert calls == 1
        assert all(r is results[0] for r in results)
        stats = dedup.get_stats()
        assert stats.started == 1
        assert stats.joined == 3
        assert stats.to_dict()["join_rate"] == "75.00%"

    @pytest.mark.asyncio
    async def test_entry_cleared_after_completion(self):
        """Test that the registry is empty once the request settles."""
        dedup = RequestDeduplicator()

        async def request():
            return 1

        await dedup.dedupe("k", request)

        assert not dedup.is_in_flight("k")
        assert dedup.get_in_flight_count() == 0

    @pytest.mark.asyncio
    async def test_entry_cleared_after_failure(self):
        """Test that a failed request does not stay registered."""
        dedup = RequestDeduplicator()

        async def request():
            raise RuntimeError("nope")

        with pytest.raises(RuntimeError):
            await dedup.dedupe("k", request)

        assert dedup.get_in_flight_keys() == []

    @pytest.mark.asyncio
    async def test_waiter_count_tracks_attached_callers(self):
        """Test waiter bookkeeping while a request is pending."""
        dedup = RequestDeduplicator()
        release = asyncio.Event()

        async def request():
            await release.wait()
            return "done"

        tasks = [asyncio.create_task(dedup.dedupe("k", request)) for _ in range(3)]
        await asyncio.sleep(0)
        await asyncio.sleep(0)

        assert dedup.is_in_flight("k")
        assert dedup.get_waiter_count("k") == 3

        release.set()
        assert await asyncio.gather(*tasks) == ["done", "done", "done"]
        assert dedup.get_waiter_count("k") == 0

    @pytest.mark.asyncio
    async def test_cancel_all(self):
        """Test that cancel_all cancels pending work and clears the registry."""
        dedup = RequestDeduplicator()

        async def request():
            await asyncio.sleep(10)

        task = asyncio.create_task(dedup.dedupe("k", request))
        await asyncio.sleep(0)

        assert await dedup.cancel_all() == 1
        with pytest.raises(asyncio.CancelledError):
            await task
        assert dedup.get_in_flight_count() == 0
