"""
RequestDeduplicator - Coalesces concurrent work for the same key.

When multiple callers request the same resource simultaneously,
only one actual request is made and the result is shared.
"""

import asyncio
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, TypeVar

from loguru import logger

T = TypeVar("T")


@dataclass
class PendingRequest:
    """Shared in-flight handle for one key."""

    task: asyncio.Task[Any]
    waiters: int = 0


class RequestDeduplicator:
    """
    Deduplicates concurrent async requests.

    When multiple coroutines request the same key simultaneously,
    only one actual request is made. All callers await the same result,
    or the same exception.

    The shared request runs in its own task and callers await it through
    ``asyncio.shield``, so a caller that is cancelled (client went away)
    stops waiting without cancelling the request for everyone else.

    Usage:
        dedup = RequestDeduplicator()

        async def fetch_data(url: str):
            return await dedup.dedupe(
                key=url,
                request_fn=lambda: http_client.get(url)
            )
    """

    def __init__(self, name: str = "dedup", debug: bool = False):
        self._in_flight: dict[str, PendingRequest] = {}
        self._lock = asyncio.Lock()
        self._name = name
        self._debug = debug
        self._stats = DeduplicatorStats()

    async def dedupe(
        self,
        key: str,
        request_fn: Callable[[], Awaitable[T]],
    ) -> T:
        """
        Execute request with deduplication.

        If a request with the same key is already in flight,
        wait for and return its result instead of making a new request.

        Args:
            key: Unique identifier for this request
            request_fn: Async function to execute if no duplicate exists

        Returns:
            Result from request_fn (either fresh or from in-flight request)
        """
        async with self._lock:
            pending = self._in_flight.get(key)
            if pending is not None:
                self._stats.joined += 1
                self._log(f"DEDUPE: Waiting for in-flight request: {key[:50]}...")
            else:
                self._stats.started += 1
                self._log(f"NEW: Starting request: {key[:50]}...")
                task = asyncio.create_task(self._execute_and_cleanup(key, request_fn))
                task.add_done_callback(_consume_exception)
                pending = PendingRequest(task=task)
                self._in_flight[key] = pending
            pending.waiters += 1

        try:
            return await asyncio.shield(pending.task)
        finally:
            pending.waiters -= 1

    async def _execute_and_cleanup(
        self,
        key: str,
        request_fn: Callable[[], Awaitable[T]],
    ) -> T:
        """Execute request and clear its registry entry when done."""
        try:
            return await request_fn()
        finally:
            async with self._lock:
                current = self._in_flight.get(key)
                if current is not None and current.task is asyncio.current_task():
                    del self._in_flight[key]
                self._log(f"DONE: Request completed: {key[:50]}...")

    async def cancel_all(self) -> int:
        """Cancel all in-flight requests."""
        async with self._lock:
            count = len(self._in_flight)
            for pending in self._in_flight.values():
                pending.task.cancel()
            self._in_flight.clear()
            if count:
                self._log(f"CANCEL_ALL: {count} requests cancelled")
            return count

    def is_in_flight(self, key: str) -> bool:
        return key in self._in_flight

    def get_waiter_count(self, key: str) -> int:
        """Number of callers currently attached to the in-flight request."""
        pending = self._in_flight.get(key)
        return pending.waiters if pending else 0

    def get_in_flight_count(self) -> int:
        """Get number of in-flight requests."""
        return len(self._in_flight)

    def get_in_flight_keys(self) -> list[str]:
        """Get keys of all in-flight requests."""
        return list(self._in_flight.keys())

    def get_stats(self) -> "DeduplicatorStats":
        """Get deduplication statistics."""
        self._stats.in_flight = len(self._in_flight)
        return self._stats

    def _log(self, message: str) -> None:
        """Log debug message if debug mode is enabled."""
        if self._debug:
            logger.debug(f"[{self._name}] {message}")


def _consume_exception(task: asyncio.Task[Any]) -> None:
    # Mark the exception retrieved; waiters that left early never see it
    if not task.cancelled():
        task.exception()


@dataclass
class DeduplicatorStats:
    """Counters for coalesced work."""

    started: int = 0  # executions actually run
    joined: int = 0  # callers that attached to an execution already in flight
    in_flight: int = 0

    @property
    def join_rate(self) -> float:
        calls = self.started + self.joined
        return self.joined / calls if calls else 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "started": self.started,
            "joined": self.joined,
            "in_flight": self.in_flight,
            "join_rate": f"{self.join_rate:.2%}",
        }
