"""
Pytest configuration and fixtures.
"""
from datetime import timedelta

import httpx
import pytest
import pytest_asyncio

from kiniro.datastore.engine import Database
from kiniro.policies import ProviderConfig
from kiniro.services.clock import Clock


class ManualClock(Clock):
    """Clock that only moves when told to."""

    def __init__(self, start_ms: int = 1_700_000_000_000):
        self.current_ms = start_ms

    def now_ms(self) -> int:
        return self.current_ms

    def advance(self, seconds: float) -> None:
        self.current_ms += int(round(seconds * 1000))


@pytest.fixture
def clock():
    """Manually driven clock."""
    return ManualClock()


@pytest_asyncio.fixture
async def database():
    """Fresh in-memory SQLite database per test."""
    db = Database(url="sqlite+aiosqlite:///:memory:", echo=False)
    await db.init()
    yield db
    await db.close()


@pytest_asyncio.fixture
async def file_database(tmp_path):
    """SQLite file database, one connection per concurrent session."""
    db = Database(url=f"sqlite+aiosqlite:///{tmp_path / 'kiniro.db'}", echo=False)
    await db.init()
    yield db
    await db.close()


def make_provider(name, urls, timeout=1.0, refresh=timedelta(minutes=10)):
    """Single-provider table for the health monitor."""
    return {
        name: ProviderConfig(
            name=name,
            candidate_urls=urls,
            probe_timeout=timeout,
            refresh_interval=refresh,
        )
    }


def mock_http_client(handler):
    """httpx client whose requests are answered by ``handler``."""
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))
