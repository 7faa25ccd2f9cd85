"""
HTTP route tests through httpx.ASGITransport.
"""
import json

import httpx
import pytest

from kiniro.api.app import create_app
from kiniro.datasource.catalog import CatalogSource
from kiniro.policies import RateLimitRule
from kiniro.services.cache import EphemeralCache
from kiniro.services.client import UpstreamClient
from kiniro.services.entity_cache import EntityCache, MemoryEntityStore
from kiniro.services.errors import StoreUnavailable
from kiniro.services.health import UpstreamHealthMonitor
from kiniro.services.layer import ResilienceLayer
from kiniro.services.rate_limiter import MemoryCounterStore, RateLimiter
from tests.conftest import make_provider, mock_http_client

POPULAR_MEDIA = [
    {"id": 16498, "title": {"romaji": "Shingeki no Kyojin"}},
    {"id": 1535, "title": {"romaji": "Death Note"}},
]


class OfflineEntityStore(MemoryEntityStore):
    """Entity store whose database has gone away."""

    async def read_many(self, entity_class, ids):
        raise StoreUnavailable("database offline", service_id="entity_store")

    async def write(self, entity_class, entity):
        raise ConnectionError("database offline")


class FakeAniList:
    """GraphQL endpoint stand-in that counts requests."""

    def __init__(self, fail=False):
        self.requests = []
        self.fail = fail

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(json.loads(request.content))
        if self.fail:
            return httpx.Response(500, text="internal error")
        ids = self.requests[-1].get("variables", {}).get("ids")
        media = POPULAR_MEDIA if ids is None else [m for m in POPULAR_MEDIA if m["id"] in ids]
        return httpx.Response(200, json={"data": {"Page": {"media": media}}})


def build_app(clock, anilist, probe_status=200, search_limit=20, entity_store=None):
    def probe_handler(request):
        return httpx.Response(probe_status)

    layer = ResilienceLayer(
        cache=EphemeralCache(clock=clock),
        entities=EntityCache(
            entity_store if entity_store is not None else MemoryEntityStore(), clock=clock
        ),
        limiter=RateLimiter(
            MemoryCounterStore(),
            rules={
                "search": RateLimitRule(limit=search_limit, window_seconds=60),
                "anime_detail": RateLimitRule(limit=60, window_seconds=60),
                "streaming": RateLimitRule(limit=120, window_seconds=60),
            },
            clock=clock,
        ),
        health=UpstreamHealthMonitor(
            providers=make_provider("hianime", ["https://a.example/"]),
            http_client=mock_http_client(probe_handler),
            clock=clock,
        ),
        clock=clock,
    )
    catalog = CatalogSource(
        UpstreamClient(http_client=mock_http_client(anilist)),
        api_url="https://graphql.test/",
    )
    return create_app(layer, catalog)


def client_for(app):
    return httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://test")


class TestPopularRoute:
    """GET /anime/popular"""

    @pytest.mark.asyncio
    async def test_popular_is_cached(self, clock):
        """Test that repeated requests hit AniList once."""
        anilist = FakeAniList()
        app = build_app(clock, anilist)

        async with client_for(app) as client:
            for _ in range(3):
                response = await client.get("/anime/popular", params={"limit": 2})

        assert response.status_code == 200
        body = response.json()
        assert [a["id"] for a in body["anime"]] == [16498, 1535]
        assert body["pagination"]["perPage"] == 2
        assert len(anilist.requests) == 1
        assert anilist.requests[0]["variables"] == {"page": 1, "perPage": 2}
        assert response.headers["X-RateLimit-Limit"] == "20"
        assert response.headers["X-RateLimit-Remaining"] == "17"

    @pytest.mark.asyncio
    async def test_rate_limited_request_gets_429(self, clock):
        """Test the rejection response and its headers."""
        app = build_app(clock, FakeAniList(), search_limit=1)

        async with client_for(app) as client:
            await client.get("/anime/popular", headers={"x-forwarded-for": "9.9.9.9"})
            rejected = await client.get("/anime/popular", headers={"x-forwarded-for": "9.9.9.9"})
            other = await client.get("/anime/popular", headers={"x-forwarded-for": "8.8.8.8"})

        assert rejected.status_code == 429
        assert rejected.headers["Retry-After"] == "60"
        assert rejected.headers["X-RateLimit-Remaining"] == "0"
        assert rejected.json()["detail"]["retryAfter"] == 60
        assert other.status_code == 200

    @pytest.mark.asyncio
    async def test_upstream_failure_is_502(self, clock):
        """Test that an AniList error maps to Bad Gateway."""
        app = build_app(clock, FakeAniList(fail=True))

        async with client_for(app) as client:
            response = await client.get("/anime/popular")

        assert response.status_code == 502

    @pytest.mark.asyncio
    async def test_limit_is_validated(self, clock):
        """Test that out-of-range limits are rejected."""
        app = build_app(clock, FakeAniList())

        async with client_for(app) as client:
            response = await client.get("/anime/popular", params={"limit": 500})

        assert response.status_code == 422

    @pytest.mark.asyncio
    async def test_entity_store_outage_still_serves_list(self, clock):
        """Test that a dead entity store does not turn the list into a 500."""
        app = build_app(clock, FakeAniList(), entity_store=OfflineEntityStore())

        async with client_for(app) as client:
            response = await client.get("/anime/popular", params={"limit": 2})

        assert response.status_code == 200
        assert [a["id"] for a in response.json()["anime"]] == [16498, 1535]


class TestAnimeDetailRoute:
    """GET /anime/{anime_id}"""

    @pytest.mark.asyncio
    async def test_detail_is_fetched_once_then_served_from_entity_cache(self, clock):
        """Test that a miss goes to AniList and the next request does not."""
        anilist = FakeAniList()
        app = build_app(clock, anilist)

        async with client_for(app) as client:
            first = await client.get("/anime/16498")
            second = await client.get("/anime/16498")

        assert first.status_code == 200
        assert first.json() == {"anime": POPULAR_MEDIA[0], "source": "primary"}
        assert second.json()["anime"]["id"] == 16498
        assert len(anilist.requests) == 1
        assert anilist.requests[0]["variables"]["ids"] == [16498]
        assert second.headers["X-RateLimit-Limit"] == "60"

    @pytest.mark.asyncio
    async def test_popular_list_fills_detail(self, clock):
        """Test that entities written through by the list are reused by the detail route."""
        anilist = FakeAniList()
        app = build_app(clock, anilist)

        async with client_for(app) as client:
            await client.get("/anime/popular", params={"limit": 2})
            response = await client.get("/anime/1535")

        assert response.status_code == 200
        assert len(anilist.requests) == 1

    @pytest.mark.asyncio
    async def test_unknown_id_is_404(self, clock):
        """Test that ids AniList does not know are not found."""
        app = build_app(clock, FakeAniList())

        async with client_for(app) as client:
            response = await client.get("/anime/999999")

        assert response.status_code == 404

    @pytest.mark.asyncio
    async def test_entity_store_outage_serves_fallback(self, clock):
        """Test that the detail is fetched and marked fallback while the store is down."""
        app = build_app(clock, FakeAniList(), entity_store=OfflineEntityStore())

        async with client_for(app) as client:
            response = await client.get("/anime/16498")

        assert response.status_code == 200
        assert response.json()["source"] == "fallback"

    @pytest.mark.asyncio
    async def test_upstream_failure_is_502(self, clock):
        """Test that an AniList error on a miss maps to Bad Gateway."""
        app = build_app(clock, FakeAniList(fail=True))

        async with client_for(app) as client:
            response = await client.get("/anime/16498")

        assert response.status_code == 502


class TestStreamingRoutes:
    """Provider health endpoints."""

    @pytest.mark.asyncio
    async def test_health_verdict(self, clock):
        """Test that the verdict is returned with a short public cache header."""
        app = build_app(clock, FakeAniList(), probe_status=200)

        async with client_for(app) as client:
            response = await client.get("/streaming/health", params={"provider": "hianime"})

        assert response.status_code == 200
        assert response.json()["available"] is True
        assert response.headers["Cache-Control"] == "public, max-age=60"

    @pytest.mark.asyncio
    async def test_unknown_provider_is_404(self, clock):
        """Test that unmonitored providers are not found."""
        app = build_app(clock, FakeAniList())

        async with client_for(app) as client:
            response = await client.get("/streaming/health", params={"provider": "nope"})

        assert response.status_code == 404

    @pytest.mark.asyncio
    async def test_check_fails_fast_when_down(self, clock):
        """Test that a down provider yields 503."""
        app = build_app(clock, FakeAniList(), probe_status=403)

        async with client_for(app) as client:
            response = await client.get("/streaming/hianime/check")

        assert response.status_code == 503
        assert "unavailable" in response.json()["detail"]

    @pytest.mark.asyncio
    async def test_service_health(self, clock):
        """Test the component status endpoint."""
        app = build_app(clock, FakeAniList())

        async with client_for(app) as client:
            response = await client.get("/health")

        body = response.json()
        assert body["status"] == "ok"
        assert body["providers"] == {"hianime": None}
        assert "cache" in body
