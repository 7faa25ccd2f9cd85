"""FastAPI server over the resilience layer."""

from fastapi import FastAPI, HTTPException, Path, Query, Request
from fastapi.responses import JSONResponse
from loguru import logger

from kiniro.datasource.catalog import CatalogSource
from kiniro.exceptions import (
    ProviderUnavailableHTTPError,
    TooManyRequestsError,
    UpstreamHTTPError,
    rate_limit_headers,
)
from kiniro.services.errors import (
    ProviderUnavailableError,
    UnknownProviderError,
    UpstreamFailure,
)
from kiniro.services.layer import ResilienceLayer
from kiniro.services.rate_limiter import client_ip, identity_for

POPULAR_TTL_SECONDS = 1800


def request_identity(request: Request) -> str:
    """Authenticated uid set on ``request.state`` by auth middleware, else the client IP."""
    uid = getattr(request.state, "uid", None)
    return identity_for(uid=uid, ip=client_ip(request.headers))


class KiniroServer:
    """HTTP routes: rate limit first, then read through the caches."""

    def __init__(self, layer: ResilienceLayer, catalog: CatalogSource):
        self.layer = layer
        self.catalog = catalog
        self.app = FastAPI(title="Kiniro", docs_url=None, redoc_url=None)

        # Register routes
        self.app.get("/anime/popular")(self.popular_anime)
        self.app.get("/anime/{anime_id}")(self.anime_detail)
        self.app.get("/streaming/health")(self.streaming_health)
        self.app.get("/streaming/{provider}/check")(self.streaming_check)
        self.app.get("/health")(self.health_check)

    async def _enforce_rate_limit(self, request: Request, category: str) -> dict[str, str]:
        decision = await self.layer.check_rate_limit(request_identity(request), category)
        if not decision.success:
            raise TooManyRequestsError(decision)
        return rate_limit_headers(decision)

    async def popular_anime(
        self, request: Request, limit: int = Query(default=20, ge=1, le=50)
    ):
        """Popular list through the ephemeral cache, written through to the entity cache."""
        headers = await self._enforce_rate_limit(request, "search")
        try:
            anime = await self.layer.fetch_entity_list(
                "anime",
                f"popular:limit={limit}",
                POPULAR_TTL_SECONDS,
                lambda: self.catalog.get_popular(limit),
                id_of=lambda media: media["id"],
            )
        except UpstreamFailure as e:
            logger.error(f"Popular anime fetch failed: {e}")
            raise UpstreamHTTPError("Failed to fetch popular anime") from e

        body = {
            "anime": [entity.payload for entity in anime],
            "pagination": {
                "currentPage": 1,
                "hasNextPage": False,
                "lastPage": 1,
                "perPage": limit,
                "total": len(anime),
            },
        }
        return JSONResponse(body, headers=headers)

    async def anime_detail(self, request: Request, anime_id: int = Path(ge=1)):
        """One anime from the entity cache, fetched from AniList on a miss."""
        headers = await self._enforce_rate_limit(request, "anime_detail")
        try:
            found = await self.layer.get_entities(
                "anime", [anime_id], self.catalog.get_media_by_ids
            )
        except UpstreamFailure as e:
            logger.error(f"Anime {anime_id} fetch failed: {e}")
            raise UpstreamHTTPError(f"Failed to fetch anime {anime_id}") from e

        entity = found.get(anime_id)
        if entity is None:
            raise HTTPException(status_code=404, detail=f"Anime {anime_id} not found")
        body = {"anime": entity.payload, "source": entity.source.value}
        return JSONResponse(body, headers=headers)

    async def streaming_health(self, request: Request, provider: str = "hianime"):
        """Latest health verdict for a streaming provider."""
        headers = await self._enforce_rate_limit(request, "streaming")
        try:
            status = await self.layer.health.get_health_status(provider)
        except UnknownProviderError as e:
            raise HTTPException(status_code=404, detail=str(e)) from e
        headers["Cache-Control"] = "public, max-age=60"
        return JSONResponse(status.model_dump(), headers=headers)

    async def streaming_check(self, request: Request, provider: str):
        """503 straight away while the provider is marked unavailable."""
        await self._enforce_rate_limit(request, "streaming")
        try:
            status = await self.layer.health.ensure_available(provider)
        except UnknownProviderError as e:
            raise HTTPException(status_code=404, detail=str(e)) from e
        except ProviderUnavailableError as e:
            raise ProviderUnavailableHTTPError(str(e)) from e
        return {"provider": provider, "available": status.available}

    async def health_check(self):
        """Component status."""
        return {"status": "ok", "service": "kiniro", **self.layer.get_stats()}


def create_app(layer: ResilienceLayer, catalog: CatalogSource) -> FastAPI:
    """Create FastAPI app around already constructed services.

    Args:
        layer: Resilience services shared by all routes
        catalog: Catalog data source

    Returns:
        FastAPI app
    """
    server = KiniroServer(layer, catalog)
    return server.app
