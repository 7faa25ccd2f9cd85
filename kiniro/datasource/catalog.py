"""
AniList GraphQL catalog source.

API Documentation: https://anilist.gitbook.io/anilist-apiv2-docs/
Public API, rate limited upstream at roughly 90 requests/minute.
"""

from typing import Any

from loguru import logger

from kiniro.datasource.base import BaseDataSource
from kiniro.services.client import UpstreamClient
from kiniro.services.errors import UpstreamFailure
from kiniro.settings import global_settings

MEDIA_FIELDS = """
      id
      title { romaji english native }
      coverImage { large medium }
      bannerImage
      description
      genres
      season
      seasonYear
      status
      episodes
      format
      isAdult
      siteUrl
      nextAiringEpisode { airingAt episode }
"""

POPULAR_QUERY = f"""
query ($page: Int!, $perPage: Int!) {{
  Page(page: $page, perPage: $perPage) {{
    media(type: ANIME, sort: POPULARITY_DESC) {{{MEDIA_FIELDS}    }}
  }}
}}
"""

MEDIA_BY_IDS_QUERY = f"""
query ($ids: [Int]!, $perPage: Int!) {{
  Page(perPage: $perPage) {{
    media(id_in: $ids, type: ANIME) {{{MEDIA_FIELDS}    }}
  }}
}}
"""

# AniList caps Page.perPage at 50
MAX_PAGE_SIZE = 50


class CatalogSource(BaseDataSource):
    """
    Catalog metadata from AniList.

    Payloads are returned as plain dicts keyed like the GraphQL response.
    """

    SERVICE_ID = "anilist"

    def __init__(self, client: UpstreamClient, api_url: str | None = None):
        super().__init__(client)
        self.api_url = api_url or global_settings.anilist_api_url

    @property
    def service_id(self) -> str:
        return self.SERVICE_ID

    def is_configured(self) -> bool:
        return bool(self.api_url)

    async def _query(self, query: str, variables: dict[str, Any]) -> dict[str, Any]:
        body = await self.client.request(
            service_id=self.service_id,
            url=self.api_url,
            method="POST",
            json_data={"query": query, "variables": variables},
            headers={"Accept": "application/json"},
        )
        errors = body.get("errors") if isinstance(body, dict) else None
        if errors:
            raise UpstreamFailure(
                errors[0].get("message", "GraphQL error"), service_id=self.service_id
            )
        if not isinstance(body, dict) or not isinstance(body.get("data"), dict):
            raise UpstreamFailure("Malformed GraphQL response", service_id=self.service_id)
        return body["data"]

    async def get_popular(self, limit: int = 20) -> list[dict[str, Any]]:
        """Most popular anime, most popular first."""
        limit = max(1, min(limit, MAX_PAGE_SIZE))
        data = await self._query(POPULAR_QUERY, {"page": 1, "perPage": limit})
        media = data.get("Page", {}).get("media") or []
        logger.debug(f"Fetched {len(media)} popular anime from AniList")
        return media

    async def get_media_by_ids(self, ids: list[int]) -> dict[int, dict[str, Any]]:
        """Media for ``ids`` in batches of 50. Unknown ids are absent."""
        results: dict[int, dict[str, Any]] = {}
        for i in range(0, len(ids), MAX_PAGE_SIZE):
            batch = ids[i : i + MAX_PAGE_SIZE]
            data = await self._query(
                MEDIA_BY_IDS_QUERY, {"ids": batch, "perPage": MAX_PAGE_SIZE}
            )
            for media in data.get("Page", {}).get("media") or []:
                results[media["id"]] = media
        return results
