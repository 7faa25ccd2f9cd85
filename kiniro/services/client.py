"""
UpstreamClient - Async HTTP client for upstream data sources.

Every call is timeout-bounded and transport, status and decode errors are
mapped onto the service error hierarchy, so fetch functions built on it can
be handed straight to EphemeralCache.get_or_set.
"""

from typing import Any

import httpx
from loguru import logger

from kiniro.services.errors import UpstreamFailure, UpstreamTimeout


class UpstreamClient:
    """
    JSON-over-HTTP client with uniform error mapping.

    Usage:
        client = UpstreamClient(default_timeout=10.0)

        data = await client.request(
            service_id="anilist",
            url="https://graphql.anilist.co",
            method="POST",
            json_data={"query": QUERY, "variables": {"perPage": 20}},
        )
    """

    def __init__(
        self,
        default_timeout: float = 30.0,
        headers: dict[str, str] | None = None,
        http_client: httpx.AsyncClient | None = None,
    ):
        self._default_timeout = default_timeout
        self._headers = headers or {}
        # HTTP client (lazy initialization)
        self._http_client = http_client
        self._owns_client = http_client is None

    async def _get_http_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(
                timeout=httpx.Timeout(self._default_timeout),
                follow_redirects=True,
            )
        return self._http_client

    async def request(
        self,
        service_id: str,
        url: str,
        params: dict[str, Any] | None = None,
        headers: dict[str, str] | None = None,
        method: str = "GET",
        json_data: dict[str, Any] | None = None,
        timeout: float | None = None,
    ) -> Any:
        """
        Make an HTTP request and decode the JSON body.

        Args:
            service_id: Identifier for the upstream (used in errors and logs)
            url: Full URL to request
            params: Query parameters
            headers: Additional headers
            method: HTTP method (GET, POST, etc.)
            json_data: JSON body for POST/PUT requests
            timeout: Override request timeout

        Raises:
            UpstreamTimeout: If request times out
            UpstreamFailure: For transport, HTTP status or decode errors
        """
        client = await self._get_http_client()
        req_timeout = timeout or self._default_timeout
        req_headers = {**self._headers, **(headers or {})}

        try:
            response = await client.request(
                method=method,
                url=url,
                params=params,
                headers=req_headers,
                json=json_data,
                timeout=req_timeout,
            )
            response.raise_for_status()
            return response.json()

        except httpx.TimeoutException as e:
            raise UpstreamTimeout(service_id, req_timeout) from e

        except httpx.HTTPStatusError as e:
            logger.warning(f"{service_id} returned HTTP {e.response.status_code} for {url}")
            raise UpstreamFailure(
                f"HTTP {e.response.status_code}: {e.response.text[:200]}",
                service_id=service_id,
            ) from e

        except httpx.RequestError as e:
            raise UpstreamFailure(str(e) or type(e).__name__, service_id=service_id) from e

        except ValueError as e:
            raise UpstreamFailure(f"Invalid JSON from {url}: {e}", service_id=service_id) from e

    async def close(self) -> None:
        """Close the HTTP client and cleanup resources."""
        if self._http_client and self._owns_client:
            await self._http_client.aclose()
            self._http_client = None
        logger.debug("UpstreamClient closed")

    async def __aenter__(self) -> "UpstreamClient":
        """Async context manager entry."""
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        """Async context manager exit."""
        await self.close()
