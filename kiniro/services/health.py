"""
UpstreamHealthMonitor - Availability verdicts for flaky providers.

Each monitored provider has several candidate endpoints. A probe cycle sends
one lightweight HEAD request to every candidate concurrently, each bounded by
the provider's probe timeout, and folds the results into one HealthStatus:
available iff at least one candidate answered with anything but 403.

Cycles are triggered two ways:
- on demand by ``get_health_status`` once the last verdict is older than the
  provider's ``refresh_interval``; concurrent triggers share one cycle
- on a fixed interval by the maintenance scheduler, independent of traffic

Callers treat ``available=False`` like an open circuit: skip the request and
fail fast with ProviderUnavailableError.
"""

import asyncio
from typing import Any

import httpx
from loguru import logger
from pydantic import BaseModel, Field

from kiniro.policies import DEFAULT_PROVIDERS, ProviderConfig
from kiniro.services.clock import Clock, system_clock
from kiniro.services.deduplicator import RequestDeduplicator
from kiniro.services.errors import ProviderUnavailableError, UnknownProviderError

BLOCKED_STATUS = 403


class ProbeResult(BaseModel):
    """Outcome of probing one candidate URL."""

    url: str
    reachable: bool
    latency_ms: int | None = None
    checked_at_ms: int
    status_code: int | None = None
    error: str | None = None  # 'timeout' for a probe timeout


class HealthStatus(BaseModel):
    """Aggregated verdict for one provider."""

    provider: str
    available: bool
    last_checked_ms: int
    tested_urls: list[ProbeResult] = Field(default_factory=list)
    reason: str | None = None


class UpstreamHealthMonitor:
    """
    Probes candidate endpoints and keeps the latest verdict per provider.

    Usage:
        monitor = UpstreamHealthMonitor()

        if not await monitor.is_available("hianime"):
            raise ProviderUnavailableError("hianime")
    """

    def __init__(
        self,
        providers: dict[str, ProviderConfig] | None = None,
        http_client: httpx.AsyncClient | None = None,
        clock: Clock = system_clock,
        debug: bool = False,
    ):
        self._providers = dict(providers or DEFAULT_PROVIDERS)
        self._statuses: dict[str, HealthStatus] = {}
        self._cycles = RequestDeduplicator(name="HealthMonitor.cycle", debug=debug)
        self._http_client = http_client
        self._owns_client = http_client is None
        self._clock = clock
        self._debug = debug

    @property
    def providers(self) -> list[str]:
        return list(self._providers)

    def get_config(self, provider: str) -> ProviderConfig:
        config = self._providers.get(provider)
        if config is None:
            raise UnknownProviderError(provider)
        return config

    def _get_http_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(follow_redirects=False)
        return self._http_client

    async def get_health_status(self, provider: str, force: bool = False) -> HealthStatus:
        """
        Latest verdict for ``provider``, probing first if it is missing or
        older than the provider's refresh interval.
        """
        config = self.get_config(provider)
        status = self._statuses.get(provider)
        if status is not None and not force:
            age_ms = self._clock.now_ms() - status.last_checked_ms
            if age_ms < config.refresh_interval.total_seconds() * 1000:
                return status
        return await self.probe_cycle(provider)

    def last_status(self, provider: str) -> HealthStatus | None:
        """Cached verdict without triggering a probe."""
        self.get_config(provider)
        return self._statuses.get(provider)

    async def is_available(self, provider: str) -> bool:
        status = await self.get_health_status(provider)
        return status.available

    async def ensure_available(self, provider: str) -> HealthStatus:
        """
        Raises:
            ProviderUnavailableError: the latest verdict is unavailable
        """
        status = await self.get_health_status(provider)
        if not status.available:
            raise ProviderUnavailableError(provider, status.reason)
        return status

    async def probe_cycle(self, provider: str) -> HealthStatus:
        """Run (or join the running) probe cycle for ``provider``."""
        config = self.get_config(provider)
        return await self._cycles.dedupe(provider, lambda: self._run_cycle(config))

    async def _run_cycle(self, config: ProviderConfig) -> HealthStatus:
        urls = [str(u) for u in config.candidate_urls]
        results = await asyncio.gather(*(self._probe_url(config, url) for url in urls))

        available = any(r.reachable for r in results)
        reason = None
        if not available:
            first_error = next(
                (r.error or f"HTTP {r.status_code}" for r in results), "no candidates"
            )
            reason = f"all {len(results)} candidates unreachable (first error: {first_error})"

        status = HealthStatus(
            provider=config.name,
            available=available,
            last_checked_ms=self._clock.now_ms(),
            tested_urls=list(results),
            reason=reason,
        )
        previous = self._statuses.get(config.name)
        self._statuses[config.name] = status

        if previous is None or previous.available != available:
            if available:
                logger.info(f"Provider '{config.name}' is available")
            else:
                logger.warning(f"Provider '{config.name}' is unavailable: {reason}")
        return status

    async def _probe_url(self, config: ProviderConfig, url: str) -> ProbeResult:
        """Probe one candidate. Failures are recorded, never raised."""
        client = self._get_http_client()
        loop = asyncio.get_running_loop()
        started = loop.time()

        def elapsed_ms() -> int:
            return int((loop.time() - started) * 1000)

        try:
            response = await asyncio.wait_for(
                client.head(url, headers=config.headers, timeout=config.probe_timeout),
                config.probe_timeout,
            )
        except (asyncio.TimeoutError, httpx.TimeoutException):
            result = ProbeResult(
                url=url,
                reachable=False,
                latency_ms=None,
                checked_at_ms=self._clock.now_ms(),
                error="timeout",
            )
        except Exception as e:
            result = ProbeResult(
                url=url,
                reachable=False,
                latency_ms=elapsed_ms(),
                checked_at_ms=self._clock.now_ms(),
                error=f"{type(e).__name__}: {e}",
            )
        else:
            result = ProbeResult(
                url=url,
                reachable=response.status_code != BLOCKED_STATUS,
                latency_ms=elapsed_ms(),
                checked_at_ms=self._clock.now_ms(),
                status_code=response.status_code,
            )

        self._log(f"PROBE {config.name} {url}: {result.status_code or result.error}")
        return result

    def get_all_status(self) -> dict[str, dict[str, Any] | None]:
        """Latest verdict of every provider as dictionaries."""
        result: dict[str, dict[str, Any] | None] = {}
        for name in self._providers:
            status = self._statuses.get(name)
            result[name] = status.model_dump() if status else None
        return result

    def get_unavailable(self) -> list[str]:
        """Providers whose latest verdict is unavailable."""
        return [name for name, s in self._statuses.items() if not s.available]

    async def close(self) -> None:
        await self._cycles.cancel_all()
        if self._http_client is not None and self._owns_client:
            await self._http_client.aclose()
            self._http_client = None

    def _log(self, message: str) -> None:
        """Log debug message if debug mode is enabled."""
        if self._debug:
            logger.debug(f"[HealthMonitor] {message}")
