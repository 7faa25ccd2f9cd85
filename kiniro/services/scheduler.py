"""
Maintenance scheduler
Uses APScheduler to sweep the ephemeral cache, purge expired rate windows
and probe monitored providers on fixed intervals, independent of request traffic.
"""

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from loguru import logger

from kiniro.services.layer import ResilienceLayer
from kiniro.settings import Settings, global_settings
from kiniro.utils import safe_job_wrapper


class MaintenanceScheduler:
    """Periodic cache sweeps and health probe cycles"""

    def __init__(self, layer: ResilienceLayer, settings: Settings | None = None):
        self.layer = layer
        self.settings = settings or global_settings
        self.scheduler = AsyncIOScheduler()
        self._is_running = False

    @safe_job_wrapper
    async def sweep_cache_job(self) -> int:
        """Drop expired ephemeral cache records"""
        removed = await self.layer.cache.cleanup_expired()
        if removed:
            logger.info(f"Cache sweep removed {removed} expired entries")
        return removed

    @safe_job_wrapper
    async def purge_rate_windows_job(self) -> int:
        """Drop rolled-over rate limit windows"""
        removed = await self.layer.limiter.purge_expired()
        if removed:
            logger.info(f"Rate window purge removed {removed} expired windows")
        return removed

    @safe_job_wrapper
    async def probe_provider_job(self, provider: str) -> bool:
        """Refresh one provider's health verdict"""
        status = await self.layer.health.probe_cycle(provider)
        return status.available

    def start(self) -> None:
        """Start the scheduler"""
        if self._is_running:
            logger.warning("Maintenance scheduler is already running")
            return

        self.scheduler.add_job(
            self.sweep_cache_job,
            trigger="interval",
            seconds=self.settings.cache_sweep_interval_seconds,
            id="cache_sweep_job",
            name="Ephemeral cache sweep",
            replace_existing=True,
        )

        self.scheduler.add_job(
            self.purge_rate_windows_job,
            trigger="interval",
            seconds=self.settings.rate_window_purge_interval_seconds,
            id="rate_window_purge_job",
            name="Rate window purge",
            replace_existing=True,
        )

        if self.settings.health_probe_on_schedule:
            for provider in self.layer.health.providers:
                config = self.layer.health.get_config(provider)
                self.scheduler.add_job(
                    self.probe_provider_job,
                    trigger="interval",
                    seconds=int(config.refresh_interval.total_seconds()),
                    args=[provider],
                    id=f"health_probe_{provider}",
                    name=f"Health probe: {provider}",
                    replace_existing=True,
                    max_instances=1,
                    coalesce=True,
                )

        self.scheduler.start()
        self._is_running = True

        logger.info(
            f"Maintenance scheduler started: {len(self.scheduler.get_jobs())} jobs"
        )

    def stop(self) -> None:
        """Stop the scheduler"""
        if not self._is_running:
            logger.warning("Maintenance scheduler is not running")
            return

        self.scheduler.shutdown(wait=False)
        self._is_running = False
        logger.info("Maintenance scheduler stopped")

    def is_running(self) -> bool:
        """Check whether the scheduler is running"""
        return self._is_running

    async def run_now(self) -> dict[str, bool]:
        """Run one sweep, one purge and one probe cycle per provider immediately"""
        logger.info("Manual maintenance run triggered")
        await self.sweep_cache_job()
        await self.purge_rate_windows_job()
        results = {}
        for provider in self.layer.health.providers:
            results[provider] = bool(await self.probe_provider_job(provider))
        return results
