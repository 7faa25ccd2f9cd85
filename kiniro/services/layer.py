"""
ResilienceLayer - the four resilience components behind one object.

Request glue talks to this instead of wiring the pieces by hand:
rate limit first, then the ephemeral cache, then the entity cache for
anything that should outlive the short TTL, and the health monitor in
front of providers that are known to be flaky.
"""

from typing import Any, Awaitable, Callable, Hashable, TypeVar

from loguru import logger

from kiniro.datastore.engine import Database
from kiniro.services.cache import EphemeralCache
from kiniro.services.clock import Clock, system_clock
from kiniro.services.entity_cache import (
    EntityCache,
    Entity,
    EntityId,
    EntitySource,
    MemoryEntityStore,
    SQLEntityStore,
)
from kiniro.services.errors import StoreUnavailable
from kiniro.services.health import UpstreamHealthMonitor
from kiniro.services.rate_limiter import (
    MemoryCounterStore,
    RateLimitDecision,
    RateLimiter,
    SQLCounterStore,
)
from kiniro.settings import Settings, global_settings

T = TypeVar("T")


class ResilienceLayer:
    """
    Explicitly constructed, process-lifetime bundle of the resilience services.

    Usage:
        layer = ResilienceLayer.from_settings(global_settings)

        decision = await layer.check_rate_limit(identity, "search")
        if decision.success:
            anime = await layer.fetch_entity_list(
                "anime", "popular:limit=20", 1800,
                lambda: catalog.get_popular(20), id_of=lambda m: m["id"],
            )
    """

    def __init__(
        self,
        cache: EphemeralCache,
        entities: EntityCache,
        limiter: RateLimiter,
        health: UpstreamHealthMonitor,
        clock: Clock = system_clock,
    ):
        self.cache = cache
        self.entities = entities
        self.limiter = limiter
        self.health = health
        self._clock = clock

    @classmethod
    def from_settings(
        cls,
        settings: Settings | None = None,
        database: Database | None = None,
        clock: Clock = system_clock,
    ) -> "ResilienceLayer":
        """
        Build every component from settings. With a ``database`` the entity
        cache and rate counters are persisted; otherwise they live in memory.
        Rate limit categories, entity classes and providers come from the
        settings tables.
        """
        settings = settings or global_settings
        cache = EphemeralCache(
            max_size=settings.cache_max_size,
            fill_timeout=settings.cache_fill_timeout,
            clock=clock,
            debug=settings.debug,
        )
        entity_store = SQLEntityStore(database) if database is not None else MemoryEntityStore()
        counter_store = SQLCounterStore(database) if database is not None else MemoryCounterStore()
        entities = EntityCache(
            entity_store,
            entity_classes=settings.entity_classes,
            max_concurrency=settings.entity_write_concurrency,
            read_chunk_size=settings.entity_read_chunk_size,
            clock=clock,
        )
        limiter = RateLimiter(
            counter_store,
            rules=settings.rate_limits,
            fail_open=settings.rate_limit_fail_open,
            clock=clock,
        )
        health = UpstreamHealthMonitor(
            providers=settings.providers, clock=clock, debug=settings.debug
        )
        return cls(cache, entities, limiter, health, clock=clock)

    async def check_rate_limit(self, identity: str, category: str) -> RateLimitDecision:
        return await self.limiter.check(identity, category)

    async def fetch_entity_list(
        self,
        entity_class: str,
        cache_key: str,
        ttl_seconds: int,
        fetch_list: Callable[[], Awaitable[list[Any]]],
        id_of: Callable[[Any], Hashable],
    ) -> list[Entity[Any]]:
        """
        Cached upstream list, written through to the entity cache.

        The list comes from the ephemeral cache (one upstream call per TTL),
        its items are upserted into the entity cache and read back in list
        order. Items whose write failed, or all items when the entity store
        cannot be read back, are still returned marked as
        ``EntitySource.FALLBACK``.

        Raises:
            UpstreamFailure: the list could not be fetched
        """
        items = await self.cache.get_or_set(cache_key, ttl_seconds, fetch_list)
        payloads: dict[EntityId, Any] = {id_of(item): item for item in items}
        if not payloads:
            return []

        report = await self.entities.upsert_payloads(entity_class, payloads)
        try:
            stored = await self.entities.get_many(entity_class, list(payloads))
        except StoreUnavailable as e:
            logger.warning(f"{cache_key}: entity store unreadable, serving fetched list: {e}")
            stored = {}

        now_ms = self._clock.now_ms()
        results: list[Entity[Any]] = []
        for entity_id, payload in payloads.items():
            entity = stored.get(entity_id)
            if entity is None:
                entity = Entity(
                    id=entity_id,
                    payload=payload,
                    updated_at_ms=now_ms,
                    source=EntitySource.FALLBACK,
                )
            results.append(entity)

        if report.failed:
            logger.warning(
                f"{cache_key}: {len(report.failed)} of {len(payloads)} entities "
                f"served without persisting"
            )
        return results

    async def get_entities(
        self,
        entity_class: str,
        ids: list[EntityId],
        fetch_missing: Callable[[list[EntityId]], Awaitable[dict[EntityId, Any]]],
    ) -> dict[EntityId, Entity[Any]]:
        """
        Fresh entities for ``ids``; misses are fetched upstream in one call
        and upserted before being returned. Ids the upstream does not know
        stay absent. An unreadable entity store counts as all misses.

        Raises:
            UpstreamFailure: the misses could not be fetched
        """
        try:
            found = await self.entities.get_many(entity_class, ids)
        except StoreUnavailable as e:
            logger.warning(f"Entity store unreadable for {entity_class}, fetching upstream: {e}")
            found = {}
        missing = [i for i in ids if i not in found]
        if not missing:
            return found

        fetched = await fetch_missing(missing)
        if fetched:
            report = await self.entities.upsert_payloads(entity_class, fetched)
            now_ms = self._clock.now_ms()
            for entity_id, payload in fetched.items():
                found[entity_id] = Entity(
                    id=entity_id,
                    payload=payload,
                    updated_at_ms=now_ms,
                    source=(
                        EntitySource.FALLBACK
                        if entity_id in report.failed
                        else EntitySource.PRIMARY
                    ),
                )
        return found

    async def call_provider(self, provider: str, request_fn: Callable[[], Awaitable[T]]) -> T:
        """
        Run ``request_fn`` only if ``provider`` is currently considered up.

        Raises:
            ProviderUnavailableError: the latest health verdict is unavailable
        """
        await self.health.ensure_available(provider)
        return await request_fn()

    def get_stats(self) -> dict[str, Any]:
        """Status of all components."""
        return {
            "cache": self.cache.get_stats().to_dict(),
            "providers": self.health.get_all_status(),
            "unavailable_providers": self.health.get_unavailable(),
            "rate_limit_fail_open": self.limiter.fail_open,
        }

    async def close(self) -> None:
        await self.cache.close()
        await self.health.close()
