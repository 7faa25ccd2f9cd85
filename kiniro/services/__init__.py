"""
Service layer infrastructure - resilience patterns for upstream providers.

Provides:
- EphemeralCache: Short-lived cache-aside tier with coalesced fills
- EntityCache: Durable entity cache with per-class freshness
- RateLimiter: Fixed-window quotas per identity and category
- UpstreamHealthMonitor: Probe-based availability verdicts
- ResilienceLayer: The four combined for request glue
"""

from kiniro.services.errors import (
    ServiceError,
    UpstreamFailure,
    UpstreamTimeout,
    StoreUnavailable,
    ProviderUnavailableError,
    RateLimitExceededError,
)
from kiniro.services.cache import EphemeralCache, CacheRecord, CacheResult, FillResult
from kiniro.services.entity_cache import (
    BatchWriteReport,
    Entity,
    EntityCache,
    EntitySource,
    MemoryEntityStore,
    SQLEntityStore,
)
from kiniro.services.rate_limiter import (
    MemoryCounterStore,
    RateLimitDecision,
    RateLimiter,
    SQLCounterStore,
)
from kiniro.services.health import HealthStatus, ProbeResult, UpstreamHealthMonitor
from kiniro.services.deduplicator import RequestDeduplicator
from kiniro.services.layer import ResilienceLayer

__all__ = [
    # Errors
    "ServiceError",
    "UpstreamFailure",
    "UpstreamTimeout",
    "StoreUnavailable",
    "ProviderUnavailableError",
    "RateLimitExceededError",
    # Ephemeral cache
    "EphemeralCache",
    "CacheRecord",
    "CacheResult",
    "FillResult",
    # Entity cache
    "BatchWriteReport",
    "Entity",
    "EntityCache",
    "EntitySource",
    "MemoryEntityStore",
    "SQLEntityStore",
    # Rate limiting
    "MemoryCounterStore",
    "RateLimitDecision",
    "RateLimiter",
    "SQLCounterStore",
    # Health
    "HealthStatus",
    "ProbeResult",
    "UpstreamHealthMonitor",
    # Deduplicator
    "RequestDeduplicator",
    # Layer
    "ResilienceLayer",
]
