"""
Policy tables for the resilience layer - rate limit categories, entity
classes and monitored providers.

These are plain data supplied at construction time. The defaults mirror the
production deployment; callers can pass their own tables.
"""

from datetime import timedelta

from pydantic import BaseModel, Field, HttpUrl


class RateLimitRule(BaseModel):
    """Quota for one request category."""

    limit: int = Field(gt=0)
    window_seconds: int = Field(gt=0)


class EntityClassConfig(BaseModel):
    """Freshness window for one class of cached entities."""

    name: str
    freshness: timedelta

    @property
    def freshness_ms(self) -> int:
        return int(self.freshness.total_seconds() * 1000)


class ProviderConfig(BaseModel):
    """Candidate endpoints and probe settings for a monitored provider."""

    name: str
    candidate_urls: list[HttpUrl] = Field(min_length=1)
    probe_timeout: float = Field(default=8.0, gt=0)
    # Minimum age of a verdict before an on-demand check probes again
    refresh_interval: timedelta = timedelta(minutes=10)
    headers: dict[str, str] = Field(default_factory=dict)


DEFAULT_RATE_LIMITS: dict[str, RateLimitRule] = {
    "search": RateLimitRule(limit=20, window_seconds=60),
    "anime_detail": RateLimitRule(limit=60, window_seconds=60),
    "calendar": RateLimitRule(limit=30, window_seconds=60),
    "user": RateLimitRule(limit=60, window_seconds=60),
    "email": RateLimitRule(limit=5, window_seconds=3600),
    "streaming": RateLimitRule(limit=120, window_seconds=60),
}

DEFAULT_ENTITY_CLASSES: dict[str, EntityClassConfig] = {
    "anime": EntityClassConfig(name="anime", freshness=timedelta(days=7)),
    "airing": EntityClassConfig(name="airing", freshness=timedelta(minutes=60)),
}

_BROWSER_HEADERS = {
    "User-Agent": (
        "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
        "(KHTML, like Gecko) Chrome/131.0.0.0 Safari/537.36"
    ),
    "Accept": "*/*",
    "Accept-Language": "en-US,en;q=0.9",
    "Referer": "https://hianime.to/",
    "Origin": "https://hianime.to",
}

DEFAULT_PROVIDERS: dict[str, ProviderConfig] = {
    "hianime": ProviderConfig(
        name="hianime",
        candidate_urls=[
            "https://megacloud.club/",
            "https://rapid-cloud.co/",
            "https://s3taku.com/",
        ],
        probe_timeout=8.0,
        refresh_interval=timedelta(minutes=10),
        headers=_BROWSER_HEADERS,
    ),
}
