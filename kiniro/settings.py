import json
import os

from dotenv import load_dotenv
from pydantic import BaseModel, ConfigDict, Field, field_validator

from kiniro.policies import (
    DEFAULT_ENTITY_CLASSES,
    DEFAULT_PROVIDERS,
    DEFAULT_RATE_LIMITS,
    EntityClassConfig,
    ProviderConfig,
    RateLimitRule,
)

load_dotenv()


class Settings(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    # Logging
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")
    debug: bool = Field(default=False, alias="KINIRO_DEBUG")

    # Ephemeral cache
    cache_max_size: int | None = Field(default=2048, alias="CACHE_MAX_SIZE")
    cache_fill_timeout: float = Field(default=15.0, alias="CACHE_FILL_TIMEOUT")
    cache_sweep_interval_seconds: int = Field(
        default=300, alias="CACHE_SWEEP_INTERVAL"
    )

    # Entity cache
    entity_write_concurrency: int = Field(default=8, alias="ENTITY_WRITE_CONCURRENCY")
    entity_read_chunk_size: int = Field(default=30, alias="ENTITY_READ_CHUNK_SIZE")
    entity_classes: dict[str, EntityClassConfig] = Field(
        default_factory=lambda: dict(DEFAULT_ENTITY_CLASSES), alias="ENTITY_CLASSES"
    )

    # Rate limiting
    rate_limit_fail_open: bool = Field(default=True, alias="RATE_LIMIT_FAIL_OPEN")
    rate_limits: dict[str, RateLimitRule] = Field(
        default_factory=lambda: dict(DEFAULT_RATE_LIMITS), alias="RATE_LIMITS"
    )
    rate_window_purge_interval_seconds: int = Field(
        default=600, alias="RATE_WINDOW_PURGE_INTERVAL"
    )

    # Upstream health monitor
    health_probe_on_schedule: bool = Field(default=True, alias="HEALTH_PROBE_ON_SCHEDULE")
    providers: dict[str, ProviderConfig] = Field(
        default_factory=lambda: dict(DEFAULT_PROVIDERS), alias="PROVIDERS"
    )

    # Upstreams
    anilist_api_url: str = Field(
        default="https://graphql.anilist.co", alias="ANILIST_API"
    )
    upstream_timeout: float = Field(default=10.0, alias="UPSTREAM_TIMEOUT")

    # Database Configuration
    database_url: str = Field(
        default="sqlite+aiosqlite:///./kiniro.db", alias="DATABASE_URL"
    )
    database_echo: bool = Field(default=False, alias="DATABASE_ECHO")

    @field_validator("entity_classes", "rate_limits", "providers", mode="before")
    @classmethod
    def parse_json_table(cls, value):
        # Tables arrive as JSON strings from the environment
        if isinstance(value, str):
            return json.loads(value)
        return value


global_settings = Settings.model_validate(dict(os.environ))
