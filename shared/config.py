"""
Shared configuration management for the page cache.
"""

from typing import List, Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


DEFAULT_IGNORED_QUERY_PARAMS = [
    "utm_*",
    "fbclid",
    "gclid",
    "mc_cid",
    "mc_eid",
]


class BaseConfig(BaseSettings):
    """Base configuration class with common settings."""

    model_config = SettingsConfigDict(
        env_prefix="PAGECACHE_",
        env_file=".env",
        case_sensitive=False,
        extra="allow"
    )

    # Environment
    env: str = "local"
    log_level: str = "info"


class PageCacheSettings(BaseConfig):
    """Settings for the cache core, its stores and the management service."""

    # Store
    store_backend: Literal["memory", "redis"] = "memory"
    redis_url: str = "redis://localhost:6379/0"
    namespace: str = "pagecache"
    memory_max_entries: int = Field(default=10000, ge=0)
    store_failure_threshold: int = Field(default=5, ge=1)
    store_recovery_timeout: float = Field(default=30.0, gt=0)

    # Caching policy; 0 means entries never expire
    default_ttl_seconds: int = Field(default=3600, ge=0)
    ignored_query_params: List[str] = Field(default_factory=lambda: list(DEFAULT_IGNORED_QUERY_PARAMS))
    vary_headers: List[str] = Field(default_factory=lambda: ["accept-language"])
    cacheable_methods: List[str] = Field(default_factory=lambda: ["GET"])
    coalesce_misses: bool = False

    # Dynamic region markers emitted by the templating layer
    marker_start: str = "\x00DYNAMIC_START\x00"
    marker_end: str = "\x00DYNAMIC_END\x00"

    # Management service
    host: str = "0.0.0.0"
    port: int = 8090

    @field_validator("vary_headers")
    @classmethod
    def _lower_vary_headers(cls, value: List[str]) -> List[str]:
        return [header.lower() for header in value]

    @field_validator("cacheable_methods")
    @classmethod
    def _upper_methods(cls, value: List[str]) -> List[str]:
        return [method.upper() for method in value]

    @field_validator("marker_end")
    @classmethod
    def _distinct_markers(cls, value: str, info) -> str:
        if not value:
            raise ValueError("marker_end must not be empty")
        if value == info.data.get("marker_start"):
            raise ValueError("marker_start and marker_end must differ")
        return value


def get_settings(**overrides) -> PageCacheSettings:
    """Get page cache settings, with explicit overrides taking precedence over env."""
    return PageCacheSettings(**overrides)
