"""Configuration management for the slug redirector.

This module provides centralized configuration management using Pydantic BaseSettings
with environment variable support and caching for performance.

Flow Diagram — get_settings()
=============================
::
    ┌─────────────┐
    │  Call get_  │
    │  settings() │
    └──────┬──────┘
           ▼
    ┌─────────────┐
    │ Check cache  │
    │ (lru_cache)  │
    └──────┬──────┘
    HIT?  │
    ┌─────┴─────┐
    │ NO         │ YES
    ▼            ▼
┌─────────┐  ┌─────────┐
│ Create  │  │ Return  │
│ Settings│  │ cached  │
│ instance│  │ value   │
└─────────┘  └─────────┘

How to Use
===========
**Step 1 — Import**::
    from redirector.config import get_settings

**Step 2 — Get settings**::
    settings = get_settings()
    redis_url = settings.REDIS_URL

Key Behaviours
===============
- Settings are cached after first access for performance.
- Environment variables override defaults automatically.
- ``ANALYTICS_ENDPOINTS`` is read as a JSON list, e.g. ``'["https://a/ingest"]'``.
- Analytics dispatch is only active when endpoints *and* a token are present.

Classes:
    Settings:  Pydantic model for all configuration values.

"""

__all__ = ["Settings", "get_settings"]

from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    APP_NAME: str = "slug-redirector"
    APP_ENV: str = "development"
    LOG_LEVEL: str = "INFO"

    # Redis (backing store for link records and session markers)
    REDIS_URL: str = "redis://redis:6379/0"
    REDIS_REPLICA_URL: str = ""
    LINK_KEY_PREFIX: str = ""

    # Edge response cache
    EDGE_CACHE_BACKEND: str = "redis"
    EDGE_CACHE_KEY_PREFIX: str = "edge:"
    EDGE_CACHE_TTL_SECONDS: int = 3600

    # Session identity / first-click markers
    SESSION_KEY_PREFIX: str = "session"
    SESSION_TTL_SECONDS: int = 1800
    SESSION_ID_LENGTH: int = 32

    # Analytics events
    TRACKING_ENABLED: bool = True
    WORKER_VERSION: str = "dev"
    WORKER_DATACENTER: str = ""
    ANALYTICS_ENDPOINTS: list[str] = []
    ANALYTICS_TOKEN: str | None = None

    # Remote mutation service (click + health records)
    MUTATION_URL: str | None = None
    MUTATION_PATH: str = "urlAnalytics:mutateUrlAnalytics"
    SHARED_SECRET: str = ""

    # Destination health probing
    HEALTH_CHECK_TIMEOUT_SECONDS: float = 8.0
    HEALTH_CHECK_USER_AGENT: str = "SlugRedirector-HealthCheck/1.0"

    # Bot detection from edge bot-management headers
    BOT_SCORE_THRESHOLD: int = 30
    BOT_SCORE_HEADER: str = "cf-bot-score"
    VERIFIED_BOT_HEADER: str = "cf-verified-bot"

    # Shared outbound HTTP client
    HTTP_TIMEOUT_SECONDS: float = 5.0

    model_config = SettingsConfigDict(
        env_file=".env",
        case_sensitive=True,
        extra="ignore",
    )

    @property
    def analytics_enabled(self) -> bool:
        return bool(self.ANALYTICS_ENDPOINTS and self.ANALYTICS_TOKEN)


@lru_cache()
def get_settings() -> Settings:
    return Settings()
