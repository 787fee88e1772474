"""Pydantic schemas for link records, cache entries and telemetry payloads.

Schema Hierarchy
=================
::
    ShortLinkRecord (read from the backing store)
    ├─ destination: str (must be an absolute URL)
    ├─ link_id / user_id / tenant_id
    ├─ is_active, expires_at, max_clicks
    ├─ utm_params: dict[str, str]
    ├─ rules: Rules
    │   └─ ab_test: ExperimentConfig | None
    │       ├─ enabled: bool
    │       ├─ distribution: weighted | deterministic
    │       └─ variants: list[Variant(id, weight, url)]
    ├─ features: LinkFeatures
    └─ version: int

    CachedRedirect (edge cache entry)
    ├─ location: canonical, pre-variant destination
    └─ experiment: ExperimentConfig | None

    AnalyticsEvent (immutable, one per request)
    HealthProbeResult (one per background probe)
    ClickEventSummary (sent with the health record)

Key Behaviours
===============
- Records are parsed once at fetch time; a malformed ``ab_test`` block
  becomes ``None`` so the link still redirects to its canonical destination.
- Unknown distribution strings fall back to ``weighted``.
- ``AnalyticsEvent`` is frozen; ``model_dump(mode="json")`` is the wire format.
"""

import datetime
from typing import Any
from urllib.parse import urlsplit

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from redirector.enums import DestinationHealth, DistributionMode, HealthStatus, ResolutionSource

__all__ = [
    "is_absolute_url",
    "Variant",
    "ExperimentConfig",
    "Rules",
    "LinkFeatures",
    "ShortLinkRecord",
    "CachedRedirect",
    "VariantChoice",
    "ResolvedDestination",
    "AnalyticsEvent",
    "HealthProbeResult",
    "ClickEventSummary",
    "HealthResponse",
]

HOST_REQUIRED_SCHEMES = frozenset({"http", "https", "ws", "wss", "ftp"})


def is_absolute_url(value: Any) -> bool:
    """True for any value with a scheme, including app deep links and ``mailto:`` addresses."""
    if not isinstance(value, str) or not value.strip():
        return False
    try:
        parts = urlsplit(value.strip())
    except ValueError:
        return False
    if not parts.scheme:
        return False
    if parts.scheme in HOST_REQUIRED_SCHEMES:
        return bool(parts.netloc)
    return bool(parts.netloc or parts.path)


class Variant(BaseModel):
    id: str
    weight: float = Field(1.0, ge=0)
    url: str


class ExperimentConfig(BaseModel):
    enabled: bool = False
    distribution: DistributionMode = DistributionMode.WEIGHTED
    variants: list[Variant] = Field(default_factory=list)

    @field_validator("distribution", mode="before")
    @classmethod
    def coerce_distribution(cls, v: Any) -> DistributionMode:
        if v is None:
            return DistributionMode.WEIGHTED
        return DistributionMode.from_str(str(v))

    @property
    def is_active(self) -> bool:
        return self.enabled and bool(self.variants)

    @property
    def total_weight(self) -> float:
        return sum(variant.weight for variant in self.variants)


class Rules(BaseModel):
    ab_test: ExperimentConfig | None = None

    model_config = ConfigDict(extra="allow")

    @field_validator("ab_test", mode="wrap")
    @classmethod
    def drop_malformed_experiment(cls, v: Any, handler) -> ExperimentConfig | None:
        try:
            return handler(v)
        except ValidationError:
            return None


class LinkFeatures(BaseModel):
    track_clicks: bool = True
    track_conversions: bool = False


class ShortLinkRecord(BaseModel):
    """Link record as stored by the link management service."""

    destination: str
    link_id: str | None = None
    user_id: str | None = None
    tenant_id: str | None = None
    redirect_type: int = 302
    created_at: int | None = None
    updated_at: int | None = None
    is_active: bool = True
    expires_at: int | None = None
    max_clicks: int | None = None
    tags: list[str] = Field(default_factory=list)
    utm_params: dict[str, str] = Field(default_factory=dict)
    rules: Rules = Field(default_factory=Rules)
    features: LinkFeatures = Field(default_factory=LinkFeatures)
    custom_metadata: dict[str, Any] = Field(default_factory=dict)
    version: int = 0

    model_config = ConfigDict(extra="ignore")

    @field_validator("rules", mode="before")
    @classmethod
    def default_rules(cls, v: Any) -> Any:
        return v if isinstance(v, dict) else {}

    @field_validator("utm_params", mode="before")
    @classmethod
    def stringify_utm_params(cls, v: Any) -> dict[str, str]:
        if not isinstance(v, dict):
            return {}
        return {str(key): str(value) for key, value in v.items() if value not in (None, "")}

    @property
    def has_valid_destination(self) -> bool:
        return is_absolute_url(self.destination)

    @property
    def experiment(self) -> ExperimentConfig | None:
        return self.rules.ab_test

    @property
    def is_owned(self) -> bool:
        return bool(self.link_id and self.user_id)


class CachedRedirect(BaseModel):
    """Edge cache payload: the canonical destination plus its experiment snapshot."""

    location: str
    status: int = 301
    experiment: ExperimentConfig | None = None
    version: int = 0


class VariantChoice(BaseModel):
    variant_id: str
    url: str


class ResolvedDestination(BaseModel):
    url: str
    variant_id: str | None = None
    source: ResolutionSource


class AnalyticsEvent(BaseModel):
    """Snapshot of one redirect, posted as-is to the ingestion endpoints."""

    idempotency_key: str
    occurred_at: datetime.datetime
    link_slug: str
    short_url: str
    link_id: str | None = None
    user_id: str | None = None
    destination_url: str
    redirect_status: int
    tracking_enabled: bool
    latency_ms_worker: float
    session_id: str | None = None
    first_click_of_session: bool
    request_id: str
    worker_datacenter: str = ""
    worker_version: str = "dev"
    user_agent: str = ""
    device_type: str | None = None
    browser: str | None = None
    os: str | None = None
    ip_hash: str
    country: str = ""
    region: str | None = None
    city: str | None = None
    referer: str | None = None
    utm_source: str | None = None
    utm_medium: str | None = None
    utm_campaign: str | None = None
    utm_term: str | None = None
    utm_content: str | None = None
    is_bot: bool
    language: str | None = None
    timezone: str | None = None
    variant_id: str | None = None

    model_config = ConfigDict(frozen=True)


class HealthProbeResult(BaseModel):
    status: DestinationHealth
    is_healthy: bool
    response_time_ms: float
    http_status: int | None = None
    error_message: str | None = None


class ClickEventSummary(BaseModel):
    slug: str
    timestamp: datetime.datetime
    country: str = ""
    city: str | None = None
    device_type: str | None = None
    browser: str | None = None
    os: str | None = None
    referer: str | None = None

    @classmethod
    def from_event(cls, event: AnalyticsEvent) -> "ClickEventSummary":
        return cls(
            slug=event.link_slug,
            timestamp=event.occurred_at,
            country=event.country,
            city=event.city,
            device_type=event.device_type,
            browser=event.browser,
            os=event.os,
            referer=event.referer,
        )


class HealthResponse(BaseModel):
    status: HealthStatus
    cache: HealthStatus
