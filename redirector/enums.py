"""Shared enums for the slug redirector.

This module defines all status and state enums used across the codebase.
Using enums instead of string literals provides type safety and prevents typos.
"""

from enum import StrEnum

__all__ = [
    "HealthStatus",
    "DestinationHealth",
    "DistributionMode",
    "ResolutionSource",
    "DeviceType",
    "RequestStatus",
]


class HealthStatus(StrEnum):
    """Health check status values for this service."""

    HEALTHY = "healthy"
    UNHEALTHY = "unhealthy"

    @classmethod
    def from_str(cls, value: str) -> "HealthStatus":
        """Safely parse from string, falling back to UNHEALTHY for unknown values."""
        try:
            return cls(value)
        except ValueError:
            return cls.UNHEALTHY


class DestinationHealth(StrEnum):
    """Outcome of a background probe against a link destination."""

    HEALTHY = "healthy"
    SLOW = "slow"
    UNSTABLE = "unstable"
    DOWN = "down"
    TIMEOUT = "timeout"
    SSL_ERROR = "ssl_error"
    DNS_ERROR = "dns_error"
    REDIRECT_LOOP = "redirect_loop"
    ERROR = "error"

    @classmethod
    def from_str(cls, value: str) -> "DestinationHealth":
        """Safely parse from string, falling back to ERROR for unknown values."""
        try:
            return cls(value)
        except ValueError:
            return cls.ERROR


class DistributionMode(StrEnum):
    """How an experiment splits traffic between its variants."""

    WEIGHTED = "weighted"
    DETERMINISTIC = "deterministic"

    @classmethod
    def from_str(cls, value: str) -> "DistributionMode":
        """Anything that is not explicitly deterministic is weighted."""
        try:
            return cls(value)
        except ValueError:
            return cls.WEIGHTED


class ResolutionSource(StrEnum):
    """Where a resolved destination came from."""

    CACHE = "cache"
    STORE = "store"
    COALESCED_FOLLOWER = "coalesced-follower"


class DeviceType(StrEnum):
    DESKTOP = "desktop"
    MOBILE = "mobile"
    TABLET = "tablet"


class RequestStatus(StrEnum):
    """Request status values for metrics and logging."""

    SUCCESS = "success"
    NOT_FOUND = "not_found"
    METHOD_NOT_ALLOWED = "method_not_allowed"
    ERROR = "error"

    @classmethod
    def from_str(cls, value: str) -> "RequestStatus":
        """Safely parse from string, falling back to ERROR for unknown values."""
        try:
            return cls(value)
        except ValueError:
            return cls.ERROR

