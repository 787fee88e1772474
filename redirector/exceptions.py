"""Domain exceptions raised by the redirector and its collaborator adapters.

Only ``NotFoundSlug``, ``MethodNotAllowed`` and ``BackendLookupFailure`` can
influence what a client receives. Everything else is raised inside deferred
work and ends up logged.
"""

__all__ = [
    "RedirectorError",
    "NotFoundSlug",
    "MethodNotAllowed",
    "BackendLookupFailure",
    "CacheReadFailure",
    "CacheWriteFailure",
    "SessionFlagEvaluationFailure",
    "AnalyticsDispatchFailure",
    "HealthProbeFailure",
    "RemoteMutationFailure",
]


class RedirectorError(Exception):
    """Base class for all redirector errors."""


class NotFoundSlug(RedirectorError):
    """No record for the slug, or its destination is not an absolute URL."""

    def __init__(self, slug: str, reason: str = "no record"):
        super().__init__(f"Slug '{slug}' not found: {reason}")
        self.slug = slug
        self.reason = reason


class MethodNotAllowed(RedirectorError):
    def __init__(self, method: str):
        super().__init__(f"Method {method} is not allowed")
        self.method = method


class BackendLookupFailure(RedirectorError):
    """The backing store could not be read."""


class CacheReadFailure(RedirectorError):
    pass


class CacheWriteFailure(RedirectorError):
    pass


class SessionFlagEvaluationFailure(RedirectorError):
    pass


class AnalyticsDispatchFailure(RedirectorError):
    pass


class HealthProbeFailure(RedirectorError):
    pass


class RemoteMutationFailure(RedirectorError):
    pass
