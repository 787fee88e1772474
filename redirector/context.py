"""Per-request context shared by the resolver, fingerprinter and telemetry.

The context is a plain snapshot of the incoming request (method, URL,
headers, peer address) plus tracking identifiers. Nothing in it refers to
the ASGI request object, so deferred work can keep using it after the
response has been sent.
"""

import logging
import time
import uuid
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Optional
from urllib.parse import parse_qsl, urlsplit

from starlette.requests import Request

__all__ = ["ContextLoggerAdapter", "RequestContext"]


class ContextLoggerAdapter(logging.LoggerAdapter):
    """LoggerAdapter that keeps per-call ``extra`` fields alongside the request fields."""

    def process(self, msg, kwargs):
        kwargs["extra"] = {**self.extra, **kwargs.get("extra", {})}
        return msg, kwargs


def _request_id_from(headers: Mapping[str, str]) -> str:
    return headers.get("cf-ray") or headers.get("x-request-id") or str(uuid.uuid4())


@dataclass
class RequestContext:
    """Comprehensive request context with tracking and observability.

    Attributes:
        method: HTTP method of the request
        url: Full request URL including query string
        headers: Request headers with lower-cased names
        client_ip: Socket peer address, used when no edge IP header is present
        request_id: Edge ray id, ``X-Request-ID`` or a fresh uuid4
        trace_id: Correlation ID for distributed tracing
        start_time: Request start timestamp
        tags: Request tags for categorization
    """

    method: str
    url: str
    headers: dict[str, str] = field(default_factory=dict)
    client_ip: Optional[str] = None
    request_id: str = ""
    trace_id: Optional[str] = None
    start_time: float = field(default_factory=time.perf_counter)
    tags: list[str] = field(default_factory=list)
    base_logger: logging.Logger = field(default_factory=lambda: logging.getLogger("redirector"))

    def __post_init__(self) -> None:
        self.method = self.method.upper()
        self.headers = {name.lower(): value for name, value in self.headers.items()}
        if not self.request_id:
            self.request_id = _request_id_from(self.headers)

    @classmethod
    def from_request(cls, request: Request, logger: Optional[logging.Logger] = None) -> "RequestContext":
        ctx = cls(
            method=request.method,
            url=str(request.url),
            headers=dict(request.headers),
            client_ip=request.client.host if request.client else None,
            trace_id=request.headers.get("x-trace-id"),
        )
        if logger is not None:
            ctx.base_logger = logger
        return ctx

    def header(self, name: str) -> Optional[str]:
        return self.headers.get(name.lower())

    @property
    def origin(self) -> str:
        parts = urlsplit(self.url)
        return f"{parts.scheme}://{parts.netloc}".lower()

    @property
    def query_params(self) -> dict[str, str]:
        # first occurrence wins, blank values are treated as absent
        params: dict[str, str] = {}
        for key, value in parse_qsl(urlsplit(self.url).query):
            params.setdefault(key, value)
        return params

    @property
    def user_agent(self) -> str:
        return self.headers.get("user-agent", "")

    @property
    def logger(self) -> ContextLoggerAdapter:
        """Get shared logger with request context."""
        return ContextLoggerAdapter(
            self.base_logger,
            {
                "request_id": self.request_id,
                "trace_id": self.trace_id or self.request_id,
                "client_ip": self.client_ip,
                "user_agent": self.user_agent,
                "tags": ",".join(self.tags),
            },
        )

    def add_tag(self, tag: str) -> None:
        """Add a tag to the request context."""
        if tag not in self.tags:
            self.tags.append(tag)

    def get_duration(self) -> float:
        """Get request duration in milliseconds."""
        return (time.perf_counter() - self.start_time) * 1000
