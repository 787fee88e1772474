"""Shared pytest fixtures: in-memory collaborators, a recording HTTP transport and the ASGI client."""

import asyncio
import json
import logging
from collections.abc import AsyncGenerator, Callable
from types import SimpleNamespace
from typing import Any, Optional
from unittest.mock import AsyncMock

import httpx
import pytest
import pytest_asyncio
import redis.asyncio as redis
from httpx import ASGITransport, AsyncClient

from redirector.coalescer import LookupCoalescer
from redirector.config import Settings
from redirector.context import RequestContext
from redirector.dependencies import get_service_manager
from redirector.edge_cache import InMemoryEdgeCache
from redirector.exceptions import BackendLookupFailure
from redirector.fingerprint import RequestFingerprinter
from redirector.health import HealthProber
from redirector.main import app
from redirector.resolver import RedirectResolver
from redirector.schemas import ShortLinkRecord
from redirector.telemetry import RemoteMutationClient, TelemetryDispatcher

INGEST_URL = "https://ingest.test/events"
MUTATION_URL = "https://mutations.test"
SHORT_ORIGIN = "https://sho.rt"
BROWSER_UA = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
)


# ============================================================================
# FAKES
# ============================================================================


class FakeLinkStore:
    """Dict-backed stand-in for LinkStore with call counting and an optional gate."""

    def __init__(self):
        self.records: dict[str, dict[str, Any]] = {}
        self.markers: dict[str, Any] = {}
        self.fetches = 0
        self.gate: Optional[asyncio.Event] = None
        self.fail_lookups = False
        self.fail_markers = False

    def add(self, slug: str, **fields: Any) -> None:
        self.records[slug] = fields

    async def get_record(self, slug: str) -> Optional[ShortLinkRecord]:
        self.fetches += 1
        if self.gate is not None:
            await self.gate.wait()
        if self.fail_lookups:
            raise BackendLookupFailure(f"GET {slug} failed: connection refused")
        value = self.records.get(slug)
        return ShortLinkRecord.model_validate(value) if value is not None else None

    async def set(self, key: str, value: Any, ttl_seconds: int, only_if_absent: bool = False) -> bool:
        if self.fail_markers:
            raise BackendLookupFailure(f"SET {key} failed: connection refused")
        if only_if_absent and key in self.markers:
            return False
        self.markers[key] = value
        return True


class RecordingTransport:
    """httpx MockTransport handler that records every outbound request."""

    def __init__(self):
        self.requests: list[httpx.Request] = []
        self.ingest_status = 202
        self.head_status = 200
        self.head_headers: dict[str, str] = {}
        self.head_error: Optional[Exception] = None

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if request.method == "HEAD":
            if self.head_error is not None:
                raise self.head_error
            return httpx.Response(self.head_status, headers=self.head_headers)
        if str(request.url) == INGEST_URL:
            return httpx.Response(self.ingest_status, json={"accepted": True})
        if request.url.path == "/api/mutation":
            return httpx.Response(200, json={"status": "success", "value": None})
        return httpx.Response(404)

    def by_method(self, method: str) -> list[httpx.Request]:
        return [request for request in self.requests if request.method == method]

    @property
    def analytics_events(self) -> list[dict[str, Any]]:
        return [json.loads(request.content) for request in self.requests if str(request.url) == INGEST_URL]

    @property
    def mutations(self) -> list[dict[str, Any]]:
        return [json.loads(request.content) for request in self.requests if request.url.path == "/api/mutation"]


def make_context(
    path: str = "/abc",
    method: str = "GET",
    headers: Optional[dict[str, str]] = None,
    client_ip: str = "203.0.113.7",
) -> RequestContext:
    merged = {"user-agent": BROWSER_UA}
    merged.update(headers or {})
    return RequestContext(method=method, url=f"{SHORT_ORIGIN}{path}", headers=merged, client_ip=client_ip)


# ============================================================================
# FIXTURES
# ============================================================================


@pytest.fixture
def settings() -> Settings:
    return Settings(
        EDGE_CACHE_BACKEND="memory",
        ANALYTICS_ENDPOINTS=[INGEST_URL],
        ANALYTICS_TOKEN="test-token",
        MUTATION_URL=MUTATION_URL,
        SHARED_SECRET="shared-secret",
        WORKER_DATACENTER="TST",
        WORKER_VERSION="test",
    )


@pytest.fixture
def link_store() -> FakeLinkStore:
    return FakeLinkStore()


@pytest.fixture
def edge_cache() -> InMemoryEdgeCache:
    return InMemoryEdgeCache()


@pytest.fixture
def transport() -> RecordingTransport:
    return RecordingTransport()


@pytest.fixture
def make_ctx() -> Callable[..., RequestContext]:
    return make_context


@pytest_asyncio.fixture
async def http_client(transport: RecordingTransport) -> AsyncGenerator[httpx.AsyncClient, None]:
    async with httpx.AsyncClient(transport=httpx.MockTransport(transport)) as client:
        yield client


@pytest.fixture
def dispatcher(settings: Settings, http_client: httpx.AsyncClient) -> TelemetryDispatcher:
    prober = HealthProber(http_client, timeout_seconds=1.0, user_agent="test-probe/1.0")
    mutations = RemoteMutationClient(http_client, MUTATION_URL, settings.MUTATION_PATH, settings.SHARED_SECRET)
    return TelemetryDispatcher(settings, http_client, prober, mutations)


@pytest.fixture
def resolver(
    settings: Settings,
    link_store: FakeLinkStore,
    edge_cache: InMemoryEdgeCache,
    dispatcher: TelemetryDispatcher,
) -> RedirectResolver:
    return RedirectResolver(
        edge_cache,
        LookupCoalescer(link_store),
        RequestFingerprinter(settings, link_store),
        dispatcher,
    )


@pytest.fixture
def service_manager(resolver: RedirectResolver) -> SimpleNamespace:
    cache_writer = AsyncMock(spec=redis.Redis)
    cache_writer.ping = AsyncMock(return_value=True)
    return SimpleNamespace(
        logger=logging.getLogger("redirector"),
        cache_writer=cache_writer,
        resolver=resolver,
    )


@pytest_asyncio.fixture
async def client(service_manager: SimpleNamespace) -> AsyncGenerator[AsyncClient, None]:
    async def override_get_service_manager() -> SimpleNamespace:
        return service_manager

    app.dependency_overrides[get_service_manager] = override_get_service_manager

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url=SHORT_ORIGIN, headers={"user-agent": BROWSER_UA}) as ac:
        yield ac

    app.dependency_overrides.clear()
