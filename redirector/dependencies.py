"""Dependency injection with a singleton service manager.

Shared resources (Redis clients, the outbound httpx client, the edge cache,
the lookup coalescer) are created once at startup and reused by every
request, so the per-request cost is a ``RequestContext`` snapshot.

Wiring Diagram
==============
::
    ServiceManager
    ├─ settings            get_settings()
    ├─ logger              "redirector" (stream handler, LOG_LEVEL)
    ├─ cache_writer        redis.from_url(REDIS_URL)
    ├─ cache_reader        redis.from_url(REDIS_REPLICA_URL or REDIS_URL)
    ├─ http_client         httpx.AsyncClient(timeout=HTTP_TIMEOUT_SECONDS)
    ├─ store               LinkStore(writer, reader)
    ├─ edge_cache          create_edge_cache(settings, writer)
    ├─ coalescer           LookupCoalescer(store)
    ├─ fingerprinter       RequestFingerprinter(settings, store)
    ├─ dispatcher          TelemetryDispatcher(prober, mutation client)
    └─ resolver            RedirectResolver(...)

The coalescer lives on the manager, not on the request, because its
in-flight map has to be shared between concurrent requests.
"""

import logging
from typing import Optional

import httpx
import redis.asyncio as redis
from fastapi import Depends, Request

from redirector.coalescer import LookupCoalescer
from redirector.config import get_settings
from redirector.context import RequestContext
from redirector.edge_cache import create_edge_cache
from redirector.fingerprint import RequestFingerprinter
from redirector.health import HealthProber
from redirector.resolver import RedirectResolver
from redirector.store import LinkStore
from redirector.telemetry import RemoteMutationClient, TelemetryDispatcher

__all__ = [
    "ServiceManager",
    "get_service_manager",
    "get_request_context",
    "get_resolver",
]


# ============================================================================
# SINGLETON SERVICE MANAGER
# ============================================================================


class ServiceManager:
    """Singleton service manager for shared resources."""

    _instance: Optional["ServiceManager"] = None
    _initialized: bool = False

    def __new__(cls) -> "ServiceManager":
        """Implement singleton pattern."""
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    async def initialize(self) -> None:
        """Initialize shared resources once at startup."""
        if self._initialized:
            return

        self.settings = get_settings()
        self.logger = self._setup_logger()
        self.cache_writer = await self._setup_redis_writer()
        self.cache_reader = await self._setup_redis_reader()
        self.http_client = httpx.AsyncClient(timeout=self.settings.HTTP_TIMEOUT_SECONDS)

        self.store = LinkStore(self.cache_writer, self.cache_reader, key_prefix=self.settings.LINK_KEY_PREFIX)
        self.edge_cache = create_edge_cache(self.settings, self.cache_writer)
        self.coalescer = LookupCoalescer(self.store)
        self.fingerprinter = RequestFingerprinter(self.settings, self.store)

        mutations = None
        if self.settings.MUTATION_URL:
            mutations = RemoteMutationClient(
                self.http_client,
                self.settings.MUTATION_URL,
                self.settings.MUTATION_PATH,
                self.settings.SHARED_SECRET,
            )
        prober = HealthProber(
            self.http_client,
            timeout_seconds=self.settings.HEALTH_CHECK_TIMEOUT_SECONDS,
            user_agent=self.settings.HEALTH_CHECK_USER_AGENT,
        )
        self.dispatcher = TelemetryDispatcher(self.settings, self.http_client, prober, mutations)
        self.resolver = RedirectResolver(self.edge_cache, self.coalescer, self.fingerprinter, self.dispatcher)

        self._initialized = True
        self.logger.info(
            f"{self.settings.APP_NAME} initialized "
            f"(edge cache: {self.settings.EDGE_CACHE_BACKEND}, analytics: {self.settings.analytics_enabled})"
        )

    def _setup_logger(self) -> logging.Logger:
        """Setup logger once."""
        logger = logging.getLogger("redirector")
        if not logger.handlers:
            handler = logging.StreamHandler()
            formatter = logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")
            handler.setFormatter(formatter)
            logger.addHandler(handler)
        logger.setLevel(self.settings.LOG_LEVEL.upper())
        return logger

    async def _setup_redis_writer(self) -> redis.Redis:
        """Setup Redis writer once."""
        return redis.from_url(self.settings.REDIS_URL, encoding="utf-8", decode_responses=True)

    async def _setup_redis_reader(self) -> redis.Redis:
        """Setup Redis reader once."""
        # Use replica URL if available, otherwise fall back to main Redis
        redis_url = self.settings.REDIS_REPLICA_URL or self.settings.REDIS_URL
        return redis.from_url(redis_url, encoding="utf-8", decode_responses=True)

    async def cleanup(self) -> None:
        """Cleanup shared resources at shutdown."""
        if hasattr(self, "http_client"):
            await self.http_client.aclose()
        if hasattr(self, "cache_writer"):
            await self.cache_writer.aclose()
        if hasattr(self, "cache_reader"):
            await self.cache_reader.aclose()
        self._initialized = False


# Global singleton instance
_service_manager = ServiceManager()


# ============================================================================
# DEPENDENCY FUNCTIONS
# ============================================================================


async def get_service_manager() -> ServiceManager:
    """Get the singleton service manager, initializing it on first use."""
    if not _service_manager._initialized:
        await _service_manager.initialize()
    return _service_manager


async def get_request_context(
    request: Request,
    manager: ServiceManager = Depends(get_service_manager),
) -> RequestContext:
    """Snapshot the incoming request for the resolver and deferred work."""
    return RequestContext.from_request(request, logger=manager.logger)


async def get_resolver(manager: ServiceManager = Depends(get_service_manager)) -> RedirectResolver:
    return manager.resolver
