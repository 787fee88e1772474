"""Edge response cache for resolved redirects.

The cache is keyed by request origin and path only, so query strings
(UTM tags, experiment noise) never fragment it. Entries hold the
canonical, pre-variant destination; variant selection is re-applied on
every hit.

Key Normalization
=================
::
    https://X.example/a/    ─┐
    https://x.Example/a      ├──► https://x.example/a
    https://x.example/a//   ─┘
    https://x.example       ────► https://x.example/

Backends follow the strategy pattern: ``RedisEdgeCache`` for production,
``InMemoryEdgeCache`` for development and tests.
"""

import logging
from abc import ABC, abstractmethod
from typing import Optional
from urllib.parse import urlsplit

import redis.asyncio as redis
from pydantic import ValidationError
from redis.exceptions import RedisError

from redirector.config import Settings
from redirector.exceptions import CacheReadFailure, CacheWriteFailure
from redirector.schemas import CachedRedirect

__all__ = [
    "make_cache_key",
    "EdgeCache",
    "RedisEdgeCache",
    "InMemoryEdgeCache",
    "create_edge_cache",
]

logger = logging.getLogger("redirector.edge_cache")


def make_cache_key(url: str) -> str:
    parts = urlsplit(url)
    origin = f"{parts.scheme}://{parts.netloc}".lower()
    path = parts.path.rstrip("/") or "/"
    return f"{origin}{path}"


class EdgeCache(ABC):
    """Interface of the edge response cache."""

    @abstractmethod
    async def match(self, key: str) -> Optional[CachedRedirect]:
        """Return the cached redirect for ``key`` or ``None``."""

    @abstractmethod
    async def put(self, key: str, entry: CachedRedirect) -> None:
        """Store ``entry`` under ``key``."""


class RedisEdgeCache(EdgeCache):
    def __init__(self, client: redis.Redis, key_prefix: str = "edge:", ttl_seconds: int = 3600):
        self._client = client
        self._key_prefix = key_prefix
        self._ttl_seconds = ttl_seconds

    def _redis_key(self, key: str) -> str:
        return f"{self._key_prefix}{key}"

    async def match(self, key: str) -> Optional[CachedRedirect]:
        try:
            raw = await self._client.get(self._redis_key(key))
        except RedisError as exc:
            raise CacheReadFailure(f"Edge cache read failed for {key}: {exc}") from exc

        if not raw:
            return None
        try:
            return CachedRedirect.model_validate_json(raw)
        except ValidationError:
            logger.error(f"Cache deserialization error for {key}")
            return None

    async def put(self, key: str, entry: CachedRedirect) -> None:
        try:
            await self._client.setex(self._redis_key(key), self._ttl_seconds, entry.model_dump_json())
        except RedisError as exc:
            raise CacheWriteFailure(f"Edge cache write failed for {key}: {exc}") from exc


class InMemoryEdgeCache(EdgeCache):
    """Process-local cache. No TTL enforcement."""

    def __init__(self):
        self._entries: dict[str, CachedRedirect] = {}

    async def match(self, key: str) -> Optional[CachedRedirect]:
        return self._entries.get(key)

    async def put(self, key: str, entry: CachedRedirect) -> None:
        self._entries[key] = entry

    def __contains__(self, key: str) -> bool:
        return key in self._entries

    def __len__(self) -> int:
        return len(self._entries)


def create_edge_cache(settings: Settings, client: Optional[redis.Redis] = None) -> EdgeCache:
    backend = settings.EDGE_CACHE_BACKEND.lower()
    if backend == "memory":
        return InMemoryEdgeCache()
    if backend == "redis":
        if client is None:
            raise ValueError("Redis edge cache requires a Redis client")
        return RedisEdgeCache(client, settings.EDGE_CACHE_KEY_PREFIX, settings.EDGE_CACHE_TTL_SECONDS)
    raise ValueError(f"Unknown edge cache backend: {settings.EDGE_CACHE_BACKEND}")
