"""Backing store adapter: link records and short-lived session markers in Redis.

Key Layout
==========
::
    {LINK_KEY_PREFIX}{slug}                 → ShortLinkRecord JSON
    {SESSION_KEY_PREFIX}:{session}:{slug}   → "1" (TTL 1800s, first-click marker)

Key Behaviours
===============
- Reads go to the replica client when one is configured, writes to the primary.
- Any Redis error surfaces as ``BackendLookupFailure``; callers decide
  whether that means "not found" (redirect path) or "log and move on".
- A value that is not valid JSON, or not a valid record, is treated as absent.
"""

import json
import logging
from typing import Any, Optional

import redis.asyncio as redis
from pydantic import ValidationError
from redis.exceptions import RedisError

from redirector.exceptions import BackendLookupFailure
from redirector.schemas import ShortLinkRecord

__all__ = ["LinkStore"]

logger = logging.getLogger("redirector.store")


class LinkStore:
    def __init__(
        self,
        writer: redis.Redis,
        reader: Optional[redis.Redis] = None,
        key_prefix: str = "",
    ):
        self._writer = writer
        self._reader = reader or writer
        self._key_prefix = key_prefix

    def record_key(self, slug: str) -> str:
        return f"{self._key_prefix}{slug}"

    async def get(self, key: str) -> Optional[Any]:
        """Return the JSON value stored at ``key`` or ``None``."""
        try:
            raw = await self._reader.get(key)
        except RedisError as exc:
            raise BackendLookupFailure(f"GET {key} failed: {exc}") from exc

        if raw is None:
            return None
        try:
            return json.loads(raw)
        except (TypeError, ValueError):
            logger.warning(f"Discarding non-JSON value at {key}")
            return None

    async def exists(self, key: str) -> bool:
        try:
            return bool(await self._reader.exists(key))
        except RedisError as exc:
            raise BackendLookupFailure(f"EXISTS {key} failed: {exc}") from exc

    async def set(self, key: str, value: Any, ttl_seconds: int, only_if_absent: bool = False) -> bool:
        """Store ``value`` as JSON. Returns False when ``only_if_absent`` and the key exists."""
        try:
            result = await self._writer.set(key, json.dumps(value), ex=ttl_seconds, nx=only_if_absent)
        except RedisError as exc:
            raise BackendLookupFailure(f"SET {key} failed: {exc}") from exc
        return bool(result)

    async def get_record(self, slug: str) -> Optional[ShortLinkRecord]:
        key = self.record_key(slug)
        value = await self.get(key)
        if not isinstance(value, dict):
            return None
        try:
            return ShortLinkRecord.model_validate(value)
        except ValidationError as exc:
            logger.warning(f"Record for {slug} failed validation: {exc.error_count()} errors")
            return None
