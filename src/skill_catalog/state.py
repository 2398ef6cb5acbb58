"""Small Redis-backed key/value state: discovery cursor, dedup markers, job summaries."""

from __future__ import annotations

import json
from typing import TYPE_CHECKING, Any

import redis.asyncio as aioredis
from loguru import logger

if TYPE_CHECKING:
    from skill_catalog.settings import RedisSettings


class StateStore:
    """Thin async wrapper over Redis strings with TTLs.

    Keys are namespaced under the configured stream prefix, so several
    catalogs can share one Redis database.
    """

    def __init__(self, settings: RedisSettings) -> None:
        self._redis = aioredis.from_url(settings.url, decode_responses=True)
        self._prefix = settings.stream_prefix

    def _key(self, key: str) -> str:
        return f"{self._prefix}:{key}"

    async def ping(self) -> bool:
        return await self._redis.ping()

    async def get(self, key: str) -> str | None:
        return await self._redis.get(self._key(key))

    async def set(self, key: str, value: str, *, ttl_s: int | None = None) -> None:
        await self._redis.set(self._key(key), value, ex=ttl_s)

    async def exists_many(self, keys: list[str]) -> set[str]:
        """Return the subset of *keys* that currently exist."""
        if not keys:
            return set()
        async with self._redis.pipeline(transaction=False) as pipe:
            for key in keys:
                pipe.exists(self._key(key))
            flags = await pipe.execute()
        return {key for key, flag in zip(keys, flags, strict=True) if flag}

    async def put_json(self, key: str, payload: dict[str, Any], *, ttl_s: int) -> bool:
        """Best-effort write of a JSON summary. Failures are logged, never raised."""
        try:
            await self.set(key, json.dumps(payload, default=str), ttl_s=ttl_s)
        except Exception:
            logger.exception("Failed to record summary {}", key)
            return False
        return True

    async def get_json(self, key: str) -> dict[str, Any] | None:
        raw = await self.get(key)
        return json.loads(raw) if raw else None

    async def close(self) -> None:
        await self._redis.aclose()
