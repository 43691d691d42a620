"""Stats cache in Redis. Every pipeline run invalidates it."""

import json
import logging
from typing import Optional

import redis.asyncio as aioredis

from ticketflow.config import STATS_CACHE_PATTERN, STATS_CACHE_TTL

logger = logging.getLogger(__name__)


class StatsCache:
    def __init__(self, client: aioredis.Redis, ttl: int = STATS_CACHE_TTL):
        self.r = client
        self.ttl = ttl

    async def put(self, data: dict, key_suffix: str = "global") -> None:
        await self.r.set(f"cache:stats:{key_suffix}", json.dumps(data), ex=self.ttl)

    async def get(self, key_suffix: str = "global") -> Optional[dict]:
        raw = await self.r.get(f"cache:stats:{key_suffix}")
        return json.loads(raw) if raw else None

    async def invalidate(self, pattern: str = STATS_CACHE_PATTERN) -> int:
        """Delete every key matching pattern. Returns how many were removed."""
        keys = [key async for key in self.r.scan_iter(match=pattern)]
        if not keys:
            return 0
        removed = await self.r.delete(*keys)
        logger.debug("Invalidated %d cache keys (%s).", removed, pattern)
        return removed
