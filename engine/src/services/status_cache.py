"""
Redis mirror of build statuses.

Holds the last committed status of each build for cheap polling. The
database stays the source of truth; cache errors are logged and ignored.
"""

import logging
from typing import Optional

import redis.asyncio as redis

from engine.src.models.build import Build

logger = logging.getLogger(__name__)

BUILD_STATUS = "vortexia:status"

class LiveStatusCache:
    def __init__(self, client: redis.Redis, key: str = BUILD_STATUS):
        self.client = client
        self.key = key

    @classmethod
    def from_url(cls, redis_url: str) -> "LiveStatusCache":
        return cls(redis.from_url(redis_url, decode_responses=True))

    async def publish(self, build: Build):
        """Record a build's committed status."""
        try:
            await self.client.hset(self.key, str(build.id), build.status.value)
        except redis.RedisError as e:
            logger.warning(f"Failed to cache status of build {build.id}: {e}")

    async def get_status(self, build_id: int) -> Optional[str]:
        try:
            return await self.client.hget(self.key, str(build_id))
        except redis.RedisError as e:
            logger.warning(f"Failed to read cached status of build {build_id}: {e}")
            return None

    async def ping(self) -> bool:
        return await self.client.ping()

    async def close(self):
        await self.client.aclose()
