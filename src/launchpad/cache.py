"""JSON key-value cache and PubSub over Redis."""

from collections.abc import AsyncIterator
import json
from typing import Any

import redis.asyncio as redis
import structlog

logger = structlog.get_logger()


class Cache:
    """get / set-with-TTL / delete / delete-by-pattern / publish / subscribe."""

    def __init__(self, redis_client: redis.Redis, prefix: str = ""):
        self.redis = redis_client
        self.prefix = prefix

    def _key(self, key: str) -> str:
        return f"{self.prefix}{key}"

    async def get(self, key: str) -> Any | None:
        raw = await self.redis.get(self._key(key))
        if raw is None:
            return None
        try:
            return json.loads(raw)
        except ValueError:
            logger.warning("cache_value_not_json", key=key)
            return None

    async def set(self, key: str, value: Any, ttl: int | None = None) -> None:
        data = json.dumps(value, default=str)
        if ttl:
            await self.redis.setex(self._key(key), ttl, data)
        else:
            await self.redis.set(self._key(key), data)

    async def delete(self, key: str) -> int:
        return await self.redis.delete(self._key(key))

    async def delete_pattern(self, pattern: str) -> int:
        """Delete every key matching a glob pattern; returns the count."""
        keys = [key async for key in self.redis.scan_iter(match=self._key(pattern), count=500)]
        if not keys:
            return 0
        deleted = await self.redis.delete(*keys)
        logger.debug("cache_pattern_deleted", pattern=pattern, count=deleted)
        return deleted

    async def publish(self, channel: str, message: Any) -> int:
        return await self.redis.publish(channel, json.dumps(message, default=str))

    async def subscribe(self, channel: str) -> AsyncIterator[Any]:
        """Yield decoded messages published on ``channel`` until the caller stops."""
        pubsub = self.redis.pubsub()
        await pubsub.subscribe(channel)
        try:
            async for message in pubsub.listen():
                if message.get("type") != "message":
                    continue
                data = message["data"]
                try:
                    yield json.loads(data)
                except ValueError:
                    yield data
        finally:
            await pubsub.unsubscribe(channel)
            await pubsub.aclose()
