"""
Shared Redis connection for the tracking store and the webhook publisher.

Every command issued through ``RedisClient.breaker`` counts towards the store
circuit; once it opens, callers get ``CircuitBreakerError`` without touching
the network until the recovery timeout passes.
"""
import logging
from typing import Optional

import redis.asyncio as redis
from redis.exceptions import RedisError

from tracking_service.core.circuit_breaker import CircuitBreaker, redis_circuit_breaker

logger = logging.getLogger(__name__)


class RedisClient:

    def __init__(self, url: str = "redis://localhost:6379", breaker: Optional[CircuitBreaker] = None):
        self.url = url
        self.breaker = breaker or redis_circuit_breaker
        self._client: Optional[redis.Redis] = None

    @property
    def client(self) -> redis.Redis:
        if self._client is None:
            raise RuntimeError("Tracking store is not connected to Redis")
        return self._client

    async def connect(self):
        """Open the pool and verify it with a PING; a fresh connection closes the circuit."""
        self._client = redis.from_url(self.url, encoding="utf-8", decode_responses=True)
        try:
            await self._client.ping()
        except RedisError as e:
            logger.error(f"Tracking store unreachable at startup: {e}")
            await self.disconnect()
            raise
        self.breaker.reset()
        logger.info("Tracking store connected to Redis")

    async def disconnect(self):
        if self._client is None:
            return
        await self._client.aclose()
        self._client = None
        logger.info("Tracking store disconnected from Redis")

    async def ping(self) -> bool:
        """Readiness probe. Returns False instead of raising."""
        if self._client is None:
            return False
        try:
            async with self.breaker:
                return bool(await self._client.ping())
        except Exception as e:
            logger.warning(f"Redis readiness probe failed: {e}")
            return False

    async def publish(self, channel: str, message: str) -> int:
        """Publish on a pub/sub channel; returns the number of subscribers that received it."""
        async with self.breaker:
            return await self.client.publish(channel, message)
