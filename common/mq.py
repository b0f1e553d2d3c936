"""
Redis Pub/Sub publisher for scraper events.

One pooled client per process. Every command is a single attempt bounded by
a socket timeout, so callers on the scraping path never wait out a retry
loop. Only the startup readiness check is retried, with tenacity.
"""

import logging
from typing import Any, Optional

import orjson
import redis.asyncio as redis
from redis.asyncio.retry import Retry
from redis.backoff import NoBackoff
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

logger = logging.getLogger(__name__)

_startup_retry = retry(
    retry=retry_if_exception_type(redis.RedisError),
    stop=stop_after_attempt(3),
    wait=wait_exponential(multiplier=1, min=1, max=5),
    reraise=True,
)


class RedisPublisher:
    """Pooled redis.asyncio client that publishes orjson-encoded messages."""

    def __init__(self, redis_url: str, max_connections: int = 10, socket_timeout: float = 1.0) -> None:
        self.redis_url = redis_url
        self.max_connections = max_connections
        self.socket_timeout = socket_timeout
        self.pool: Optional[redis.ConnectionPool] = None
        self.client: Optional[redis.Redis] = None

    def _ensure_client(self) -> redis.Redis:
        if self.client is None:
            # Bytes out: orjson hands us bytes already. No client-side retries.
            self.pool = redis.ConnectionPool.from_url(
                self.redis_url,
                max_connections=self.max_connections,
                decode_responses=False,
                socket_connect_timeout=self.socket_timeout,
                socket_timeout=self.socket_timeout,
                retry=Retry(NoBackoff(), 0),
            )
            self.client = redis.Redis(connection_pool=self.pool)
        return self.client

    async def ping(self) -> bool:
        return bool(await self._ensure_client().ping())

    @_startup_retry
    async def wait_ready(self) -> bool:
        """Ping with retries; used once before scheduling starts."""
        return await self.ping()

    async def publish(self, channel: str, message: dict[str, Any]) -> int:
        """Publish one message.

        Args:
            channel: Redis channel name
            message: JSON-serializable payload; integers must fit in 64 bits

        Returns:
            Number of subscribers that received the message

        Raises:
            redis.RedisError: If Redis is unreachable or times out
        """
        receivers = await self._ensure_client().publish(channel, orjson.dumps(message))
        if not receivers:
            logger.debug("No subscribers on %s", channel)
        return receivers

    async def close(self) -> None:
        if self.client is not None:
            await self.client.aclose()
            self.client = None
        if self.pool is not None:
            await self.pool.disconnect()
            self.pool = None
