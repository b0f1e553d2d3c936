"""
Event Publisher for Scraper Output

Publishes derived events (run-log entries, new deaths, hunting session
transitions) to Redis Pub/Sub for downstream consumers such as the WebSocket
gateway and the Discord notifier. Those consumers live outside this process.

Publishing is best effort: a failure is logged and never fails the task that
produced the event.

Usage:
    from common.events import build_event_publisher

    events = build_event_publisher(settings)
    await events.emit("deaths", "death_recorded", {"victim": "Aeon"})
"""

import logging
import time
from typing import Any, Callable, Optional

from common.config import Settings
from common.mq import RedisPublisher
from common.schemas import RedisEvent

logger = logging.getLogger(__name__)


class NullEventPublisher:
    """Publisher used when events are disabled. Drops everything."""

    async def check(self) -> bool:
        return True

    async def emit(self, stream: str, event_type: str, data: dict[str, Any]) -> None:
        return None

    async def close(self) -> None:
        return None


class RedisEventPublisher:
    """
    Routes events to the configured Redis channel for each stream.

    A failed publish marks Redis down: events are dropped without touching
    the network until ``recheck_interval`` has passed, then a single ping
    decides whether publishing resumes.
    """

    def __init__(
        self,
        publisher: RedisPublisher,
        channels: dict[str, str],
        recheck_interval: float = 30.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.publisher = publisher
        self.channels = channels
        self.recheck_interval = recheck_interval
        self.clock = clock
        self.dropped = 0
        self._down_until: Optional[float] = None

    @property
    def healthy(self) -> bool:
        return self._down_until is None

    def _mark_down(self, error: Exception) -> None:
        if self._down_until is None:
            logger.warning("Redis unreachable, dropping events: %s", error)
        self._down_until = self.clock() + self.recheck_interval

    async def _available(self) -> bool:
        if self._down_until is None:
            return True
        if self.clock() < self._down_until:
            return False
        try:
            await self.publisher.ping()
        except Exception as e:
            self._mark_down(e)
            return False
        logger.info("Redis reachable again", extra={"dropped_events": self.dropped})
        self._down_until = None
        self.dropped = 0
        return True

    async def check(self) -> bool:
        """Ping Redis once at startup. Unreachable Redis is logged, not fatal."""
        try:
            return await self.publisher.wait_ready()
        except Exception as e:
            self._mark_down(e)
            return False

    async def emit(self, stream: str, event_type: str, data: dict[str, Any]) -> None:
        """
        Publish one event.

        Args:
            stream: Logical stream ("runs", "deaths" or "hunting")
            event_type: Event type, e.g. "death_recorded"
            data: JSON-serializable payload (large integers as strings)
        """
        channel = self.channels.get(stream)
        if channel is None:
            logger.debug("No channel configured for stream=%s, dropping %s", stream, event_type)
            return

        if not await self._available():
            self.dropped += 1
            return

        event = RedisEvent(type=event_type, data=data)

        try:
            await self.publisher.publish(channel, event.model_dump(mode="json"))
        except Exception as e:
            self.dropped += 1
            logger.warning(
                "Failed to publish event",
                extra={"channel": channel, "event_type": event_type, "error": str(e)},
            )
            self._mark_down(e)

    async def close(self) -> None:
        await self.publisher.close()


def build_event_publisher(settings: Settings):
    """Create the publisher selected by EVENTS_ENABLED."""
    if not settings.EVENTS_ENABLED:
        return NullEventPublisher()

    publisher = RedisPublisher(
        settings.REDIS_URL,
        max_connections=settings.REDIS_MAX_CONNECTIONS,
        socket_timeout=settings.REDIS_SOCKET_TIMEOUT,
    )
    return RedisEventPublisher(
        publisher,
        channels={
            "runs": settings.REDIS_CHANNEL_RUNS,
            "deaths": settings.REDIS_CHANNEL_DEATHS,
            "hunting": settings.REDIS_CHANNEL_HUNTING,
        },
        recheck_interval=settings.REDIS_RECHECK_INTERVAL,
    )
