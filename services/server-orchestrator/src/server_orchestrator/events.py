"""Event publishing for server status changes."""

import redis.asyncio as redis
import structlog

from shared.contracts.dto.server import ServerRecord, ServerStatus
from shared.contracts.events import ServerStatusEvent

logger = structlog.get_logger()


class EventPublisher:
    """Publishes server events to Redis PubSub."""

    def __init__(self, redis_client: redis.Redis | None, prefix: str = "servers"):
        self.redis = redis_client
        self.prefix = prefix

    async def publish_status(self, record: ServerRecord, previous: ServerStatus | None = None) -> None:
        """Publish server status change.

        Channel: servers:{name}:status
        """
        event = ServerStatusEvent(
            name=record.name,
            status=record.status,
            previous=previous,
            port=record.port,
            error=record.error,
        )
        await self._publish(f"{self.prefix}:{record.name}:status", event)

    async def _publish(self, channel: str, event: ServerStatusEvent) -> None:
        """Publish event to channel."""
        if self.redis is None:
            return
        try:
            await self.redis.publish(channel, event.model_dump_json())
            logger.debug("event_published", channel=channel, data_type=event.type)
        except Exception as e:
            logger.error("event_publish_failed", channel=channel, error=str(e))
