"""
Redis pub/sub implementation of TurnNotificationPort.

Channel naming convention:
- {prefix}{session_id} - one channel per session
"""

import json
import logging

import redis.asyncio as redis

from turnloop.domain.events import TurnDomainEvent
from turnloop.domain.ports.services.turn_notification_port import TurnNotificationPort

logger = logging.getLogger(__name__)


class RedisTurnNotifier(TurnNotificationPort):
    DEFAULT_CHANNEL_PREFIX = "turnloop:turn-events:"

    def __init__(self, redis_client: redis.Redis, channel_prefix: str | None = None) -> None:
        self._redis = redis_client
        self._channel_prefix = channel_prefix or self.DEFAULT_CHANNEL_PREFIX

    def channel_for(self, session_id: str) -> str:
        return f"{self._channel_prefix}{session_id}"

    async def publish(self, event: TurnDomainEvent) -> None:
        channel = self.channel_for(event.session_id)
        receivers = await self._redis.publish(channel, json.dumps(event.to_event_dict(), default=str))
        logger.debug(
            f"[TurnNotifier] Published {event.event_type.value} to {channel} "
            f"({receivers} receivers)"
        )
