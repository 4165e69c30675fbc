"""
Real-time Event Publishing
==========================

The in-app channel broadcasts an event to the recipient's connected clients
after it records a notification. The publisher is an explicit capability
passed to the transport; business logic never reaches a process-wide hub.

Implementations:
- NullEventPublisher     : drops events (no real-time fan-out configured)
- InMemoryEventPublisher : keeps events in a list (tests, single process)
- RedisEventPublisher    : PUBLISH on "<prefix>:<user_id>" for the socket tier
"""

import json
import logging
import os
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)


# =============================================================================
# Configuration
# =============================================================================

REDIS_URL: str = os.getenv("REDIS_URL", "redis://localhost:6379/0")
REMINDER_EVENTS_CHANNEL_PREFIX: str = os.getenv("REMINDER_EVENTS_CHANNEL_PREFIX", "tickler:user")


class EventPublisher(ABC):
    """Capability for broadcasting events to a user's connected clients."""

    @abstractmethod
    async def publish(self, user_id: str, event: str, payload: Dict[str, Any]) -> None:
        ...


class NullEventPublisher(EventPublisher):
    async def publish(self, user_id: str, event: str, payload: Dict[str, Any]) -> None:
        logger.debug(f"Dropping event {event} for user {user_id} (no publisher configured)")


class InMemoryEventPublisher(EventPublisher):
    def __init__(self):
        self.events: List[Dict[str, Any]] = []

    async def publish(self, user_id: str, event: str, payload: Dict[str, Any]) -> None:
        self.events.append({"user_id": user_id, "event": event, "payload": payload})


class RedisEventPublisher(EventPublisher):
    """
    Publishes events through Redis pub/sub.

    The client is created lazily from REDIS_URL unless one is injected.
    """

    def __init__(
        self,
        client: Optional[Any] = None,
        url: Optional[str] = None,
        channel_prefix: str = REMINDER_EVENTS_CHANNEL_PREFIX,
    ):
        self._client = client
        self._url = url or REDIS_URL
        self.channel_prefix = channel_prefix

    def _get_client(self) -> Any:
        if self._client is None:
            import redis.asyncio as redis_asyncio

            self._client = redis_asyncio.from_url(self._url, decode_responses=True)
        return self._client

    def channel_for(self, user_id: str) -> str:
        return f"{self.channel_prefix}:{user_id}"

    async def publish(self, user_id: str, event: str, payload: Dict[str, Any]) -> None:
        message = json.dumps({"event": event, "payload": payload}, default=str)
        receivers = await self._get_client().publish(self.channel_for(user_id), message)
        logger.debug(f"Published {event} to {self.channel_for(user_id)} ({receivers} receivers)")
