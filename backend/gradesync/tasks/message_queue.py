"""
Queue transport for grade sync triggers.
"""

import logging
from abc import ABC, abstractmethod
from typing import Optional

import redis.asyncio as redis

from gradesync.core.config import settings


logger = logging.getLogger(__name__)


class MessageQueue(ABC):
    """At-least-once queue of opaque string messages."""

    @abstractmethod
    async def send(self, message: str) -> None:
        pass

    @abstractmethod
    async def receive(self, timeout: int) -> Optional[str]:
        """Wait up to timeout seconds for a message; None when the queue stayed empty."""
        pass

    async def close(self) -> None:
        pass


class RedisMessageQueue(MessageQueue):
    """Redis list queue: producers LPUSH, the worker BRPOPs."""

    def __init__(
        self,
        redis_client: Optional[redis.Redis] = None,
        queue_name: Optional[str] = None
    ):
        self.redis_client = redis_client or redis.from_url(settings.REDIS_URL, decode_responses=True)
        self.queue_name = queue_name or settings.GRADE_SYNC_QUEUE_NAME

    async def send(self, message: str) -> None:
        await self.redis_client.lpush(self.queue_name, message)
        logger.debug(f"Pushed message to {self.queue_name}")

    async def receive(self, timeout: int) -> Optional[str]:
        item = await self.redis_client.brpop([self.queue_name], timeout=timeout)
        if item is None:
            return None
        _, message = item
        return message.decode("utf-8") if isinstance(message, bytes) else message

    async def close(self) -> None:
        await self.redis_client.aclose()
