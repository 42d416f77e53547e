"""Redis notifier for cross-process delivery."""

from __future__ import annotations

from typing import Any, List, Optional

import redis.asyncio as redis

from ..contracts import Notification
from .base import BaseNotifier


class RedisNotifier(BaseNotifier):
    """Push notifications onto a per-user Redis list."""

    def __init__(
        self,
        host: str = "localhost",
        port: int = 6379,
        db: int = 0,
        password: Optional[str] = None,
        prefix: str = "collabflow:notifications",
    ) -> None:
        self.host = host
        self.port = port
        self.db = db
        self.password = password
        self.prefix = prefix
        self._redis: Optional[Any] = None

    def _key(self, user_id: str) -> str:
        return f"{self.prefix}:{user_id}"

    async def connect(self) -> None:
        """Connect to Redis."""
        self._redis = redis.Redis(
            host=self.host,
            port=self.port,
            db=self.db,
            password=self.password,
            decode_responses=True,
        )
        await self._redis.ping()

    async def disconnect(self) -> None:
        """Disconnect from Redis."""
        if self._redis:
            await self._redis.aclose()
            self._redis = None

    async def deliver(self, notification: Notification) -> None:
        if not self._redis:
            await self.connect()
        await self._redis.lpush(self._key(notification.user_id), notification.to_json())

    async def pending(self, user_id: str, limit: int = 50) -> List[Notification]:
        """Most recent notifications for ``user_id``, newest first."""
        if not self._redis:
            await self.connect()
        raw = await self._redis.lrange(self._key(user_id), 0, limit - 1)
        return [Notification.from_json(item) for item in raw]
