"""In-memory notifier for testing."""

from __future__ import annotations

import asyncio
from collections import defaultdict
from typing import Dict, List

from ..contracts import Notification, NotificationType
from .base import BaseNotifier


class InMemoryNotifier(BaseNotifier):
    """Keeps delivered notifications in process, grouped per user."""

    def __init__(self) -> None:
        self._inbox: Dict[str, List[Notification]] = defaultdict(list)
        self.sent: List[Notification] = []
        self._lock = asyncio.Lock()

    async def deliver(self, notification: Notification) -> None:
        async with self._lock:
            self._inbox[notification.user_id].append(notification)
            self.sent.append(notification)

    def for_user(self, user_id: str) -> List[Notification]:
        return list(self._inbox.get(user_id, []))

    def of_type(self, type: NotificationType) -> List[Notification]:
        return [n for n in self.sent if n.type == type]
