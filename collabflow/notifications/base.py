"""Base notifier interface for delivering user notifications."""

from __future__ import annotations

import abc
from typing import Any, Dict, Optional

from ..contracts import Notification, NotificationType


class BaseNotifier(metaclass=abc.ABCMeta):
    """Abstract fire-and-forget notification sink."""

    async def connect(self) -> None:
        """Open connection to the backend (no-op by default)."""
        pass

    async def disconnect(self) -> None:
        """Close connection to the backend (no-op by default)."""
        pass

    async def notify(
        self,
        user_id: str,
        title: str,
        message: str,
        type: NotificationType = NotificationType.WORKFLOW,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Notification:
        """Build a notification and hand it to :meth:`deliver`."""
        notification = Notification(
            user_id=user_id,
            title=title,
            message=message,
            type=type,
            metadata=metadata or {},
        )
        await self.deliver(notification)
        return notification

    @abc.abstractmethod
    async def deliver(self, notification: Notification) -> None:
        """Send a notification to its user."""
        raise NotImplementedError
