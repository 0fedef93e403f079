"""
Short-lived user-facing notifications ("Added Mouse to cart", warnings, errors).
"""
import logging
import time
import uuid
from typing import Callable, List, Optional

from cartsync.config import Config
from cartsync.models import Notification

logger = logging.getLogger(__name__)

NOTIFICATION_TYPES = ("success", "error", "info", "warning")

_LOG_LEVELS = {
    "success": logging.INFO,
    "info": logging.INFO,
    "warning": logging.WARNING,
    "error": logging.ERROR,
}


class Notifier:
    """Holds notifications until they expire"""

    def __init__(self, ttl_seconds: Optional[float] = None, clock: Callable[[], float] = time.monotonic):
        self.ttl_seconds = Config.NOTIFICATION_TTL_SECONDS if ttl_seconds is None else ttl_seconds
        self._clock = clock
        self._notifications: List[Notification] = []

    def add(self, message: str, type: str = "success", user_id: Optional[str] = None) -> Notification:
        if type not in NOTIFICATION_TYPES:
            raise ValueError(f"Unknown notification type: {type}")
        notification = Notification(
            id=str(uuid.uuid4()),
            message=message,
            type=type,
            user_id=user_id,
            created_at=self._clock(),
        )
        self._notifications.append(notification)
        logger.log(_LOG_LEVELS[type], f"Notification ({type}): {message}")
        return notification

    def remove(self, notification_id: str) -> None:
        self._notifications = [n for n in self._notifications if n.id != notification_id]

    def active(self, user_id: Optional[str] = None) -> List[Notification]:
        """Unexpired notifications for ``user_id`` plus the ones for everybody"""
        cutoff = self._clock() - self.ttl_seconds
        self._notifications = [n for n in self._notifications if n.created_at > cutoff]
        return [n for n in self._notifications if n.user_id is None or n.user_id == user_id]
