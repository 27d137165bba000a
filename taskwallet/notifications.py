import threading
import uuid
from collections import deque
from decimal import Decimal
from typing import Iterable, Optional

from .config import MAX_NOTIFICATIONS_PER_USER
from .db import utcnow
from .models import Notification

NEW_TASK_MESSAGES = [
    'New task is live! Complete "{title}" and earn Rs {price}!',
    'Fresh task available: "{title}" pays Rs {price}.',
    'Hot task alert! Do "{title}" now and get Rs {price}!',
    'Earning opportunity: "{title}" is worth Rs {price} today.',
    'New opportunity! "{title}" - earn Rs {price} now!',
]


class NotificationStore:
    """Per-user notification queues kept in process memory.

    Nothing here is persisted; a restart empties every queue. Each queue
    holds at most ``max_per_user`` items, oldest dropped first.
    """

    def __init__(self, max_per_user: int = MAX_NOTIFICATIONS_PER_USER):
        self.max_per_user = max_per_user
        self._queues: dict[int, deque] = {}
        self._lock = threading.Lock()

    def push(self, user_id: int, notification: Notification) -> None:
        with self._lock:
            queue = self._queues.get(user_id)
            if queue is None:
                queue = self._queues[user_id] = deque(maxlen=self.max_per_user)
            queue.append(notification)

    def broadcast_new_task(self, user_ids: Iterable[int], title: str, price: Decimal, message: Optional[str] = None) -> int:
        message = message or NEW_TASK_MESSAGES[0].format(title=title, price=price)
        sent = 0
        for user_id in user_ids:
            self.push(user_id, Notification(
                id=uuid.uuid4().hex,
                message=message,
                timestamp=utcnow(),
                type="new_task",
                task_title=title,
                task_price=price,
            ))
            sent += 1
        return sent

    def list(self, user_id: int) -> list[Notification]:
        with self._lock:
            return [n.model_copy() for n in self._queues.get(user_id, ())]

    def mark_read(self, user_id: int, notification_id: str) -> bool:
        with self._lock:
            for notification in self._queues.get(user_id, ()):
                if notification.id == notification_id:
                    notification.read = True
                    return True
        return False
