"""
Pending Notification Queue

Append-only, insertion-ordered collection of PendingNotification records.
Entries are never evicted; read/delivered flags are updated in place and
expired entries simply stop being due.
"""

import logging
import threading
from datetime import datetime
from typing import Callable, Iterator, List, Optional

from notification.models import NotificationType, PendingNotification, utc_now

logger = logging.getLogger(__name__)


class PendingNotificationQueue:

    def __init__(self):
        self._items: List[PendingNotification] = []
        self._lock = threading.Lock()

    def append(self, notification: PendingNotification) -> PendingNotification:
        with self._lock:
            self._items.append(notification)
        logger.info(f"Notification queued: {notification.type.value} for user {notification.user_id}")
        return notification

    def snapshot(self) -> List[PendingNotification]:
        with self._lock:
            return list(self._items)

    def __len__(self) -> int:
        with self._lock:
            return len(self._items)

    def __iter__(self) -> Iterator[PendingNotification]:
        return iter(self.snapshot())

    def get(self, notification_id: str) -> Optional[PendingNotification]:
        with self._lock:
            for item in self._items:
                if item.id == notification_id:
                    return item
        return None

    def filter(
        self,
        predicate: Optional[Callable[[PendingNotification], bool]] = None,
        *,
        type: Optional[NotificationType] = None,
        duel_id: Optional[str] = None,
        user_id: Optional[str] = None,
        unread_only: bool = False
    ) -> List[PendingNotification]:
        """
        Return matching notifications in insertion order.

        Keyword filters are ANDed with the optional predicate, e.g.
        ``queue.filter(type=NotificationType.MATCH_ENDED, duel_id="d1")``.
        """
        results = []
        for item in self.snapshot():
            if type is not None and item.type != type:
                continue
            if duel_id is not None and item.data.duel_id != duel_id:
                continue
            if user_id is not None and item.user_id != user_id:
                continue
            if unread_only and item.is_read:
                continue
            if predicate is not None and not predicate(item):
                continue
            results.append(item)
        return results

    def count(self, **filters) -> int:
        return len(self.filter(**filters))

    def unread_count(self, user_id: Optional[str] = None) -> int:
        return len(self.filter(user_id=user_id, unread_only=True))

    def mark_read(self, notification_id: str) -> bool:
        """Set the read flag. Returns False when the id is unknown."""
        return self._update(notification_id, PendingNotification.mark_read)

    def mark_all_read(self, user_id: Optional[str] = None) -> int:
        updated = 0
        with self._lock:
            for index, item in enumerate(self._items):
                if item.is_read or (user_id is not None and item.user_id != user_id):
                    continue
                self._items[index] = item.mark_read()
                updated += 1
        return updated

    def mark_delivered(self, notification_id: str, at: Optional[datetime] = None) -> bool:
        delivered_at = at or utc_now()
        return self._update(notification_id, lambda item: item.mark_delivered(delivered_at))

    def due(self, now: Optional[datetime] = None) -> List[PendingNotification]:
        """Undelivered, unexpired notifications whose scheduled time has come."""
        now = now or utc_now()
        with self._lock:
            indexed = [
                (index, item) for index, item in enumerate(self._items)
                if item.delivered_at is None and item.is_due(now) and not item.is_expired(now)
            ]
        indexed.sort(key=lambda pair: (pair[1].priority, pair[0]))
        return [item for _, item in indexed]

    def clear(self) -> None:
        with self._lock:
            self._items.clear()

    def _update(self, notification_id: str, change: Callable[[PendingNotification], PendingNotification]) -> bool:
        with self._lock:
            for index, item in enumerate(self._items):
                if item.id == notification_id:
                    self._items[index] = change(item)
                    return True
        logger.warning(f"Notification {notification_id} not found in queue")
        return False
