#!/usr/bin/env python3
"""
Notification Tracker - Duel State and Deduplication

Two in-memory collaborators used by the NotificationService:

- DuelStateStore: duel id -> MatchNotificationState, one entry per duel
- NotificationTrackerService: remembers which logical notifications were
  already emitted so repeated realtime deliveries stay silent

Deduplication is pluggable through DeduplicationStrategy, the same way the
rest of the notification package keeps policies behind small interfaces.

Usage:
    from notification.tracker import NotificationTrackerService

    tracker = NotificationTrackerService()

    if tracker.should_send_notification(
        user_id="user123",
        duel_id="duel456",
        notification_type=NotificationType.MATCH_STARTED,
    ):
        queue.append(notification)
        tracker.record_notification(
            user_id="user123",
            duel_id="duel456",
            notification_type=NotificationType.MATCH_STARTED,
        )
"""

import hashlib
import logging
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from typing import Optional, Dict, Iterable, Set, Callable

from notification.models import MatchNotificationState, NotificationType, utc_now

logger = logging.getLogger(__name__)


class DuelStateStore:
    """
    In-memory mapping from duel id to its locally tracked lifecycle state.

    Only the NotificationService mutates it. Entries are kept after a duel
    reaches a terminal status so the history stays inspectable.
    """

    def __init__(self):
        self._states: Dict[str, MatchNotificationState] = {}
        self._lock = threading.Lock()

    def get(self, duel_id: str) -> Optional[MatchNotificationState]:
        with self._lock:
            state = self._states.get(duel_id)
            return replace(state) if state else None

    def put(self, state: MatchNotificationState) -> MatchNotificationState:
        with self._lock:
            self._states[state.duel_id] = replace(state)
        return state

    def update(
        self,
        duel_id: str,
        change: Callable[[MatchNotificationState], MatchNotificationState]
    ) -> Optional[MatchNotificationState]:
        """Apply ``change`` to the stored state; no-op for unknown duels."""
        with self._lock:
            current = self._states.get(duel_id)
            if current is None:
                return None
            updated = change(replace(current))
            self._states[duel_id] = updated
            return replace(updated)

    def snapshot(self) -> Dict[str, MatchNotificationState]:
        with self._lock:
            return {duel_id: replace(state) for duel_id, state in self._states.items()}

    def __contains__(self, duel_id: object) -> bool:
        with self._lock:
            return duel_id in self._states

    def __len__(self) -> int:
        with self._lock:
            return len(self._states)

    def clear(self) -> None:
        with self._lock:
            self._states.clear()


@dataclass
class NotificationEvent:
    """A logical notification, identified independently of its content."""
    user_id: str
    duel_id: Optional[str]
    notification_type: NotificationType
    discriminator: Optional[str] = None  # e.g. ping number


@dataclass
class NotificationRecord:
    """What the tracker remembers about an emitted notification."""
    dedup_hash: str
    event: NotificationEvent
    first_sent_at: datetime
    last_sent_at: datetime
    send_count: int = 1


class DeduplicationStrategy(ABC):
    """Decides whether a notification may be emitted given what was sent before."""

    @abstractmethod
    def should_allow_notification(
        self,
        existing_notification: Optional[NotificationRecord],
        new_event: NotificationEvent,
        last_of_type: Optional[NotificationRecord],
        now: datetime
    ) -> bool:
        """
        Args:
            existing_notification: record with the same dedup hash, if any
            new_event: the notification about to be emitted
            last_of_type: most recent record for the same user/duel/type,
                regardless of discriminator
            now: current time
        """
        pass


class OncePerTransitionStrategy(DeduplicationStrategy):
    """Never emit the same logical notification twice."""

    def should_allow_notification(self, existing_notification, new_event, last_of_type, now) -> bool:
        return existing_notification is None


class IntervalDeduplicationStrategy(OncePerTransitionStrategy):
    """
    Once-per-transition plus a minimum spacing for chatty notification types.

    Used to rate-limit match progress pings: even distinct ping numbers are
    suppressed while the previous one for the same duel is too recent.
    """

    DEFAULT_RATE_LIMITED = frozenset({NotificationType.MATCH_PROGRESS})

    def __init__(self, min_interval_seconds: float, rate_limited_types: Optional[Iterable[NotificationType]] = None):
        self.min_interval = timedelta(seconds=min_interval_seconds)
        self.rate_limited_types = frozenset(rate_limited_types or self.DEFAULT_RATE_LIMITED)

    def should_allow_notification(self, existing_notification, new_event, last_of_type, now) -> bool:
        if not super().should_allow_notification(existing_notification, new_event, last_of_type, now):
            return False
        if new_event.notification_type not in self.rate_limited_types or last_of_type is None:
            return True

        time_since_last = now - last_of_type.last_sent_at
        if time_since_last < self.min_interval:
            logger.info(f"Too soon to resend {new_event.notification_type.value} (sent {time_since_last} ago)")
            return False
        return True


class NotificationTrackerService:
    """
    Tracks emitted notifications and first-seen duels.

    Both are process-lifetime only; ``clear()`` resets them between sessions
    or test cases.
    """

    def __init__(
        self,
        strategy: Optional[DeduplicationStrategy] = None,
        clock: Callable[[], datetime] = utc_now
    ):
        self.strategy = strategy or OncePerTransitionStrategy()
        self._clock = clock
        self._records: Dict[str, NotificationRecord] = {}
        self._last_of_type: Dict[str, NotificationRecord] = {}
        self._seen_duels: Set[str] = set()
        self._lock = threading.Lock()

    @staticmethod
    def generate_dedup_hash(
        user_id: str,
        duel_id: Optional[str],
        notification_type: NotificationType,
        discriminator: Optional[str] = None
    ) -> str:
        """Hash that uniquely identifies one logical notification."""
        key = f"{user_id}:{duel_id}:{notification_type.value}:{discriminator or ''}"
        return hashlib.sha256(key.encode('utf-8')).hexdigest()[:32]

    @staticmethod
    def _type_key(user_id: str, duel_id: Optional[str], notification_type: NotificationType) -> str:
        return f"{user_id}:{duel_id}:{notification_type.value}"

    def should_send_notification(
        self,
        user_id: str,
        duel_id: Optional[str],
        notification_type: NotificationType,
        discriminator: Optional[str] = None
    ) -> bool:
        """Returns True if the notification is not a duplicate."""
        event = NotificationEvent(user_id, duel_id, notification_type, discriminator)
        dedup_hash = self.generate_dedup_hash(user_id, duel_id, notification_type, discriminator)
        with self._lock:
            existing = self._records.get(dedup_hash)
            last_of_type = self._last_of_type.get(self._type_key(user_id, duel_id, notification_type))
        should_send = self.strategy.should_allow_notification(existing, event, last_of_type, self._clock())
        if not should_send:
            logger.info(f"Suppressing duplicate notification: {notification_type.value} for duel {duel_id}")
        return should_send

    def record_notification(
        self,
        user_id: str,
        duel_id: Optional[str],
        notification_type: NotificationType,
        discriminator: Optional[str] = None
    ) -> NotificationRecord:
        now = self._clock()
        dedup_hash = self.generate_dedup_hash(user_id, duel_id, notification_type, discriminator)
        with self._lock:
            record = self._records.get(dedup_hash)
            if record:
                record.last_sent_at = now
                record.send_count += 1
                logger.debug(f"Updated notification record (send count: {record.send_count})")
            else:
                record = NotificationRecord(
                    dedup_hash=dedup_hash,
                    event=NotificationEvent(user_id, duel_id, notification_type, discriminator),
                    first_sent_at=now,
                    last_sent_at=now,
                )
                self._records[dedup_hash] = record
            self._last_of_type[self._type_key(user_id, duel_id, notification_type)] = record
        return record

    def mark_duel_seen(self, duel_id: str) -> bool:
        """Remember a duel id. Returns True the first time it is seen."""
        with self._lock:
            if duel_id in self._seen_duels:
                return False
            self._seen_duels.add(duel_id)
            return True

    def has_seen_duel(self, duel_id: str) -> bool:
        with self._lock:
            return duel_id in self._seen_duels

    def clear(self) -> None:
        with self._lock:
            self._records.clear()
            self._last_of_type.clear()
            self._seen_duels.clear()
