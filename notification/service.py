#!/usr/bin/env python3
"""
Duel Notification Service

Realtime notification engine for one signed-in user. Consumes duel change
events, keeps one MatchNotificationState per duel and turns lifecycle
transitions into PendingNotification records:

- ConnectionSupervisor gates events on the realtime subscription
- DuelStateStore holds the per-duel match state
- NotificationTrackerService absorbs repeated transitions (deduplication)
- NotificationMessageBuilder decides what each notification says
- PendingNotificationQueue collects the result for delivery

Usage:
    from notification.service import NotificationService
    from notification.transport import InMemoryTransport

    service = NotificationService(transport=InMemoryTransport(), user_id="user123")
    service.start()

    service.receive_duel_payload({
        "new": {"id": "duel456", "status": "in_progress", "game_type": "Chess"}
    })
    service.pending_notifications  # [match_started]
"""

import logging
import threading
import uuid
from datetime import datetime
from typing import Optional, Dict, Any, List, Callable, Union

from core.config_loader import NotificationPreferences
from notification.message_builder import NotificationMessageBuilder
from notification.models import (
    DuelStatus,
    MatchNotificationState,
    MatchStatus,
    NotificationType,
    PendingNotification,
    VerificationStatus,
    utc_now,
)
from notification.pending import PendingNotificationQueue
from notification.records import DuelEnvelope, DuelRecord, parse_envelope
from notification.supervisor import ConnectionSupervisor
from notification.tracker import (
    DuelStateStore,
    IntervalDeduplicationStrategy,
    NotificationTrackerService,
    OncePerTransitionStrategy,
)
from notification.transport import EventTransport, TransportEventKind, Record

logger = logging.getLogger(__name__)

UserDirectory = Callable[[str], Optional[str]]

# Preference flag that controls each notification type. Types not listed
# (disputes) are never suppressed.
PREFERENCE_FIELDS = {
    NotificationType.DUEL_CHALLENGE: 'duel_challenges',
    NotificationType.DUEL_ACCEPTED: 'duel_challenges',
    NotificationType.DUEL_DECLINED: 'duel_challenges',
    NotificationType.DUEL_EXPIRED: 'duel_challenges',
    NotificationType.MATCH_STARTED: 'match_updates',
    NotificationType.MATCH_PROGRESS: 'match_updates',
    NotificationType.MATCH_ENDED: 'match_updates',
    NotificationType.MATCH_TIMEOUT: 'match_updates',
    NotificationType.DUEL_FORFEITED: 'match_updates',
    NotificationType.VERIFICATION_REMINDER: 'verification_reminders',
    NotificationType.VERIFICATION_SUCCESS: 'verification_reminders',
    NotificationType.VERIFICATION_FAILED: 'verification_reminders',
    NotificationType.ACHIEVEMENT: 'achievements',
    NotificationType.LEVEL_UP: 'level_ups',
}

# Remote statuses that close an in-progress match without a match_ended flow
CLOSING_STATUSES = {
    DuelStatus.DECLINED: NotificationType.DUEL_DECLINED,
    DuelStatus.EXPIRED: NotificationType.DUEL_EXPIRED,
    DuelStatus.CANCELLED: None,
}

CROSS_DEVICE_PEER = "cross-device-peer"


class NotificationService:
    """
    Notification engine for a single user session.

    All mutations of the store, tracker and queue happen under one lock, so
    events arriving from a transport thread and calls from the application
    thread are applied one at a time.
    """

    def __init__(
        self,
        transport: EventTransport,
        user_id: str,
        preferences: Optional[NotificationPreferences] = None,
        max_progress_pings: int = 10,
        progress_ping_min_interval_seconds: float = 0,
        test_notification_delay_seconds: float = 5,
        user_directory: Optional[UserDirectory] = None,
        clock: Callable[[], datetime] = utc_now,
        tracker: Optional[NotificationTrackerService] = None,
        store: Optional[DuelStateStore] = None,
        queue: Optional[PendingNotificationQueue] = None
    ):
        """
        Initialize notification service.

        Args:
            transport: Realtime transport delivering duel changes
            user_id: Signed-in user all local notifications are addressed to
            preferences: Per-category opt-outs (default: everything enabled)
            max_progress_pings: Pings after which a timeout warning is sent (0 disables)
            progress_ping_min_interval_seconds: Minimum spacing between progress
                notifications of one duel (0 = deduplicate by ping number only)
            test_notification_delay_seconds: Default delay of schedule_test_notification
            user_directory: Optional lookup from user id to display name
            clock: Time source, injectable for tests
            tracker: Deduplication tracker (default: built from the ping interval)
            store: Per-duel state store
            queue: Pending notification queue
        """
        if not user_id:
            raise ValueError("user_id is required")

        self.user_id = user_id
        self.transport = transport
        self.preferences = preferences or NotificationPreferences()
        self.max_progress_pings = max_progress_pings
        self.test_notification_delay_seconds = test_notification_delay_seconds
        self.user_directory = user_directory
        self._clock = clock

        if tracker is None:
            if progress_ping_min_interval_seconds > 0:
                strategy = IntervalDeduplicationStrategy(progress_ping_min_interval_seconds)
            else:
                strategy = OncePerTransitionStrategy()
            tracker = NotificationTrackerService(strategy=strategy, clock=clock)
        self.tracker = tracker
        self._store = store if store is not None else DuelStateStore()
        self._queue = queue if queue is not None else PendingNotificationQueue()

        self.supervisor = ConnectionSupervisor(transport)
        self._lock = threading.RLock()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self) -> None:
        """Subscribe to realtime duel changes for the signed-in user."""
        self.supervisor.connect(self.user_id, self._on_remote_insert, self._on_remote_update)

    def stop(self) -> None:
        self.supervisor.disconnect()

    def reset(self) -> None:
        """Forget all duel state, queued notifications and dedup history."""
        with self._lock:
            self._store.clear()
            self._queue.clear()
            self.tracker.clear()
        logger.info("Notification service state reset")

    # ------------------------------------------------------------------
    # Accessors
    # ------------------------------------------------------------------

    @property
    def is_connected(self) -> bool:
        return self.supervisor.is_connected

    @property
    def queue(self) -> PendingNotificationQueue:
        return self._queue

    @property
    def store(self) -> DuelStateStore:
        return self._store

    @property
    def pending_notifications(self) -> List[PendingNotification]:
        return self._queue.snapshot()

    @property
    def active_match_notifications(self) -> Dict[str, MatchNotificationState]:
        return self._store.snapshot()

    # ------------------------------------------------------------------
    # Event path
    # ------------------------------------------------------------------

    def receive_duel_payload(
        self,
        payload: Union[Dict[str, Any], DuelEnvelope],
        kind: Union[str, TransportEventKind] = TransportEventKind.UPDATE
    ) -> List[PendingNotification]:
        """
        Apply one duel change event.

        Args:
            payload: Envelope ``{"new": record, "old": record?}``
            kind: ``"insert"`` or ``"update"``

        Returns:
            Notifications enqueued by this event (empty when dropped or deduplicated)
        """
        if not self.is_connected:
            logger.debug("Realtime disconnected, dropping duel event")
            return []

        event_kind = self._parse_kind(kind)
        if event_kind is None:
            return []

        envelope = parse_envelope(payload)
        if envelope is None:
            return []

        with self._lock:
            try:
                return self._apply(envelope, event_kind)
            except Exception as e:
                logger.error(f"Failed to process duel {envelope.new.id}: {e}", exc_info=True)
                return []

    def _on_remote_insert(self, record: Record) -> None:
        self.receive_duel_payload({'new': record}, TransportEventKind.INSERT)

    def _on_remote_update(self, record: Record, old_record: Optional[Record]) -> None:
        self.receive_duel_payload({'new': record, 'old': old_record}, TransportEventKind.UPDATE)

    @staticmethod
    def _parse_kind(kind: Union[str, TransportEventKind]) -> Optional[TransportEventKind]:
        value = kind.value if isinstance(kind, TransportEventKind) else str(kind).upper()
        if value not in (TransportEventKind.INSERT.value, TransportEventKind.UPDATE.value):
            logger.warning(f"Dropping duel event of unsupported kind {kind!r}")
            return None
        return TransportEventKind(value)

    def _apply(self, envelope: DuelEnvelope, kind: TransportEventKind) -> List[PendingNotification]:
        record = envelope.new
        status = record.status
        if status is None:
            if kind != TransportEventKind.INSERT:
                logger.warning(f"Dropping update for duel {record.id} without a status")
                return []
            status = DuelStatus.PROPOSED

        now = self._clock()
        first_seen = self.tracker.mark_duel_seen(record.id) and record.id not in self._store
        logger.debug(f"Duel {record.id} -> {status.value} ({kind.value})")

        emitted: List[PendingNotification] = []
        if status == DuelStatus.IN_PROGRESS:
            emitted += self._handle_in_progress(record, now)
        elif status in (DuelStatus.ENDED, DuelStatus.COMPLETED):
            emitted += self._handle_match_ended(record, now)
        elif status == DuelStatus.PROPOSED:
            emitted += self._handle_proposed(record, first_seen, now)
        elif status == DuelStatus.DISPUTED:
            emitted += self._enqueue(NotificationMessageBuilder.dispute(
                record.id, record.reason or "Score dispute raised", now=now
            ))
        elif self._is_terminal(record.id):
            logger.info(f"Duel {record.id} already finished; ignoring {status.value}")
        elif status == DuelStatus.ACCEPTED:
            emitted += self._handle_accepted(record, now)
        elif status in CLOSING_STATUSES:
            emitted += self._handle_closing(record, status, now)

        emitted += self._handle_verification(record, now)
        return emitted

    def _is_terminal(self, duel_id: str) -> bool:
        state = self._store.get(duel_id)
        return state is not None and state.is_terminal

    def _handle_in_progress(self, record: DuelRecord, now: datetime) -> List[PendingNotification]:
        state = self._store.get(record.id)
        if state is not None and state.is_terminal:
            logger.info(f"Duel {record.id} already {state.status.value}; ignoring in_progress")
            return []

        if state is None:
            self._store.put(MatchNotificationState(
                duel_id=record.id,
                game_type=record.game_type or "",
                status=MatchStatus.IN_PROGRESS,
                start_time=now,
            ))
            logger.info(f"Started monitoring duel {record.id}")
            return self._enqueue(NotificationMessageBuilder.match_started(
                self.user_id,
                record.id,
                record.game_type,
                challenger_id=record.challenger_id,
                opponent_id=record.opponent_id,
                now=now,
            ))

        if record.is_ping:
            return self._handle_ping(record, now)

        logger.info(f"Duplicate in_progress for duel {record.id} ignored")
        return []

    def _handle_ping(self, record: DuelRecord, now: datetime) -> List[PendingNotification]:
        def bump(state: MatchNotificationState) -> MatchNotificationState:
            state.ping_count += 1
            state.last_ping_time = now
            return state

        state = self._store.update(record.id, bump)
        emitted = self._enqueue(
            NotificationMessageBuilder.match_progress(self.user_id, record.id, state.ping_count, now=now),
            discriminator=str(state.ping_count),
        )
        if 0 < self.max_progress_pings <= state.ping_count:
            emitted += self._enqueue(NotificationMessageBuilder.match_timeout(self.user_id, record.id, now=now))
        return emitted

    def _handle_match_ended(self, record: DuelRecord, now: datetime) -> List[PendingNotification]:
        state = self._store.get(record.id)
        if state is not None and state.is_terminal:
            logger.info(f"Duel {record.id} already {state.status.value}; ignoring end")
            return []

        if state is None:
            # Missed the start; track the duel from here
            state = MatchNotificationState(
                duel_id=record.id,
                game_type=record.game_type or "",
                status=MatchStatus.ENDED,
                start_time=now,
            )
        state.status = MatchStatus.ENDED
        state.end_time = now
        self._store.put(state)
        logger.info(f"Match ended for duel {record.id}")

        emitted = self._enqueue(NotificationMessageBuilder.match_ended(
            self.user_id, record.id, record.challenger_id, record.opponent_id, now=now
        ))
        emitted += self._enqueue(NotificationMessageBuilder.verification_reminder(
            self.user_id, record.id, record.challenger_id, record.opponent_id, now=now
        ))
        return emitted

    def _handle_proposed(self, record: DuelRecord, first_seen: bool, now: datetime) -> List[PendingNotification]:
        if not first_seen:
            logger.debug(f"Duel {record.id} already known; no challenge notification")
            return []
        return self._enqueue(NotificationMessageBuilder.duel_challenge(
            self.user_id,
            record.id,
            record.challenger_id,
            record.game_type,
            record.game_mode,
            challenger_name=self._display_name(record.challenger_id),
            now=now,
        ))

    def _handle_accepted(self, record: DuelRecord, now: datetime) -> List[PendingNotification]:
        opponent_id = self._other_participant(record)
        return self._enqueue(NotificationMessageBuilder.duel_accepted(
            self.user_id,
            record.id,
            opponent_id,
            record.game_type,
            record.game_mode,
            opponent_name=self._display_name(opponent_id),
            now=now,
        ))

    def _handle_closing(self, record: DuelRecord, status: DuelStatus, now: datetime) -> List[PendingNotification]:
        self._close_match(record.id, MatchStatus.COMPLETED, now)

        notification_type = CLOSING_STATUSES[status]
        if notification_type == NotificationType.DUEL_DECLINED:
            opponent_id = self._other_participant(record)
            return self._enqueue(NotificationMessageBuilder.duel_declined(
                self.user_id,
                record.id,
                opponent_id,
                record.game_type,
                record.game_mode,
                opponent_name=self._display_name(opponent_id),
                now=now,
            ))
        if notification_type == NotificationType.DUEL_EXPIRED:
            return self._enqueue(NotificationMessageBuilder.duel_expired(self.user_id, record.id, now=now))
        return []

    def _handle_verification(self, record: DuelRecord, now: datetime) -> List[PendingNotification]:
        verification = record.verification_status
        if verification == VerificationStatus.VERIFIED:
            return self._enqueue(NotificationMessageBuilder.verification_success(
                self.user_id, record.id, is_winner=record.winner_id == self.user_id, now=now
            ))
        if verification == VerificationStatus.FAILED:
            return self._enqueue(NotificationMessageBuilder.verification_failed(
                self.user_id, record.id, record.reason or "Scores could not be verified", now=now
            ))
        if verification == VerificationStatus.FORFEITED:
            self._close_match(record.id, MatchStatus.FORFEITED, now)
            return self._enqueue(NotificationMessageBuilder.duel_forfeited(self.user_id, record.id, now=now))
        return []

    def _close_match(self, duel_id: str, status: MatchStatus, now: datetime) -> None:
        """Move an in-progress match to a terminal status; anything else is left alone."""
        def close(state: MatchNotificationState) -> MatchNotificationState:
            if not state.is_terminal:
                state.status = status
                state.end_time = now
                logger.info(f"Duel {duel_id} closed as {status.value}")
            return state

        self._store.update(duel_id, close)

    def _enqueue(
        self,
        notification: PendingNotification,
        discriminator: Optional[str] = None
    ) -> List[PendingNotification]:
        """Dedup, apply preferences and queue. Returns the queued notification, if any."""
        duel_id = notification.data.duel_id
        with self._lock:
            if not self.tracker.should_send_notification(
                notification.user_id, duel_id, notification.type, discriminator
            ):
                return []
            self.tracker.record_notification(notification.user_id, duel_id, notification.type, discriminator)

            if not self._allowed_by_preferences(notification.type):
                logger.info(f"{notification.type.value} for duel {duel_id} suppressed by user preferences")
                return []

            self._queue.append(notification)
        return [notification]

    def _allowed_by_preferences(self, notification_type: NotificationType) -> bool:
        field_name = PREFERENCE_FIELDS.get(notification_type)
        if field_name is None:
            return True
        return bool(getattr(self.preferences, field_name, True))

    def _other_participant(self, record: DuelRecord) -> Optional[str]:
        for participant in record.participants:
            if participant != self.user_id:
                return participant
        return None

    def _display_name(self, user_id: Optional[str]) -> Optional[str]:
        if not user_id or self.user_directory is None:
            return None
        try:
            return self.user_directory(user_id)
        except Exception as e:
            logger.warning(f"User directory lookup failed for {user_id}: {e}")
            return None

    # ------------------------------------------------------------------
    # Direct senders
    # ------------------------------------------------------------------

    def send_level_up_notification(self, new_level: int) -> Optional[PendingNotification]:
        queued = self._enqueue(
            NotificationMessageBuilder.level_up(self.user_id, new_level, now=self._clock()),
            discriminator=str(new_level),
        )
        return queued[0] if queued else None

    def send_dispute_notification(self, duel_id: str, reason: str) -> Optional[PendingNotification]:
        """Queue a dispute for moderator review (addressed to the moderator queue)."""
        queued = self._enqueue(NotificationMessageBuilder.dispute(duel_id, reason, now=self._clock()))
        return queued[0] if queued else None

    def send_achievement_notification(self, title: str, body: str) -> Optional[PendingNotification]:
        queued = self._enqueue(
            NotificationMessageBuilder.achievement(self.user_id, title, body, now=self._clock()),
            discriminator=title,
        )
        return queued[0] if queued else None

    # ------------------------------------------------------------------
    # Debug / test surface
    # ------------------------------------------------------------------

    def emit_remote_duel_insert(self, record: Record) -> List[PendingNotification]:
        return self.receive_duel_payload({'new': record}, TransportEventKind.INSERT)

    def emit_remote_duel_update(self, record: Record, old_record: Optional[Record] = None) -> List[PendingNotification]:
        return self.receive_duel_payload({'new': record, 'old': old_record}, TransportEventKind.UPDATE)

    def simulate_connection_loss(self) -> None:
        self.supervisor.simulate_connection_loss()

    def reconnect(self) -> bool:
        return self.supervisor.reconnect()

    def emit_cross_device_event(self) -> Record:
        """
        Publish a synthetic in-progress duel through the transport, as if it
        had been started from another device. It comes back through the
        subscription like any other remote change.
        """
        record = {
            'id': f"cross-device-{uuid.uuid4()}",
            'status': DuelStatus.IN_PROGRESS.value,
            'game_type': "CrossDevice",
            'game_mode': "Debug",
            'challenger_id': self.user_id,
            'opponent_id': CROSS_DEVICE_PEER,
        }
        self.transport.publish_duel_change(self.user_id, TransportEventKind.UPDATE, record)
        logger.info(f"Published cross-device duel {record['id']}")
        return record

    def schedule_test_notification(self, seconds: Optional[float] = None) -> PendingNotification:
        """Queue a test achievement notification that becomes due after ``seconds``."""
        delay = self.test_notification_delay_seconds if seconds is None else seconds
        notification = NotificationMessageBuilder.achievement(
            self.user_id,
            "Test Notification",
            "This is a test notification.",
            delay_seconds=delay,
            action="test",
            now=self._clock(),
        )
        return self._queue.append(notification)
