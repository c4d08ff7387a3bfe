#!/usr/bin/env python3
"""
Notification Models

Plain data types shared by the duel notification engine:

- DuelStatus / VerificationStatus / DisputeStatus: remote duel row enums
- MatchStatus + MatchNotificationState: locally tracked match lifecycle
- NotificationType, NotificationData, PendingNotification: queued notifications
"""

import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Optional, Dict, Any


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class DuelStatus(str, Enum):
    """Status of a duel row as owned by the duel backend."""
    PROPOSED = "proposed"
    ACCEPTED = "accepted"
    DECLINED = "declined"
    IN_PROGRESS = "in_progress"
    ENDED = "ended"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    EXPIRED = "expired"
    DISPUTED = "disputed"


class VerificationStatus(str, Enum):
    PENDING = "pending"
    SUBMITTED = "submitted"
    VERIFIED = "verified"
    FAILED = "failed"
    DISPUTED = "disputed"
    FORFEITED = "forfeited"


class VerificationMethod(str, Enum):
    OCR = "ocr"
    MUTUAL = "mutual"
    MODERATOR = "moderator"


class DisputeStatus(str, Enum):
    NONE = "none"
    PENDING = "pending"
    RESOLVED = "resolved"
    ESCALATED = "escalated"


class MatchStatus(str, Enum):
    """Local lifecycle of a match as seen by the notification engine."""
    IN_PROGRESS = "in_progress"
    ENDED = "ended"
    COMPLETED = "completed"
    FORFEITED = "forfeited"

    @property
    def is_terminal(self) -> bool:
        return self is not MatchStatus.IN_PROGRESS


@dataclass
class MatchNotificationState:
    """Per-duel state. One entry per duel id, never shared between duels."""
    duel_id: str
    game_type: str
    status: MatchStatus
    start_time: datetime
    end_time: Optional[datetime] = None
    last_ping_time: Optional[datetime] = None
    ping_count: int = 0

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal


class NotificationType(str, Enum):
    DUEL_CHALLENGE = "duel_challenge"
    DUEL_ACCEPTED = "duel_accepted"
    DUEL_DECLINED = "duel_declined"
    MATCH_STARTED = "match_started"
    MATCH_PROGRESS = "match_progress"
    MATCH_ENDED = "match_ended"
    VERIFICATION_REMINDER = "verification_reminder"
    VERIFICATION_SUCCESS = "verification_success"
    VERIFICATION_FAILED = "verification_failed"
    DUEL_FORFEITED = "duel_forfeited"
    DUEL_EXPIRED = "duel_expired"
    MATCH_TIMEOUT = "match_timeout"
    DISPUTE = "dispute"
    LEVEL_UP = "level_up"
    ACHIEVEMENT = "achievement"

    @property
    def category_identifier(self) -> str:
        """Actionable category used by the device notification layer."""
        return _CATEGORY_IDENTIFIERS.get(self, "DEFAULT_CATEGORY")

    @property
    def display_name(self) -> str:
        return _DISPLAY_NAMES[self]


_CATEGORY_IDENTIFIERS = {
    NotificationType.DUEL_CHALLENGE: "DUEL_CHALLENGE_CATEGORY",
    NotificationType.MATCH_ENDED: "MATCH_ENDED_CATEGORY",
    NotificationType.VERIFICATION_REMINDER: "VERIFICATION_REMINDER_CATEGORY",
    NotificationType.DISPUTE: "DISPUTE_CATEGORY",
}

_DISPLAY_NAMES = {
    NotificationType.DUEL_CHALLENGE: "Duel Challenge",
    NotificationType.DUEL_ACCEPTED: "Challenge Accepted",
    NotificationType.DUEL_DECLINED: "Challenge Declined",
    NotificationType.MATCH_STARTED: "Match Started",
    NotificationType.MATCH_PROGRESS: "Match Progress",
    NotificationType.MATCH_ENDED: "Match Ended",
    NotificationType.VERIFICATION_REMINDER: "Submit Screenshot",
    NotificationType.VERIFICATION_SUCCESS: "Verification Success",
    NotificationType.VERIFICATION_FAILED: "Verification Failed",
    NotificationType.DUEL_FORFEITED: "Duel Forfeited",
    NotificationType.DUEL_EXPIRED: "Challenge Expired",
    NotificationType.MATCH_TIMEOUT: "Match Timeout",
    NotificationType.DISPUTE: "Dispute",
    NotificationType.LEVEL_UP: "Level Up",
    NotificationType.ACHIEVEMENT: "Achievement",
}


@dataclass(frozen=True)
class NotificationData:
    """Structured payload attached to a notification. All fields optional."""
    duel_id: Optional[str] = None
    challenger_id: Optional[str] = None
    opponent_id: Optional[str] = None
    game_type: Optional[str] = None
    game_mode: Optional[str] = None
    action: Optional[str] = None
    reason: Optional[str] = None
    is_winner: Optional[bool] = None
    new_level: Optional[int] = None
    ping_number: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        """Return only the fields that are set."""
        return {key: value for key, value in self.__dict__.items() if value is not None}


@dataclass(frozen=True)
class PendingNotification:
    """
    A notification awaiting delivery/display.

    Instances are immutable; read/delivery updates produce a replaced copy
    inside the PendingNotificationQueue.
    """
    user_id: str
    type: NotificationType
    title: str
    body: str
    data: NotificationData
    expires_at: datetime
    scheduled_for: datetime = field(default_factory=utc_now)
    is_read: bool = False
    delivered_at: Optional[datetime] = None
    priority: int = 5
    id: str = field(default_factory=lambda: str(uuid.uuid4()))

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return (now or utc_now()) >= self.expires_at

    def is_due(self, now: Optional[datetime] = None) -> bool:
        return self.scheduled_for <= (now or utc_now())

    def mark_read(self) -> "PendingNotification":
        return replace(self, is_read=True)

    def mark_delivered(self, at: Optional[datetime] = None) -> "PendingNotification":
        return replace(self, delivered_at=at or utc_now())

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'user_id': self.user_id,
            'type': self.type.value,
            'title': self.title,
            'body': self.body,
            'data': self.data.to_dict(),
            'scheduled_for': self.scheduled_for.isoformat(),
            'expires_at': self.expires_at.isoformat(),
            'is_read': self.is_read,
            'delivered_at': self.delivered_at.isoformat() if self.delivered_at else None,
            'priority': self.priority,
            'category': self.type.category_identifier,
        }


def expires_in(seconds: float, now: Optional[datetime] = None) -> datetime:
    return (now or utc_now()) + timedelta(seconds=seconds)
