"""
Builds PendingNotification instances for each notification type.

Titles, bodies, expiry windows and priorities live here so the engine only
decides *whether* to notify, never *what* the notification says.
"""

from datetime import datetime
from typing import Optional

from notification.models import (
    NotificationData,
    NotificationType,
    PendingNotification,
    expires_in,
    utc_now,
)

MODERATOR_QUEUE = "moderator_queue"

# Screenshot submission window after a match ends (seconds)
VERIFICATION_WINDOW_SEC = 180
VERIFICATION_REMINDER_DELAY_SEC = 120

HOUR = 60 * 60
DAY = 24 * HOUR


class NotificationMessageBuilder:

    @staticmethod
    def duel_challenge(
        user_id: str,
        duel_id: str,
        challenger_id: Optional[str],
        game_type: Optional[str],
        game_mode: Optional[str],
        challenger_name: Optional[str] = None,
        now: Optional[datetime] = None
    ) -> PendingNotification:
        game = NotificationMessageBuilder.format_game(game_type, game_mode)
        return PendingNotification(
            user_id=user_id,
            type=NotificationType.DUEL_CHALLENGE,
            title="🎮 Duel Challenge!",
            body=f"{challenger_name or 'A player'} challenges you to {game}",
            data=NotificationData(
                duel_id=duel_id,
                challenger_id=challenger_id,
                game_type=game_type,
                game_mode=game_mode,
            ),
            scheduled_for=now or utc_now(),
            expires_at=expires_in(DAY, now),
            priority=1,
        )

    @staticmethod
    def duel_accepted(
        user_id: str,
        duel_id: str,
        opponent_id: Optional[str],
        game_type: Optional[str],
        game_mode: Optional[str],
        opponent_name: Optional[str] = None,
        now: Optional[datetime] = None
    ) -> PendingNotification:
        return PendingNotification(
            user_id=user_id,
            type=NotificationType.DUEL_ACCEPTED,
            title="✅ Challenge Accepted!",
            body=f"{opponent_name or 'Your opponent'} accepted your {game_type or 'duel'} challenge!",
            data=NotificationData(
                duel_id=duel_id,
                opponent_id=opponent_id,
                game_type=game_type,
                game_mode=game_mode,
            ),
            scheduled_for=now or utc_now(),
            expires_at=expires_in(HOUR, now),
        )

    @staticmethod
    def duel_declined(
        user_id: str,
        duel_id: str,
        opponent_id: Optional[str],
        game_type: Optional[str],
        game_mode: Optional[str],
        opponent_name: Optional[str] = None,
        now: Optional[datetime] = None
    ) -> PendingNotification:
        return PendingNotification(
            user_id=user_id,
            type=NotificationType.DUEL_DECLINED,
            title="❌ Challenge Declined",
            body=f"{opponent_name or 'Your opponent'} declined your {game_type or 'duel'} challenge",
            data=NotificationData(
                duel_id=duel_id,
                opponent_id=opponent_id,
                game_type=game_type,
                game_mode=game_mode,
            ),
            scheduled_for=now or utc_now(),
            expires_at=expires_in(HOUR, now),
        )

    @staticmethod
    def match_started(
        user_id: str,
        duel_id: str,
        game_type: Optional[str],
        challenger_id: Optional[str] = None,
        opponent_id: Optional[str] = None,
        now: Optional[datetime] = None
    ) -> PendingNotification:
        return PendingNotification(
            user_id=user_id,
            type=NotificationType.MATCH_STARTED,
            title="🚀 Match Started!",
            body=f"Your {game_type or 'duel'} duel has begun. Good luck!",
            data=NotificationData(
                duel_id=duel_id,
                challenger_id=challenger_id,
                opponent_id=opponent_id,
                game_type=game_type,
                action="start_match",
            ),
            scheduled_for=now or utc_now(),
            expires_at=expires_in(30 * 60, now),
        )

    @staticmethod
    def match_progress(
        user_id: str,
        duel_id: str,
        ping_number: int,
        now: Optional[datetime] = None
    ) -> PendingNotification:
        return PendingNotification(
            user_id=user_id,
            type=NotificationType.MATCH_PROGRESS,
            title="⚔️ Match in Progress",
            body="Your duel is still active. Don't forget to submit your score!",
            data=NotificationData(
                duel_id=duel_id,
                action="continue_match",
                ping_number=ping_number,
            ),
            scheduled_for=now or utc_now(),
            expires_at=expires_in(60, now),
            priority=3,
        )

    @staticmethod
    def match_timeout(user_id: str, duel_id: str, now: Optional[datetime] = None) -> PendingNotification:
        return PendingNotification(
            user_id=user_id,
            type=NotificationType.MATCH_TIMEOUT,
            title="⚠️ Match Timeout Warning",
            body="Your match has been running for a while. Consider ending it soon.",
            data=NotificationData(duel_id=duel_id, action="end_match"),
            scheduled_for=now or utc_now(),
            expires_at=expires_in(5 * 60, now),
            priority=2,
        )

    @staticmethod
    def match_ended(
        user_id: str,
        duel_id: str,
        challenger_id: Optional[str] = None,
        opponent_id: Optional[str] = None,
        now: Optional[datetime] = None
    ) -> PendingNotification:
        return PendingNotification(
            user_id=user_id,
            type=NotificationType.MATCH_ENDED,
            title="🏁 Match Ended!",
            body=f"Submit your scoreboard screenshot within {VERIFICATION_WINDOW_SEC} seconds",
            data=NotificationData(
                duel_id=duel_id,
                challenger_id=challenger_id,
                opponent_id=opponent_id,
                action="submit_screenshot",
            ),
            scheduled_for=now or utc_now(),
            expires_at=expires_in(VERIFICATION_WINDOW_SEC, now),
            priority=1,
        )

    @staticmethod
    def verification_reminder(
        user_id: str,
        duel_id: str,
        challenger_id: Optional[str] = None,
        opponent_id: Optional[str] = None,
        now: Optional[datetime] = None
    ) -> PendingNotification:
        """Reminder fired part-way through the submission window."""
        remaining = VERIFICATION_WINDOW_SEC - VERIFICATION_REMINDER_DELAY_SEC
        return PendingNotification(
            user_id=user_id,
            type=NotificationType.VERIFICATION_REMINDER,
            title="⏰ Submission Reminder",
            body=f"Only {remaining} seconds left to submit your screenshot!",
            data=NotificationData(
                duel_id=duel_id,
                challenger_id=challenger_id,
                opponent_id=opponent_id,
                action="submit_screenshot",
            ),
            scheduled_for=expires_in(VERIFICATION_REMINDER_DELAY_SEC, now),
            expires_at=expires_in(VERIFICATION_WINDOW_SEC, now),
            priority=1,
        )

    @staticmethod
    def verification_success(
        user_id: str,
        duel_id: str,
        is_winner: bool,
        now: Optional[datetime] = None
    ) -> PendingNotification:
        if is_winner:
            title, body = "🏆 Victory!", "You won the duel! Check your victory recap."
        else:
            title, body = "💪 Good Fight!", "Better luck next time! Your stats have been updated."
        return PendingNotification(
            user_id=user_id,
            type=NotificationType.VERIFICATION_SUCCESS,
            title=title,
            body=body,
            data=NotificationData(duel_id=duel_id, action="view_recap", is_winner=is_winner),
            scheduled_for=now or utc_now(),
            expires_at=expires_in(DAY, now),
        )

    @staticmethod
    def verification_failed(
        user_id: str,
        duel_id: str,
        reason: str,
        now: Optional[datetime] = None
    ) -> PendingNotification:
        return PendingNotification(
            user_id=user_id,
            type=NotificationType.VERIFICATION_FAILED,
            title="❌ Verification Failed",
            body=f"Score verification failed: {reason}",
            data=NotificationData(duel_id=duel_id, action="resubmit_or_dispute", reason=reason),
            scheduled_for=now or utc_now(),
            expires_at=expires_in(HOUR, now),
        )

    @staticmethod
    def duel_forfeited(user_id: str, duel_id: str, now: Optional[datetime] = None) -> PendingNotification:
        return PendingNotification(
            user_id=user_id,
            type=NotificationType.DUEL_FORFEITED,
            title="⚠️ Duel Forfeited",
            body="The duel was forfeited due to missing score submission",
            data=NotificationData(duel_id=duel_id),
            scheduled_for=now or utc_now(),
            expires_at=expires_in(HOUR, now),
        )

    @staticmethod
    def duel_expired(user_id: str, duel_id: str, now: Optional[datetime] = None) -> PendingNotification:
        return PendingNotification(
            user_id=user_id,
            type=NotificationType.DUEL_EXPIRED,
            title="⏰ Challenge Expired",
            body="Your duel challenge has expired",
            data=NotificationData(duel_id=duel_id),
            scheduled_for=now or utc_now(),
            expires_at=expires_in(HOUR, now),
        )

    @staticmethod
    def dispute(duel_id: str, reason: str, now: Optional[datetime] = None) -> PendingNotification:
        """Disputes go to the moderator queue, not to a participant."""
        return PendingNotification(
            user_id=MODERATOR_QUEUE,
            type=NotificationType.DISPUTE,
            title="🚨 Duel Dispute",
            body=f"A duel requires moderator review: {reason}",
            data=NotificationData(duel_id=duel_id, action="moderate_dispute", reason=reason),
            scheduled_for=now or utc_now(),
            expires_at=expires_in(7 * DAY, now),
            priority=1,
        )

    @staticmethod
    def level_up(user_id: str, new_level: int, now: Optional[datetime] = None) -> PendingNotification:
        return PendingNotification(
            user_id=user_id,
            type=NotificationType.LEVEL_UP,
            title="🎉 Level Up!",
            body=f"Congratulations! You've reached level {new_level}!",
            data=NotificationData(action="view_profile", new_level=new_level),
            scheduled_for=now or utc_now(),
            expires_at=expires_in(DAY, now),
        )

    @staticmethod
    def achievement(
        user_id: str,
        title: str,
        body: str,
        delay_seconds: float = 0,
        action: str = "view_achievement",
        now: Optional[datetime] = None
    ) -> PendingNotification:
        return PendingNotification(
            user_id=user_id,
            type=NotificationType.ACHIEVEMENT,
            title=title,
            body=body,
            data=NotificationData(action=action),
            scheduled_for=expires_in(delay_seconds, now),
            expires_at=expires_in(HOUR, now),
        )

    @staticmethod
    def format_game(game_type: Optional[str], game_mode: Optional[str]) -> str:
        """Format "<type> - <mode>", tolerating either part being absent."""
        parts = [p for p in (game_type, game_mode) if p]
        return " - ".join(parts) if parts else "a duel"
