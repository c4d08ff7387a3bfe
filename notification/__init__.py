"""
Notification Module

Realtime duel notification engine: consumes duel change events for the
signed-in user, tracks per-duel match state, deduplicates transitions and
queues notifications for delivery.

Usage:
    from notification import NotificationService, RedisTransport

    service = NotificationService(transport=RedisTransport(), user_id='user123')
    service.start()

    service.pending_notifications
"""

from notification.models import (
    DuelStatus,
    MatchStatus,
    MatchNotificationState,
    NotificationType,
    NotificationData,
    PendingNotification,
)

from notification.transport import (
    EventTransport,
    InMemoryTransport,
    RedisTransport,
    TransportEvent,
    TransportEventKind,
    TransportError,
)

from notification.tracker import (
    DuelStateStore,
    NotificationTrackerService,
    OncePerTransitionStrategy,
    IntervalDeduplicationStrategy,
)

from notification.pending import PendingNotificationQueue
from notification.supervisor import ConnectionSupervisor, ConnectionState

from notification.channels import (
    NotificationChannel,
    WebhookChannel,
    InAppChannel,
    NotificationChannelFactory,
)

from notification.service import NotificationService

from notification.delivery import (
    NotificationDispatcher,
    deliver_notification_task,
)

__all__ = [
    # Models
    'DuelStatus',
    'MatchStatus',
    'MatchNotificationState',
    'NotificationType',
    'NotificationData',
    'PendingNotification',
    # Transport
    'EventTransport',
    'InMemoryTransport',
    'RedisTransport',
    'TransportEvent',
    'TransportEventKind',
    'TransportError',
    # State
    'DuelStateStore',
    'NotificationTrackerService',
    'OncePerTransitionStrategy',
    'IntervalDeduplicationStrategy',
    'PendingNotificationQueue',
    'ConnectionSupervisor',
    'ConnectionState',
    # Channels
    'NotificationChannel',
    'WebhookChannel',
    'InAppChannel',
    'NotificationChannelFactory',
    # Service
    'NotificationService',
    'NotificationDispatcher',
    'deliver_notification_task',
]
