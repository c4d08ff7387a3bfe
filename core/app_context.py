from dataclasses import dataclass
from typing import Optional

from core.config_loader import AppConfig, TransportConfig, DeliveryConfig
from notification.delivery import NotificationDispatcher
from notification.pending import PendingNotificationQueue
from notification.service import NotificationService
from notification.transport import EventTransport, InMemoryTransport, RedisTransport


@dataclass
class AppContext:
    """Application context container that holds all wired dependencies.

    Single source of truth for service instantiation: the realtime transport,
    the notification engine listening on it, and the dispatcher draining the
    engine's queue.
    """
    config: AppConfig
    transport: EventTransport
    notification_service: NotificationService
    dispatcher: Optional[NotificationDispatcher] = None

    @classmethod
    def build(cls, config: AppConfig, user_id: Optional[str] = None) -> "AppContext":
        """Build an AppContext from config.

        Args:
            config: Loaded application configuration
            user_id: Signed-in user; overrides ``engine.user_id``

        Returns:
            Fully wired AppContext instance (not yet subscribed)

        Raises:
            ValueError: If no user id is configured
        """
        user_id = user_id or config.engine.user_id
        if not user_id:
            raise ValueError("No user id configured (engine.user_id or DUEL_USER_ID)")

        transport = cls._build_transport(config.transport)

        notification_service = NotificationService(
            transport=transport,
            user_id=user_id,
            preferences=config.preferences,
            max_progress_pings=config.engine.max_progress_pings,
            progress_ping_min_interval_seconds=config.engine.progress_ping_min_interval_seconds,
            test_notification_delay_seconds=config.engine.test_notification_delay_seconds,
            queue=PendingNotificationQueue(),
        )

        dispatcher = None
        if config.delivery.enabled:
            dispatcher = cls._build_dispatcher(config, notification_service.queue)

        return cls(
            config=config,
            transport=transport,
            notification_service=notification_service,
            dispatcher=dispatcher
        )

    @staticmethod
    def _build_transport(transport_config: TransportConfig) -> EventTransport:
        """Build the realtime transport from configuration."""
        if transport_config.type == "memory":
            return InMemoryTransport()

        return RedisTransport(
            redis_url=transport_config.redis_url,
            channel_prefix=transport_config.channel_prefix,
            poll_timeout_seconds=transport_config.poll_timeout_seconds
        )

    @staticmethod
    def _build_dispatcher(config: AppConfig, queue: PendingNotificationQueue) -> NotificationDispatcher:
        """Build the delivery dispatcher for the enabled channels."""
        delivery_config: DeliveryConfig = config.delivery
        channels = {
            channel_type: channel_config.recipient
            for channel_type, channel_config in delivery_config.channels.items()
            if channel_config.enabled
        }

        return NotificationDispatcher(
            queue=queue,
            channels=channels,
            use_async_queue=delivery_config.use_async_queue,
            redis_url=delivery_config.redis_url or config.transport.redis_url,
            queue_name=delivery_config.queue_name
        )
