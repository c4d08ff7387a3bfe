"""
Delivery of queued notifications.

NotificationDispatcher drains due entries of the PendingNotificationQueue to
the configured channels, either inline or through an RQ queue processed by
``notification.worker``.
"""

import logging
from datetime import datetime
from typing import Optional, Dict, Any, List, Callable, Set

from redis import Redis
from redis.exceptions import RedisError
from rq import Queue, Retry

from notification.channels import NotificationChannelFactory
from notification.models import PendingNotification, utc_now
from notification.pending import PendingNotificationQueue

logger = logging.getLogger(__name__)

DEFAULT_QUEUE_NAME = 'duel-notifications'


class DeliveryError(Exception):
    """Raised inside RQ jobs so failed sends are retried by the worker."""


def build_delivery_data(notification: PendingNotification, channel_type: str, recipient: str) -> Dict[str, Any]:
    """Job payload: the serialized notification plus where to send it."""
    return {
        'channel_type': channel_type,
        'recipient': recipient,
        'notification': notification.to_dict(),
    }


def deliver_notification_task(delivery_data: Dict[str, Any], raise_on_failure: bool = False) -> bool:
    """
    Send one notification through one channel (called by RQ worker or inline).

    Args:
        delivery_data: Payload from build_delivery_data
        raise_on_failure: Raise DeliveryError instead of returning False, so
            RQ applies its retry policy

    Returns:
        True if the channel accepted the notification
    """
    notification = delivery_data['notification']
    channel_type = delivery_data['channel_type']

    channel = NotificationChannelFactory.get_channel(channel_type)
    success = channel.send(
        delivery_data['recipient'],
        notification['title'],
        notification['body'],
        {'notification': notification},
    )

    if success:
        logger.info(f"Notification {notification['id']} delivered via {channel_type}")
    else:
        logger.error(f"Notification {notification['id']} failed to send via {channel_type}")
        if raise_on_failure:
            raise DeliveryError(f"{channel_type} delivery failed for {notification['id']}")
    return success


class NotificationDispatcher:
    """
    Drains due notifications to delivery channels.

    A notification is marked delivered once every channel has accepted it
    (or, in async mode, once every channel job is enqueued). Channels that
    already succeeded are not retried on later passes.
    """

    def __init__(
        self,
        queue: PendingNotificationQueue,
        channels: Optional[Dict[str, Optional[str]]] = None,
        use_async_queue: bool = False,
        redis_url: str = 'redis://localhost:6379/0',
        queue_name: str = DEFAULT_QUEUE_NAME,
        rq_queue: Optional[Queue] = None,
        clock: Callable[[], datetime] = utc_now
    ):
        """
        Args:
            queue: Pending notifications to drain
            channels: channel type -> recipient; a None recipient means the
                notification's own user_id (default: {'in_app': None})
            use_async_queue: Enqueue deliveries on RQ instead of sending inline
            redis_url: Redis connection URL for the RQ queue
            queue_name: RQ queue name
            rq_queue: Pre-built RQ queue (tests)
            clock: Time source
        """
        self.queue = queue
        self.channels = channels if channels is not None else {'in_app': None}
        self._clock = clock
        self._sent_channels: Dict[str, Set[str]] = {}

        if rq_queue is not None:
            self.rq_queue = rq_queue
            self.async_mode = True
        elif use_async_queue:
            try:
                redis_conn = Redis.from_url(redis_url)
                redis_conn.ping()
                self.rq_queue = Queue(queue_name, connection=redis_conn)
                self.async_mode = True
                logger.info(f"Dispatcher enqueuing deliveries on RQ queue '{queue_name}'")
            except RedisError as e:
                logger.error(f"Redis connection failed: {e}. Falling back to sync mode.")
                self.rq_queue = None
                self.async_mode = False
        else:
            logger.info("Async queue disabled via config. Using sync mode.")
            self.rq_queue = None
            self.async_mode = False

    def dispatch_due(self, now: Optional[datetime] = None) -> List[str]:
        """
        Deliver every due notification once.

        Returns:
            Ids of notifications marked delivered in this pass
        """
        now = now or self._clock()
        delivered = []
        due = self.queue.due(now)

        # Partially sent notifications that expired are never due again
        due_ids = {notification.id for notification in due}
        for notification_id in list(self._sent_channels):
            if notification_id not in due_ids:
                del self._sent_channels[notification_id]

        for notification in due:
            if self._deliver(notification):
                self.queue.mark_delivered(notification.id, now)
                self._sent_channels.pop(notification.id, None)
                delivered.append(notification.id)
        if delivered:
            logger.info(f"Dispatched {len(delivered)} notification(s)")
        return delivered

    def _deliver(self, notification: PendingNotification) -> bool:
        sent = self._sent_channels.setdefault(notification.id, set())
        for channel_type, recipient in self.channels.items():
            if channel_type in sent:
                continue
            data = build_delivery_data(notification, channel_type, recipient or notification.user_id)
            if self._send(data):
                sent.add(channel_type)
        return len(sent) == len(self.channels)

    def _send(self, data: Dict[str, Any]) -> bool:
        if not self.async_mode:
            return deliver_notification_task(data)

        try:
            job = self.rq_queue.enqueue(
                deliver_notification_task,
                data,
                raise_on_failure=True,
                job_timeout='5m',
                result_ttl=86400,
                retry=Retry(max=3, interval=[30, 60, 120])
            )
        except RedisError as e:
            logger.error(f"Failed to enqueue notification {data['notification']['id']}: {e}")
            return False
        logger.info(f"Queued notification {data['notification']['id']} as job {job.id}")
        return True
