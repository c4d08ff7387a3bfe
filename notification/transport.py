#!/usr/bin/env python3
"""
Event Transport Adapters

Abstracts the realtime change feed for the duels a user participates in.
Every transport turns its wire events into typed TransportEvent objects and
hands them, in order, to the Subscription they belong to:

- InMemoryTransport: synchronous, used by tests and the debug surface
- RedisTransport: Redis pub/sub, one listener thread per subscription

Contract shared by all transports:
- subscribe() returns a subscription id and eventually fires on_subscribed,
  or fires on_closed alone when the subscription cannot be established
- on_closed is the last callback a subscription ever receives
- once unsubscribe() returns, no further callback fires for that id

Usage:
    transport = RedisTransport(redis_url="redis://localhost:6379/0")
    subscription_id = transport.subscribe(
        "user123",
        on_insert=lambda record: ...,
        on_update=lambda record, old_record: ...,
        on_subscribed=lambda: ...,
        on_closed=lambda: ...,
    )
    ...
    transport.unsubscribe(subscription_id)
"""

import json
import logging
import threading
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Optional, Dict, Any, Callable, List

from redis import Redis
from redis.exceptions import RedisError

logger = logging.getLogger(__name__)

Record = Dict[str, Any]
InsertHandler = Callable[[Record], None]
UpdateHandler = Callable[[Record, Optional[Record]], None]
LifecycleHandler = Callable[[], None]


class TransportError(Exception):
    """Raised when a change cannot be pushed through the transport."""


class TransportEventKind(str, Enum):
    INSERT = "INSERT"
    UPDATE = "UPDATE"
    SUBSCRIBED = "SUBSCRIBED"
    CLOSED = "CLOSED"


@dataclass(frozen=True)
class TransportEvent:
    kind: TransportEventKind
    subscription_id: str
    record: Optional[Record] = None
    old_record: Optional[Record] = None


class Subscription:
    """
    Ordered, cancellable dispatch of TransportEvents to one set of callbacks.

    dispatch() and cancel() share a lock, so once cancel() returns no
    callback can start, and a callback already running finishes first.
    """

    def __init__(
        self,
        subscription_id: str,
        user_id: str,
        on_insert: InsertHandler,
        on_update: UpdateHandler,
        on_subscribed: LifecycleHandler,
        on_closed: LifecycleHandler
    ):
        self.subscription_id = subscription_id
        self.user_id = user_id
        self._handlers = {
            TransportEventKind.INSERT: lambda event: on_insert(event.record),
            TransportEventKind.UPDATE: lambda event: on_update(event.record, event.old_record),
            TransportEventKind.SUBSCRIBED: lambda event: on_subscribed(),
            TransportEventKind.CLOSED: lambda event: on_closed(),
        }
        self._active = True
        self._lock = threading.RLock()

    @property
    def active(self) -> bool:
        with self._lock:
            return self._active

    def dispatch(self, event: TransportEvent) -> bool:
        """Deliver one event. Returns False if the subscription is no longer active."""
        with self._lock:
            if not self._active:
                return False
            if event.kind == TransportEventKind.CLOSED:
                self._active = False
            try:
                self._handlers[event.kind](event)
            except Exception as e:
                # A failing consumer must not stop the feed for later events
                logger.error(f"Subscription {self.subscription_id} handler failed on {event.kind.value}: {e}", exc_info=True)
            return True

    def cancel(self) -> None:
        with self._lock:
            self._active = False


class EventTransport(ABC):
    """Interface every realtime transport implements."""

    @abstractmethod
    def subscribe(
        self,
        user_id: str,
        on_insert: InsertHandler,
        on_update: UpdateHandler,
        on_subscribed: LifecycleHandler,
        on_closed: LifecycleHandler
    ) -> str:
        """Subscribe to duel changes for ``user_id``. Returns a subscription id."""
        pass

    @abstractmethod
    def unsubscribe(self, subscription_id: str) -> None:
        """Stop a subscription. Unknown ids are ignored."""
        pass

    @abstractmethod
    def publish_duel_change(
        self,
        user_id: str,
        kind: TransportEventKind,
        record: Record,
        old_record: Optional[Record] = None
    ) -> None:
        """Push a duel change to ``user_id``'s subscribers through the transport."""
        pass

    @staticmethod
    def new_subscription_id() -> str:
        return str(uuid.uuid4())


class InMemoryTransport(EventTransport):
    """
    Synchronous transport for tests and debug tooling.

    Callbacks run on the caller's thread before emit_* returns. The simulated
    link can be dropped and restored; dropping it closes every subscription,
    and restoring it does not resubscribe anyone.
    """

    def __init__(self, connected: bool = True):
        self._connected = connected
        self._subscriptions: Dict[str, Subscription] = {}
        self._lock = threading.Lock()

    @property
    def is_connected(self) -> bool:
        return self._connected

    @property
    def subscription_count(self) -> int:
        with self._lock:
            return len(self._subscriptions)

    def subscribe(self, user_id, on_insert, on_update, on_subscribed, on_closed) -> str:
        subscription = Subscription(
            self.new_subscription_id(), user_id, on_insert, on_update, on_subscribed, on_closed
        )
        if not self._connected:
            logger.warning(f"Cannot subscribe user {user_id}: transport offline")
            subscription.dispatch(TransportEvent(TransportEventKind.CLOSED, subscription.subscription_id))
            return subscription.subscription_id

        with self._lock:
            self._subscriptions[subscription.subscription_id] = subscription
        subscription.dispatch(TransportEvent(TransportEventKind.SUBSCRIBED, subscription.subscription_id))
        return subscription.subscription_id

    def unsubscribe(self, subscription_id: str) -> None:
        with self._lock:
            subscription = self._subscriptions.pop(subscription_id, None)
        if subscription:
            subscription.cancel()

    def emit_duel_insert(self, record: Record) -> None:
        self._emit(TransportEventKind.INSERT, record, None)

    def emit_duel_update(self, record: Record, old_record: Optional[Record] = None) -> None:
        self._emit(TransportEventKind.UPDATE, record, old_record)

    def publish_duel_change(self, user_id, kind, record, old_record=None) -> None:
        self._emit(TransportEventKind(kind), record, old_record, user_id=user_id)

    def simulate_connection_loss(self) -> None:
        if not self._connected:
            return
        self._connected = False
        with self._lock:
            closing = list(self._subscriptions.values())
            self._subscriptions.clear()
        for subscription in closing:
            subscription.dispatch(TransportEvent(TransportEventKind.CLOSED, subscription.subscription_id))

    def restore_connection(self) -> None:
        self._connected = True

    def _emit(self, kind: TransportEventKind, record: Record, old_record: Optional[Record], user_id: Optional[str] = None) -> None:
        if not self._connected:
            logger.debug(f"Transport offline, dropping {kind.value} for duel {record.get('id')}")
            return
        with self._lock:
            targets = [
                s for s in self._subscriptions.values()
                if user_id is None or s.user_id == user_id
            ]
        for subscription in targets:
            subscription.dispatch(TransportEvent(kind, subscription.subscription_id, dict(record), old_record))


@dataclass
class _Listener:
    subscription: Subscription
    stop: threading.Event
    thread: threading.Thread


class RedisTransport(EventTransport):
    """
    Realtime duel changes over Redis pub/sub.

    Each user has a channel ``{channel_prefix}:{user_id}`` carrying JSON
    messages shaped like database change events::

        {"type": "UPDATE", "record": {...}, "old_record": {...}}
    """

    def __init__(
        self,
        redis_url: str = 'redis://localhost:6379/0',
        channel_prefix: str = 'duels',
        poll_timeout_seconds: float = 1.0,
        redis_client: Optional[Redis] = None
    ):
        self.redis_url = redis_url
        self.channel_prefix = channel_prefix
        self.poll_timeout_seconds = poll_timeout_seconds
        self._redis = redis_client
        self._listeners: Dict[str, _Listener] = {}
        self._lock = threading.Lock()

    def _get_redis(self) -> Redis:
        """Get Redis connection (lazy init)."""
        if self._redis is None:
            self._redis = Redis.from_url(self.redis_url)
        return self._redis

    def channel_for(self, user_id: str) -> str:
        return f"{self.channel_prefix}:{user_id}"

    def subscribe(self, user_id, on_insert, on_update, on_subscribed, on_closed) -> str:
        subscription = Subscription(
            self.new_subscription_id(), user_id, on_insert, on_update, on_subscribed, on_closed
        )
        channel = self.channel_for(user_id)
        try:
            pubsub = self._get_redis().pubsub()
            pubsub.subscribe(channel)
        except RedisError as e:
            logger.error(f"Redis subscription to {channel} failed: {e}")
            subscription.dispatch(TransportEvent(TransportEventKind.CLOSED, subscription.subscription_id))
            return subscription.subscription_id

        stop = threading.Event()
        thread = threading.Thread(
            target=self._listen,
            args=(subscription, pubsub, stop),
            name=f"duel-listener-{subscription.subscription_id[:8]}",
            daemon=True,
        )
        with self._lock:
            self._listeners[subscription.subscription_id] = _Listener(subscription, stop, thread)
        thread.start()
        logger.info(f"Subscribed to {channel} ({subscription.subscription_id})")
        return subscription.subscription_id

    def unsubscribe(self, subscription_id: str) -> None:
        with self._lock:
            listener = self._listeners.pop(subscription_id, None)
        if listener is None:
            return
        listener.stop.set()
        listener.subscription.cancel()
        if listener.thread is not threading.current_thread():
            listener.thread.join(timeout=self.poll_timeout_seconds * 2)
        logger.info(f"Unsubscribed {subscription_id}")

    def publish_duel_change(self, user_id, kind, record, old_record=None) -> None:
        kind = TransportEventKind(kind)
        if kind not in (TransportEventKind.INSERT, TransportEventKind.UPDATE):
            raise ValueError(f"Only INSERT/UPDATE changes can be published, got {kind.value}")
        message = json.dumps({'type': kind.value, 'record': record, 'old_record': old_record}, default=str)
        try:
            self._get_redis().publish(self.channel_for(user_id), message)
        except RedisError as e:
            raise TransportError(f"Failed to publish duel change for {user_id}: {e}") from e

    def active_subscriptions(self) -> List[str]:
        with self._lock:
            return list(self._listeners.keys())

    def _listen(self, subscription: Subscription, pubsub, stop: threading.Event) -> None:
        """Single consumer loop for one subscription; preserves channel order."""
        try:
            while not stop.is_set():
                try:
                    message = pubsub.get_message(timeout=self.poll_timeout_seconds)
                except RedisError as e:
                    logger.warning(f"Realtime connection lost for {subscription.subscription_id}: {e}")
                    break
                if message is None:
                    continue
                event = self._to_event(subscription.subscription_id, message)
                if event is not None:
                    subscription.dispatch(event)
        finally:
            if not stop.is_set():
                subscription.dispatch(TransportEvent(TransportEventKind.CLOSED, subscription.subscription_id))
                with self._lock:
                    self._listeners.pop(subscription.subscription_id, None)
            subscription.cancel()
            try:
                pubsub.close()
            except RedisError as e:
                logger.debug(f"Error closing pubsub for {subscription.subscription_id}: {e}")

    @staticmethod
    def _to_event(subscription_id: str, message: Dict[str, Any]) -> Optional[TransportEvent]:
        message_type = message.get('type')
        if message_type == 'subscribe':
            return TransportEvent(TransportEventKind.SUBSCRIBED, subscription_id)
        if message_type != 'message':
            return None

        data = message.get('data')
        if isinstance(data, bytes):
            data = data.decode('utf-8', errors='replace')
        try:
            payload = json.loads(data)
            kind = TransportEventKind(str(payload['type']).upper())
            record = payload['record']
        except (TypeError, ValueError, KeyError) as e:
            logger.warning(f"Skipping malformed realtime message on {subscription_id}: {e}")
            return None

        if kind not in (TransportEventKind.INSERT, TransportEventKind.UPDATE) or not isinstance(record, dict):
            logger.warning(f"Skipping unsupported realtime message {kind.value} on {subscription_id}")
            return None
        old_record = payload.get('old_record')
        return TransportEvent(kind, subscription_id, record, old_record if isinstance(old_record, dict) else None)
