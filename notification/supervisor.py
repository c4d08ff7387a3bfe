"""
Connection supervisor for the realtime duel subscription.

Tracks whether the current subscription is live and gates incoming events on
it. Resubscription is always explicit: a dropped link stays Disconnected until
someone calls reconnect().
"""

import logging
import threading
from enum import Enum
from typing import Optional, Callable

from notification.transport import EventTransport, InsertHandler, UpdateHandler, Record

logger = logging.getLogger(__name__)


class ConnectionState(str, Enum):
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"


class ConnectionSupervisor:
    """
    Owns at most one live subscription for one user.

    Every subscribe bumps a generation counter; callbacks carry the generation
    they were created for and are ignored once it is superseded.
    """

    def __init__(self, transport: EventTransport):
        self.transport = transport
        self._state = ConnectionState.DISCONNECTED
        self._user_id: Optional[str] = None
        self._subscription_id: Optional[str] = None
        self._generation = 0
        self._on_insert: Optional[InsertHandler] = None
        self._on_update: Optional[UpdateHandler] = None
        self._lock = threading.Lock()

    @property
    def state(self) -> ConnectionState:
        with self._lock:
            return self._state

    @property
    def is_connected(self) -> bool:
        return self.state == ConnectionState.CONNECTED

    @property
    def user_id(self) -> Optional[str]:
        return self._user_id

    @property
    def subscription_id(self) -> Optional[str]:
        with self._lock:
            return self._subscription_id

    def connect(self, user_id: str, on_insert: InsertHandler, on_update: UpdateHandler) -> str:
        """Subscribe for ``user_id``, replacing any previous subscription."""
        with self._lock:
            previous = self._subscription_id
            self._user_id = user_id
            self._on_insert = on_insert
            self._on_update = on_update
            self._generation += 1
            generation = self._generation
            self._subscription_id = None
            self._state = ConnectionState.DISCONNECTED

        if previous:
            self.transport.unsubscribe(previous)

        logger.info(f"Subscribing to duel changes for user {user_id}")
        subscription_id = self.transport.subscribe(
            user_id,
            on_insert=lambda record: self._deliver(generation, on_insert, record),
            on_update=lambda record, old_record: self._deliver(generation, on_update, record, old_record),
            on_subscribed=lambda: self._set_state(generation, ConnectionState.CONNECTED),
            on_closed=lambda: self._set_state(generation, ConnectionState.DISCONNECTED),
        )

        with self._lock:
            if generation == self._generation:
                self._subscription_id = subscription_id
                return subscription_id

        # Superseded while subscribing
        self.transport.unsubscribe(subscription_id)
        return subscription_id

    def reconnect(self) -> bool:
        """
        Resubscribe for the current user.

        Returns:
            True if a new subscription was requested, False when already
            connected or when no user was ever connected.
        """
        with self._lock:
            if self._state == ConnectionState.CONNECTED:
                logger.debug("Reconnect requested while connected; ignoring")
                return False
            user_id, on_insert, on_update = self._user_id, self._on_insert, self._on_update

        if user_id is None:
            logger.warning("Reconnect requested before any connect()")
            return False

        self.connect(user_id, on_insert, on_update)
        return True

    def simulate_connection_loss(self) -> None:
        """Drop to Disconnected and unsubscribe so no further events leak in."""
        logger.warning(f"Realtime connection lost for user {self._user_id}")
        self._drop_subscription()

    def disconnect(self) -> None:
        """Unsubscribe for shutdown."""
        logger.info(f"Disconnecting realtime subscription for user {self._user_id}")
        self._drop_subscription()

    def _drop_subscription(self) -> None:
        with self._lock:
            subscription_id = self._subscription_id
            self._subscription_id = None
            self._generation += 1
            self._state = ConnectionState.DISCONNECTED
        if subscription_id:
            self.transport.unsubscribe(subscription_id)

    def _set_state(self, generation: int, state: ConnectionState) -> None:
        with self._lock:
            if generation != self._generation:
                logger.debug(f"Ignoring {state.value} from superseded subscription")
                return
            if self._state != state:
                logger.info(f"Realtime connection {state.value}")
            self._state = state

    def _deliver(self, generation: int, handler: Callable[..., None], record: Record, *args) -> None:
        with self._lock:
            current = generation == self._generation
            connected = self._state == ConnectionState.CONNECTED
        if not current:
            logger.debug(f"Dropping event for duel {record.get('id')} from superseded subscription")
            return
        if not connected:
            logger.debug(f"Disconnected, dropping event for duel {record.get('id')}")
            return
        handler(record, *args)
