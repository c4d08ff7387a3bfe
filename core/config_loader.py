import yaml
import os
from typing import Dict, Optional, Literal
from pydantic import BaseModel, Field


class TransportConfig(BaseModel):
    """Realtime transport used to receive duel changes."""
    type: Literal["redis", "memory"] = "redis"
    redis_url: str = "redis://localhost:6379/0"
    channel_prefix: str = "duels"  # channel = "<prefix>:<user_id>"
    poll_timeout_seconds: float = 1.0


class EngineConfig(BaseModel):
    """
    Behaviour of the notification engine.

    Controls match progress pings and debug helpers.
    """
    user_id: Optional[str] = None  # Signed-in user; required to start the listener
    max_progress_pings: int = 10  # Send a timeout warning after this many pings (0 = never)
    # Minimum spacing between progress notifications of one duel.
    # 0 = deduplicate by ping number only.
    progress_ping_min_interval_seconds: float = 0.0
    test_notification_delay_seconds: float = 5.0


class NotificationPreferences(BaseModel):
    """Per-category opt-outs. Suppressed notifications still update duel state."""
    duel_challenges: bool = True
    match_updates: bool = True
    verification_reminders: bool = True
    achievements: bool = True
    level_ups: bool = True


class DeliveryChannelConfig(BaseModel):
    """Configuration for a single delivery channel."""
    enabled: bool = True
    recipient: Optional[str] = None  # Webhook URL, device id, etc.


class DeliveryConfig(BaseModel):
    """
    Configuration for draining the pending queue to delivery channels.
    """
    enabled: bool = True
    poll_interval_seconds: float = 5.0

    # Channels to use, keyed by channel type
    channels: Dict[str, DeliveryChannelConfig] = Field(
        default_factory=lambda: {"in_app": DeliveryChannelConfig()}
    )

    # Redis queue settings
    use_async_queue: bool = False  # Enqueue deliveries on RQ instead of sending inline
    redis_url: Optional[str] = None  # Defaults to transport.redis_url
    queue_name: str = "duel-notifications"


class LoggingConfig(BaseModel):
    level: str = "INFO"


class AppConfig(BaseModel):
    transport: TransportConfig = Field(default_factory=TransportConfig)
    engine: EngineConfig = Field(default_factory=EngineConfig)
    preferences: NotificationPreferences = Field(default_factory=NotificationPreferences)
    delivery: DeliveryConfig = Field(default_factory=DeliveryConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)


def _parse_bool(value: str) -> bool:
    return value.strip().lower() in ("1", "true", "yes", "on")


def load_config(config_path: str = "config.yaml") -> AppConfig:
    # If not found at relative path (e.g. running from root), try the copy next to the package
    if not os.path.exists(config_path):
        base_dir = os.path.dirname(os.path.abspath(__file__))
        config_path = os.path.join(base_dir, "..", "config.yaml")

    with open(config_path, "r") as f:
        data = yaml.safe_load(f) or {}

    # Empty sections ("transport:" with nothing under it) load as None
    data = {section: value for section, value in data.items() if value is not None}

    # Allow env var override for Redis URL
    env_redis_url = os.environ.get("REDIS_URL")
    if env_redis_url:
        data['transport'] = data.get('transport') or {}
        data['transport']['redis_url'] = env_redis_url

    # Allow env var override for the signed-in user
    env_user_id = os.environ.get("DUEL_USER_ID")
    if env_user_id:
        data['engine'] = data.get('engine') or {}
        data['engine']['user_id'] = env_user_id

    env_log_level = os.environ.get("LOG_LEVEL")
    if env_log_level:
        data['logging'] = data.get('logging') or {}
        data['logging']['level'] = env_log_level.upper()

    env_async_queue = os.environ.get("NOTIFICATION_USE_ASYNC_QUEUE")
    if env_async_queue:
        data['delivery'] = data.get('delivery') or {}
        data['delivery']['use_async_queue'] = _parse_bool(env_async_queue)

    return AppConfig(**data)
