#!/usr/bin/env python3
"""
Notification Channels

Delivery targets for queued duel notifications. Every channel implements the
same small interface, so the dispatcher never needs to know where a
notification ends up:

- WebhookChannel: JSON POST to an external endpoint
- InAppChannel: hands the notification to the in-app feed (logged)

Custom channels can be registered in code or loaded from installed modules
listed in NOTIFICATION_CHANNEL_MODULES ("package.module:ClassName").

Usage:
    from notification.channels import NotificationChannelFactory

    channel = NotificationChannelFactory.get_channel('webhook')
    channel.send(recipient, subject, body, metadata)
"""

from abc import ABC, abstractmethod
from typing import Dict, Any
from datetime import datetime, timezone
import importlib
import inspect
import ipaddress
import logging
import os
import socket
import urllib.parse

import requests
from tenacity import (
    retry,
    stop_after_attempt,
    wait_fixed,
    retry_if_exception,
    before_sleep_log
)

logger = logging.getLogger(__name__)

WEBHOOK_TIMEOUT_SECONDS = 30


def _validate_webhook_url(url: str) -> bool:
    """
    Validate webhook URL to prevent SSRF attacks.

    Checks:
    - Scheme is http or https
    - Hostname resolves to public IP (not private/loopback)
    """
    parsed = urllib.parse.urlparse(url)

    if parsed.scheme not in ('http', 'https'):
        logger.error(f"Invalid URL scheme: {parsed.scheme}")
        return False

    if not parsed.hostname:
        logger.error("URL missing hostname")
        return False

    try:
        addrinfo = socket.getaddrinfo(parsed.hostname, None)
    except socket.gaierror:
        logger.error(f"Could not resolve hostname: {parsed.hostname}")
        return False

    for _, _, _, _, sockaddr in addrinfo:
        ip = ipaddress.ip_address(sockaddr[0])
        if ip.is_private or ip.is_loopback or ip.is_reserved or ip.is_link_local:
            logger.error(f"URL resolves to private/reserved IP: {ip}")
            return False

    return True


def _is_dry_run_mode() -> bool:
    """Check if notification channels should run in dry-run (log-only) mode."""
    return os.environ.get('NOTIFICATION_DRY_RUN', '').lower() in ('true', '1', 'yes')


def _is_retryable_error(exc: Exception) -> bool:
    """Retry timeouts, connection errors and 5xx responses; never 4xx."""
    if isinstance(exc, (requests.Timeout, requests.ConnectionError)):
        return True
    if isinstance(exc, requests.HTTPError):
        response = getattr(exc, 'response', None)
        return response is None or response.status_code >= 500
    return False


class NotificationChannel(ABC):
    """
    Abstract base class for all notification channels.

    send() never raises: failures are logged and reported as False so the
    dispatcher can leave the notification pending for the next pass.
    """

    @property
    @abstractmethod
    def channel_type(self) -> str:
        """Return the channel type identifier."""
        pass

    @abstractmethod
    def send(self, recipient: str, subject: str, body: str, metadata: Dict[str, Any]) -> bool:
        """
        Send a notification through this channel.

        Args:
            recipient: Target recipient (format depends on channel)
            subject: Notification title
            body: Notification body
            metadata: Serialized PendingNotification and delivery context

        Returns:
            True if sent successfully, False otherwise
        """
        pass


class WebhookChannel(NotificationChannel):
    """Generic webhook notification channel."""

    @property
    def channel_type(self) -> str:
        return 'webhook'

    def send(self, recipient: str, subject: str, body: str, metadata: Dict[str, Any]) -> bool:
        """Send webhook POST request."""
        webhook_url = recipient
        if not webhook_url or not _validate_webhook_url(webhook_url):
            logger.error(f"Invalid or unsafe webhook URL: {webhook_url}")
            return False

        payload = {
            'type': 'duel_notification',
            'subject': subject,
            'body': body,
            'timestamp': datetime.now(timezone.utc).isoformat(),
            'notification': metadata.get('notification', {}),
        }

        parsed = urllib.parse.urlparse(webhook_url)
        safe_url = f"{parsed.scheme}://{parsed.hostname}{parsed.path}"

        if _is_dry_run_mode():
            logger.info(f"[DRY RUN] Would POST '{subject}' to {safe_url}")
            return True

        try:
            self._post(webhook_url, payload)
        except requests.RequestException as e:
            logger.error(f"Failed to send webhook to {safe_url}: {e}")
            return False

        logger.info(f"Webhook sent to {safe_url}")
        return True

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_fixed(1),
        retry=retry_if_exception(_is_retryable_error),
        before_sleep=before_sleep_log(logger, logging.WARNING),
        reraise=True
    )
    def _post(self, url: str, payload: Dict[str, Any]) -> None:
        headers = {
            'Content-Type': 'application/json',
            'User-Agent': 'DuelNotify-Notification-Service/1.0'
        }
        response = requests.post(url, json=payload, headers=headers, timeout=WEBHOOK_TIMEOUT_SECONDS)
        response.raise_for_status()


class InAppChannel(NotificationChannel):
    """In-app notification channel (surfaced by the client's notification feed)."""

    @property
    def channel_type(self) -> str:
        return 'in_app'

    def send(self, recipient: str, subject: str, body: str, metadata: Dict[str, Any]) -> bool:
        logger.info(f"[IN_APP] User: {recipient}, Title: {subject}")
        return True


class NotificationChannelFactory:
    """
    Factory for creating notification channels.

    Supports:
    1. Built-in channels (webhook, in_app)
    2. Installed modules listed in NOTIFICATION_CHANNEL_MODULES
    3. Direct registration in code
    """

    _channels: Dict[str, type] = {
        'webhook': WebhookChannel,
        'in_app': InAppChannel,
    }

    _custom_channels_loaded = False

    @classmethod
    def _load_custom_channels(cls):
        if cls._custom_channels_loaded:
            return

        channel_modules = os.environ.get('NOTIFICATION_CHANNEL_MODULES', '')
        for module_path in channel_modules.split(','):
            module_path = module_path.strip()
            if module_path:
                cls._load_channel_from_module(module_path)

        cls._custom_channels_loaded = True

    @classmethod
    def _load_channel_from_module(cls, module_path: str):
        """Load channel classes from an installed module ("pkg.module" or "pkg.module:Class")."""
        module_name, _, class_name = module_path.partition(':')
        try:
            module = importlib.import_module(module_name)
        except ImportError as e:
            logger.error(f"Failed to load custom channel from module {module_path}: {e}")
            return

        if class_name:
            candidates = [getattr(module, class_name, None)]
        else:
            candidates = [obj for _, obj in inspect.getmembers(module, inspect.isclass)]

        for obj in candidates:
            if (inspect.isclass(obj) and issubclass(obj, NotificationChannel)
                    and obj is not NotificationChannel and not inspect.isabstract(obj)):
                channel_type = obj().channel_type
                cls._channels[channel_type] = obj
                logger.info(f"Loaded custom channel '{channel_type}' from {module_path}")

    @classmethod
    def get_channel(cls, channel_type: str) -> NotificationChannel:
        """
        Get a notification channel instance by type.

        Raises:
            ValueError: If channel type is not registered
        """
        cls._load_custom_channels()

        channel_class = cls._channels.get(channel_type.lower())
        if not channel_class:
            raise ValueError(f"Unknown channel type: {channel_type}. "
                           f"Available: {', '.join(cls._channels.keys())}")

        return channel_class()

    @classmethod
    def register_channel(cls, channel_type: str, channel_class: type):
        """Register a new notification channel type."""
        if not (inspect.isclass(channel_class) and issubclass(channel_class, NotificationChannel)):
            raise ValueError("Channel class must extend NotificationChannel")

        cls._channels[channel_type.lower()] = channel_class
        logger.info(f"Registered new channel type: {channel_type}")

    @classmethod
    def list_channels(cls) -> list:
        """List all available channel types."""
        cls._load_custom_channels()
        return list(cls._channels.keys())
