"""
Pytest configuration and fixtures.

This file provides pytest-specific configuration and fixtures.
For standard test utilities, see tests/__init__.py
"""

import pytest

from notification.channels import NotificationChannelFactory


def pytest_configure(config):
    """Configure pytest markers."""
    config.addinivalue_line(
        "markers", "redis: marks tests as requiring a Redis server (deselect with '-m \"not redis\"')"
    )


@pytest.fixture(autouse=True)
def restore_channel_registry():
    """Keep channel registrations made by one test from leaking into the next."""
    channels = dict(NotificationChannelFactory._channels)
    loaded = NotificationChannelFactory._custom_channels_loaded
    yield
    NotificationChannelFactory._channels = channels
    NotificationChannelFactory._custom_channels_loaded = loaded


@pytest.fixture
def redis_url():
    """URL of a live Redis server; skips the test when none is reachable."""
    from tests import check_redis_available, TEST_REDIS_URL

    if not check_redis_available():
        pytest.skip("Redis not available (set TEST_REDIS_URL)")
    return TEST_REDIS_URL
