#!/usr/bin/env python3
"""
Test suite configuration and utilities.

All tests can be run with standard Python tools:

    # Run all tests (unit + Redis if available)
    python -m pytest tests/ -v

    # Run only unit tests (no Redis required)
    python -m pytest tests/ -v -m "not redis"

    # Using unittest
    python -m unittest discover tests -v

Redis Setup:
    Tests marked ``redis`` talk to a real server. Point them at one with:

    export TEST_REDIS_URL="redis://localhost:6379/1"
"""

import os
from typing import Optional

TEST_REDIS_URL = os.environ.get("TEST_REDIS_URL", "redis://localhost:6379/1")

# Check if we should force skip Redis tests
SKIP_REDIS_TESTS = os.environ.get("SKIP_REDIS_TESTS", "false").lower() == "true"


def is_redis_available() -> bool:
    """Check if the test Redis server answers a PING."""
    if SKIP_REDIS_TESTS:
        return False

    from redis import Redis
    from redis.exceptions import RedisError

    try:
        return bool(Redis.from_url(TEST_REDIS_URL, socket_connect_timeout=1).ping())
    except RedisError:
        return False


# Global flag to cache Redis availability check
_redis_available: Optional[bool] = None


def check_redis_available() -> bool:
    """Cached check for Redis availability."""
    global _redis_available
    if _redis_available is None:
        _redis_available = is_redis_available()
    return _redis_available
