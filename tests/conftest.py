"""Pytest configuration and fixtures shared across all test modules.

Environment defaults are set before any import that might load settings,
so tests never pick up a developer's .env file or a real Redis.
"""

import os

os.environ["TESTING"] = "true"
os.environ.setdefault("APP_ENV", "testing")
os.environ.setdefault("APP_RATE_LIMIT_BACKEND", "memory")
os.environ.setdefault("LOG_LEVEL", "WARNING")

import pytest

from ratekeeper.core import rate_limit


@pytest.fixture(autouse=True)
def reset_cached_limiter():
    """Give every test fresh bucket state."""
    rate_limit._limiter = None
    rate_limit._limiter_config = None
    yield
    rate_limit._limiter = None
    rate_limit._limiter_config = None
