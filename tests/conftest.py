"""
Pytest configuration for market_finder tests.

This file is automatically loaded by pytest and sets up the test environment.
"""
import os

import pytest

from market_finder import metrics
from market_finder.config import reset_config


@pytest.fixture(scope="session", autouse=True)
def setup_test_environment():
    """Set up test environment variables before any tests run."""
    os.environ["ENVIRONMENT"] = "testing"
    os.environ["REDIS_URL"] = ""
    os.environ["TESTING"] = "true"
    os.environ.pop("GOOGLE_PLACES_API_KEY", None)
    yield
    # Cleanup after all tests
    os.environ.pop("TESTING", None)


@pytest.fixture(autouse=True)
def fresh_state():
    """Each test gets a freshly read config and empty process-local metrics."""
    reset_config()
    metrics.set_redis(None)
    metrics.reset()
    yield
    reset_config()
    metrics.reset()
