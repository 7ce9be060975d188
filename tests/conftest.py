"""
Pytest configuration and fixtures for keyval-client.

Provides cross-platform event loop configuration and test utilities.
"""

import asyncio
import sys

import pytest

# Set policy *before* pytest-asyncio creates any loops
if sys.platform.startswith("win"):
    asyncio.set_event_loop_policy(asyncio.WindowsSelectorEventLoopPolicy())


@pytest.fixture
def base_url():
    """Base URL used by HTTP-level tests."""
    return "http://kv.test/api/keyval"


@pytest.fixture
def mock_config(base_url):
    """Client configuration with short reconnect delays for testing."""
    return {
        "base_url": base_url,
        "timeout": 5,
        "stream_reconnect_delay": 10,
        "poll_reconnect_delay": 10,
        "poll_interval": 10,
    }
