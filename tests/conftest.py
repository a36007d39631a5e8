"""
Pytest configuration and shared fixtures for relaypool tests.

Provides:
- Event factories (``tests/fixtures/events.py``)
- Fake relays, transports and pool factories (``tests/fixtures/transport.py``)
- Logging configuration
"""

import logging

import pytest


pytest_plugins = [
    "tests.fixtures.events",
    "tests.fixtures.transport",
]


# ============================================================================
# Logging Configuration
# ============================================================================


@pytest.fixture(scope="session", autouse=True)
def setup_logging() -> None:
    """Configure logging for tests."""
    logging.basicConfig(level=logging.DEBUG)
