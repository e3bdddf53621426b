"""
Pytest configuration and fixtures for the roomsync test suite.

This module provides:
- Settings isolated to a temporary data directory
- A mocked nio AsyncClient
- Event bus and a started context dispatcher
"""

from unittest.mock import AsyncMock, MagicMock

import pytest
import pytest_asyncio
from nio import AsyncClient

from roomsync.core.config import Settings
from roomsync.dispatch import ContextDispatcher
from roomsync.observers import EventBus
from tests.factories import ME


@pytest.fixture
def test_settings(tmp_path) -> Settings:
    """Create settings rooted in a temporary directory.

    The background sync loop is disabled so tests drive syncs explicitly.
    """
    return Settings(
        _env_file=None,
        DATA_DIR=str(tmp_path / "data"),
        SYNC_IN_BACKGROUND=False,
    )


@pytest.fixture
def mock_client():
    """Create mock AsyncClient with no rooms."""
    client = MagicMock(spec=AsyncClient)
    client.user_id = ME
    client.homeserver = "https://example.org"
    client.access_token = "syt_test_token_123456789"
    client.rooms = {}
    client.invited_rooms = {}
    client.sync = AsyncMock()
    client.room_messages = AsyncMock()
    client.logout = AsyncMock()
    client.close = AsyncMock()
    client.download = AsyncMock()
    return client


@pytest.fixture
def bus() -> EventBus:
    return EventBus()


@pytest_asyncio.fixture
async def dispatcher():
    """Create a dispatcher bound to the test's event loop."""
    dispatcher = ContextDispatcher()
    dispatcher.start()
    yield dispatcher
    await dispatcher.stop()
