"""Unit tests for avatar resolution and caching."""

import asyncio
from types import SimpleNamespace
from unittest.mock import MagicMock

import pytest
from nio import DownloadResponse

from roomsync.media import CancellationToken, MediaResolver
from tests.factories import ALICE, make_room, make_user

LOCATOR = "mxc://example.org/abc123"


@pytest.fixture
def session(mock_client):
    """Create a session double resolving one user and one room."""
    alice = make_user(ALICE, "Alice", avatar_url=LOCATOR)
    room = make_room("!r", members=[alice], avatar_url="mxc://example.org/room")
    return SimpleNamespace(
        client=mock_client,
        user=lambda user_id: alice if user_id == ALICE else None,
        room=lambda room_id: room if room_id == "!r" else None,
    )


@pytest.fixture
def resolver(session, dispatcher, tmp_path):
    return MediaResolver(SimpleNamespace(session=session), dispatcher, str(tmp_path / "media"))


@pytest.fixture
def download_ok(mock_client):
    response = MagicMock(spec=DownloadResponse)
    response.body = b"\x89PNG"
    mock_client.download.return_value = response
    return response


async def finish_downloads(resolver, dispatcher):
    await asyncio.gather(*list(resolver._tasks))
    await dispatcher.drain()


class TestHttpUrl:
    @pytest.mark.asyncio
    async def test_mxc_translated(self, resolver):
        url = resolver.http_url(LOCATOR)

        assert url.startswith("https://example.org/_matrix/")
        assert url.endswith("/example.org/abc123")

    @pytest.mark.asyncio
    @pytest.mark.parametrize("locator", [None, "", "https://example.org/a.png", "mxc://"])
    async def test_unresolvable(self, resolver, locator):
        assert resolver.http_url(locator) is None


class TestResolve:
    """Test cache hits and background downloads."""

    @pytest.mark.asyncio
    async def test_cache_hit_returns_path(self, resolver, mock_client):
        path = resolver.cache_path(resolver.http_url(LOCATOR))
        path.parent.mkdir(parents=True)
        path.write_bytes(b"cached")
        on_ready = MagicMock()

        result = resolver.resolve(LOCATOR, on_ready)

        assert result == str(path)
        on_ready.assert_not_called()
        mock_client.download.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_download_and_notify(self, resolver, mock_client, dispatcher, download_ok):
        on_ready = MagicMock()

        assert resolver.resolve(LOCATOR, on_ready) is None
        await finish_downloads(resolver, dispatcher)

        path = resolver.cache_path(resolver.http_url(LOCATOR))
        mock_client.download.assert_awaited_once_with(mxc=LOCATOR)
        on_ready.assert_called_once_with(str(path))
        assert path.read_bytes() == b"\x89PNG"

    @pytest.mark.asyncio
    async def test_cancelled_token_suppresses_callback(self, resolver, dispatcher, download_ok):
        """A cancelled consumer is not called back but the file is still cached."""
        on_ready = MagicMock()
        token = CancellationToken()

        resolver.resolve(LOCATOR, on_ready, token=token)
        token.cancel()
        await finish_downloads(resolver, dispatcher)

        on_ready.assert_not_called()
        assert resolver.cache_path(resolver.http_url(LOCATOR)).exists()

    @pytest.mark.asyncio
    async def test_bypass_cache(self, resolver, mock_client, dispatcher, download_ok):
        path = resolver.cache_path(resolver.http_url(LOCATOR))
        path.parent.mkdir(parents=True)
        path.write_bytes(b"stale")

        assert resolver.resolve(LOCATOR, MagicMock(), use_cache=False) is None
        await finish_downloads(resolver, dispatcher)

        assert path.read_bytes() == b"\x89PNG"

    @pytest.mark.asyncio
    async def test_download_error_response(self, resolver, mock_client, dispatcher):
        mock_client.download.return_value = SimpleNamespace(message="M_NOT_FOUND")
        on_ready = MagicMock()

        resolver.resolve(LOCATOR, on_ready)
        await finish_downloads(resolver, dispatcher)

        on_ready.assert_not_called()
        assert not resolver.cache_path(resolver.http_url(LOCATOR)).exists()

    @pytest.mark.asyncio
    async def test_download_exception(self, resolver, mock_client, dispatcher):
        mock_client.download.side_effect = ConnectionError("unreachable")
        on_ready = MagicMock()

        resolver.resolve(LOCATOR, on_ready)
        await finish_downloads(resolver, dispatcher)

        on_ready.assert_not_called()

    @pytest.mark.asyncio
    async def test_unresolvable_locator(self, resolver, mock_client):
        assert resolver.resolve("https://example.org/a.png", MagicMock()) is None
        assert resolver._tasks == set()


class TestSessionLookups:
    @pytest.mark.asyncio
    async def test_user_avatar(self, resolver, mock_client, dispatcher, download_ok):
        on_ready = MagicMock()

        resolver.resolve_user_avatar(ALICE, on_ready)
        await finish_downloads(resolver, dispatcher)

        mock_client.download.assert_awaited_once_with(mxc=LOCATOR)
        on_ready.assert_called_once()

    @pytest.mark.asyncio
    async def test_room_avatar(self, resolver, mock_client, dispatcher, download_ok):
        resolver.resolve_room_avatar("!r", MagicMock())
        await finish_downloads(resolver, dispatcher)

        mock_client.download.assert_awaited_once_with(mxc="mxc://example.org/room")

    @pytest.mark.asyncio
    async def test_unknown_targets(self, resolver, mock_client):
        assert resolver.resolve_user_avatar("@nobody:example.org", MagicMock()) is None
        assert resolver.resolve_room_avatar("!missing", MagicMock()) is None
        assert resolver._tasks == set()

    @pytest.mark.asyncio
    async def test_close_cancels_downloads(self, resolver, mock_client):
        async def hang(**kwargs):
            await asyncio.Event().wait()

        mock_client.download.side_effect = hang
        resolver.resolve(LOCATOR, MagicMock())
        await asyncio.sleep(0)

        await resolver.close()

        assert resolver._tasks == set()
