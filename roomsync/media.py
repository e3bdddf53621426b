"""Avatar download and on-disk caching for ``mxc://`` locators."""

import asyncio
import hashlib
import logging
import os
import tempfile
from pathlib import Path
from typing import Any, Callable, Optional, Set
from urllib.parse import urlparse

from nio import Api, DownloadResponse

from roomsync import metrics
from roomsync.dispatch import ContextDispatcher

logger = logging.getLogger(__name__)

ReadyCallback = Callable[[str], Any]


class CancellationToken:
    """Flag a consumer flips when it no longer wants a pending result."""

    def __init__(self) -> None:
        self.cancelled = False

    def cancel(self) -> None:
        self.cancelled = True


class MediaResolver:
    """Resolves avatar locators to local files.

    Downloads run as background tasks; completed paths are handed to the
    caller's callback on the dispatcher's context unless the caller's
    CancellationToken was cancelled in the meantime.

    Attributes:
        manager: Anything exposing the active ``session`` (or None)
        dispatcher: Context the ready callbacks run on
        cache_dir: Directory holding downloaded avatars
    """

    def __init__(self, manager: Any, dispatcher: ContextDispatcher, media_cache_dir: str):
        self.manager = manager
        self.dispatcher = dispatcher
        self.cache_dir = Path(media_cache_dir) / "avatars"
        self._tasks: Set[asyncio.Task] = set()

    def http_url(self, locator: Optional[str]) -> Optional[str]:
        """Translate an ``mxc://`` locator into its download URL.

        Returns:
            The http(s) URL, or None when the locator cannot be resolved
        """
        if not locator or not locator.startswith("mxc://"):
            return None

        session = self.manager.session
        homeserver = session.client.homeserver if session is not None else None
        url = Api.mxc_to_http(locator, homeserver)
        if not url or urlparse(url).scheme not in ("http", "https"):
            return None
        return url

    def cache_path(self, url: str) -> Path:
        return self.cache_dir / hashlib.sha256(url.encode("utf-8")).hexdigest()

    def resolve(
        self,
        locator: Optional[str],
        on_ready: ReadyCallback,
        use_cache: bool = True,
        token: Optional[CancellationToken] = None,
    ) -> Optional[str]:
        """Resolve a locator to a local file.

        Args:
            locator: ``mxc://`` media locator
            on_ready: Called with the file path once a download completes
            use_cache: Return an existing cached file instead of downloading
            token: Cancelling it suppresses the pending ``on_ready`` call

        Returns:
            Path of the cached file when available right away, else None
        """
        url = self.http_url(locator)
        if url is None:
            logger.debug(f"Unresolvable media locator: {locator}")
            metrics.media_requests_total.labels(result="unresolvable").inc()
            return None

        path = self.cache_path(url)
        if use_cache and path.exists():
            metrics.media_requests_total.labels(result="cache_hit").inc()
            return str(path)

        task = asyncio.create_task(
            self._download(locator, path, on_ready, token or CancellationToken()),
            name=f"media-{path.name[:12]}",
        )
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return None

    def resolve_user_avatar(
        self,
        user_id: str,
        on_ready: ReadyCallback,
        use_cache: bool = True,
        token: Optional[CancellationToken] = None,
    ) -> Optional[str]:
        session = self.manager.session
        user = session.user(user_id) if session is not None else None
        if user is None or not user.avatar_url:
            return None
        return self.resolve(user.avatar_url, on_ready, use_cache=use_cache, token=token)

    def resolve_room_avatar(
        self,
        room_id: str,
        on_ready: ReadyCallback,
        use_cache: bool = True,
        token: Optional[CancellationToken] = None,
    ) -> Optional[str]:
        session = self.manager.session
        room = session.room(room_id) if session is not None else None
        if room is None or not room.room_avatar_url:
            return None
        return self.resolve(room.room_avatar_url, on_ready, use_cache=use_cache, token=token)

    async def close(self) -> None:
        """Cancel outstanding downloads."""
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    async def _download(
        self,
        locator: str,
        path: Path,
        on_ready: ReadyCallback,
        token: CancellationToken,
    ) -> None:
        session = self.manager.session
        if session is None:
            logger.debug(f"No session to download {locator}")
            metrics.media_requests_total.labels(result="failure").inc()
            return

        try:
            response = await session.client.download(mxc=locator)
        except Exception as e:
            logger.error(f"Error downloading {locator}: {e}")
            metrics.media_requests_total.labels(result="failure").inc()
            return

        if not isinstance(response, DownloadResponse):
            logger.error(f"Error downloading {locator}: {response}")
            metrics.media_requests_total.labels(result="failure").inc()
            return

        try:
            await asyncio.to_thread(self._write_file, path, response.body)
        except OSError as e:
            logger.error(f"Failed to cache {locator} at {path}: {e}")
            metrics.media_requests_total.labels(result="failure").inc()
            return

        if token.cancelled:
            logger.debug(f"Download of {locator} finished after cancellation")
            metrics.media_requests_total.labels(result="cancelled").inc()
            return

        metrics.media_requests_total.labels(result="downloaded").inc()
        self.dispatcher.post(on_ready, str(path))

    def _write_file(self, path: Path, body: bytes) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        fd, temp_path = tempfile.mkstemp(dir=path.parent, prefix=".avatar-", suffix=".tmp")
        try:
            with os.fdopen(fd, "wb") as f:
                f.write(body)
            os.replace(temp_path, path)
        except OSError:
            if os.path.exists(temp_path):
                os.unlink(temp_path)
            raise
