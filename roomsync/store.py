"""Local event stores attached to a session.

``MemoryStore`` keeps nothing across restarts (cache disabled).
``FileStore`` persists the sync token and the most recent event sources of
each room so a restart can resume incremental sync and serve store-only
pagination.
"""

import json
import logging
import os
import tempfile
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

from roomsync.core.exceptions import StoreAttachError

logger = logging.getLogger(__name__)

STORE_FILE_NAME = "sync_store.json"


class LocalStore(ABC):
    """Base class for local event stores."""

    since_token: Optional[str] = None

    @abstractmethod
    def open(self) -> None:
        """Open the store. Raises StoreAttachError on failure."""

    @abstractmethod
    def append_event(self, room_id: str, source: Dict[str, Any]) -> None:
        """Remember a live (forward) event source for a room."""

    @abstractmethod
    def room_events(self, room_id: str) -> List[Dict[str, Any]]:
        """Stored event sources for a room, oldest first."""

    @abstractmethod
    def commit(self) -> None:
        """Flush pending changes."""

    @abstractmethod
    def delete_all_data(self) -> None:
        """Remove everything the store has persisted."""


class MemoryStore(LocalStore):
    """No-op store used when caching is disabled."""

    def open(self) -> None:
        logger.info("Cache disabled, using in-memory no-op store")

    def append_event(self, room_id: str, source: Dict[str, Any]) -> None:
        pass

    def room_events(self, room_id: str) -> List[Dict[str, Any]]:
        return []

    def commit(self) -> None:
        pass

    def delete_all_data(self) -> None:
        self.since_token = None


class FileStore(LocalStore):
    """JSON file backed store with atomic writes.

    Attributes:
        store_dir: Directory holding the store file
        max_events_per_room: Event sources kept per room (oldest dropped first)
        since_token: Sync token to resume from
    """

    def __init__(self, store_dir: str, max_events_per_room: int = 100):
        """Initialize file store.

        Args:
            store_dir: Directory holding the store file
            max_events_per_room: Event sources kept per room (0 keeps none)
        """
        self.store_dir = Path(store_dir)
        self.store_file = self.store_dir / STORE_FILE_NAME
        self.max_events_per_room = max_events_per_room
        self.since_token: Optional[str] = None
        self._rooms: Dict[str, List[Dict[str, Any]]] = {}
        self._opened = False

    def open(self) -> None:
        """Create the store directory and load existing state.

        Raises:
            StoreAttachError: If the directory cannot be created or the
                store file is unreadable
        """
        try:
            self.store_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise StoreAttachError(f"Cannot create store directory: {e}", str(self.store_dir))

        if self.store_file.exists():
            try:
                with open(self.store_file, "r") as f:
                    state = json.load(f)
            except (IOError, json.JSONDecodeError) as e:
                raise StoreAttachError(f"Cannot read store file: {e}", str(self.store_file))

            if not isinstance(state, dict):
                raise StoreAttachError("Store file is not a JSON object", str(self.store_file))

            self.since_token = state.get("since_token")
            rooms = state.get("rooms") or {}
            self._rooms = {
                room_id: list(events)[-self.max_events_per_room :]
                if self.max_events_per_room
                else []
                for room_id, events in rooms.items()
                if isinstance(events, list)
            }
            logger.info(
                f"Store restored from {self.store_file}: "
                f"since_token={self.since_token[:20] if self.since_token else None}..., "
                f"rooms={len(self._rooms)}, last_commit={state.get('last_commit', 'unknown')}"
            )
        else:
            logger.info(f"Starting with empty store at {self.store_file}")

        self._opened = True

    def append_event(self, room_id: str, source: Dict[str, Any]) -> None:
        if not self.max_events_per_room:
            return
        events = self._rooms.setdefault(room_id, [])
        events.append(source)
        if len(events) > self.max_events_per_room:
            del events[: len(events) - self.max_events_per_room]

    def room_events(self, room_id: str) -> List[Dict[str, Any]]:
        return list(self._rooms.get(room_id, []))

    def commit(self) -> None:
        """Atomically save store state to disk.

        Raises:
            Exception: If state save fails
        """
        if not self._opened:
            logger.debug("Store not opened, skipping commit")
            return

        state_data = {
            "since_token": self.since_token,
            "rooms": self._rooms,
            "last_commit": datetime.now(timezone.utc).isoformat(),
        }

        old_umask = os.umask(0o077)
        try:
            fd, temp_path = tempfile.mkstemp(
                dir=self.store_dir,
                prefix=".tmp_sync_store_",
                suffix=".json",
            )

            try:
                with os.fdopen(fd, "w") as f:
                    json.dump(state_data, f)

                # Atomic rename (prevents corruption if crash during write)
                os.replace(temp_path, self.store_file)
                os.chmod(self.store_file, 0o600)

                logger.debug(
                    f"Store saved to {self.store_file}: "
                    f"since_token={self.since_token[:20] if self.since_token else None}..., "
                    f"rooms={len(self._rooms)}"
                )

            except Exception:
                if os.path.exists(temp_path):
                    os.unlink(temp_path)
                raise

        finally:
            os.umask(old_umask)

    def delete_all_data(self) -> None:
        self.since_token = None
        self._rooms = {}
        if self.store_file.exists():
            self.store_file.unlink()
            logger.info(f"Deleted store file {self.store_file}")
