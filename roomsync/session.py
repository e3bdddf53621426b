"""Remote session adapter over the matrix-nio client.

``MatrixSession`` turns ``/sync`` responses into room join/part
notifications and per-room live timelines, and serves backward pagination
from the homeserver (``/messages``) or from the attached local store.
"""

import asyncio
import logging
from typing import Any, Callable, Dict, List, Optional

from nio import AsyncClient, LogoutResponse, RoomMessagesResponse, SyncResponse
from nio.api import MessageDirection

from roomsync import metrics
from roomsync.core.config import Settings
from roomsync.core.exceptions import SessionStartError, StoreAttachError
from roomsync.models import Direction, PaginationResult, TimelineEvent
from roomsync.observers import EventBus, Topic
from roomsync.store import LocalStore

logger = logging.getLogger(__name__)

TimelineListener = Callable[[TimelineEvent, Direction, Any], None]


class RoomTimeline:
    """Live timeline of one room: listeners plus a backward pagination cursor."""

    def __init__(self, session: "MatrixSession", room_id: str):
        self.session = session
        self.room_id = room_id
        self.reached_start = False
        self._listeners: List[TimelineListener] = []
        self._token: Optional[str] = None
        self._store_cursor: Optional[int] = None

    @property
    def has_listeners(self) -> bool:
        return bool(self._listeners)

    def listen_to_events(self, listener: TimelineListener) -> TimelineListener:
        """Register a listener called with ``(event, direction, room_state)``.

        Returns:
            The listener, usable as a handle for remove_listener()
        """
        self._listeners.append(listener)
        return listener

    def remove_listener(self, listener: TimelineListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def remove_all_listeners(self) -> None:
        self._listeners.clear()

    def deliver(self, event: TimelineEvent) -> None:
        """Hand an event to every listener along with the current room state."""
        state = self.session.room(self.room_id)
        for listener in list(self._listeners):
            try:
                listener(event, event.direction, state)
            except Exception:
                logger.exception(f"Timeline listener failed for {event.event_id} in {self.room_id}")

    def reset_pagination(self) -> None:
        """Restart backward pagination from the live end of the timeline."""
        self._token = self.session.since_token
        self._store_cursor = None
        self.reached_start = False

    async def paginate(
        self,
        count: int,
        direction: Direction = Direction.BACKWARDS,
        only_from_store: bool = False,
    ) -> PaginationResult:
        """Fetch up to ``count`` older events and deliver them backwards.

        Args:
            count: Maximum number of events to deliver
            direction: Only Direction.BACKWARDS is supported; live events
                arrive forwards through sync
            only_from_store: Serve events from the local store without
                contacting the homeserver

        Returns:
            PaginationResult with the number of delivered events
        """
        if direction != Direction.BACKWARDS:
            logger.warning(f"Forward pagination requested for {self.room_id}; live sync covers it")
            return PaginationResult(error="forward pagination is not supported")

        if only_from_store:
            return self._paginate_from_store(count)
        return await self._paginate_from_server(count)

    def _paginate_from_store(self, count: int) -> PaginationResult:
        stored = self.session.store.room_events(self.room_id) if self.session.store else []
        if self._store_cursor is None:
            self._store_cursor = len(stored)

        end = self._store_cursor
        start = max(0, end - count)
        # Newest first, mirroring a /messages chunk in backward direction
        for source in reversed(stored[start:end]):
            self.deliver(TimelineEvent.from_source(self.room_id, source, Direction.BACKWARDS))

        self._store_cursor = start
        delivered = end - start
        metrics.paginations_total.labels(source="store", result="success").inc()
        logger.debug(f"Delivered {delivered} stored events for {self.room_id}")
        return PaginationResult(delivered=delivered, reached_start=start == 0)

    async def _paginate_from_server(self, count: int) -> PaginationResult:
        if self.reached_start:
            return PaginationResult(reached_start=True)
        if not self._token:
            logger.debug(f"No pagination token for {self.room_id}, call reset_pagination() after sync")
            return PaginationResult(error="no pagination token")

        try:
            response = await self.session.client.room_messages(
                self.room_id,
                start=self._token,
                direction=MessageDirection.back,
                limit=count,
            )
        except Exception as e:
            logger.error(f"Pagination request failed for {self.room_id}: {e}")
            metrics.paginations_total.labels(source="server", result="failure").inc()
            return PaginationResult(error=str(e))

        if not isinstance(response, RoomMessagesResponse):
            logger.error(f"Error paginating {self.room_id}: {response}")
            metrics.paginations_total.labels(source="server", result="failure").inc()
            return PaginationResult(error=str(response))

        # Chunk is newest first; prepending each keeps the cache oldest first
        for nio_event in response.chunk:
            self.deliver(TimelineEvent.from_nio(self.room_id, nio_event, Direction.BACKWARDS))

        if not response.chunk or not response.end:
            self.reached_start = True
        self._token = response.end

        metrics.paginations_total.labels(source="server", result="success").inc()
        logger.debug(
            f"Paginated {len(response.chunk)} events for {self.room_id} "
            f"(reached_start={self.reached_start})"
        )
        return PaginationResult(delivered=len(response.chunk), reached_start=self.reached_start)


class MatrixSession:
    """Authenticated session over a nio AsyncClient.

    Attributes:
        client: Matrix AsyncClient instance
        store: Attached local store (None until set_store succeeds)
        since_token: Sync token of the latest processed /sync response
    """

    def __init__(self, client: AsyncClient, bus: EventBus, settings: Settings):
        """Initialize session.

        Args:
            client: Matrix AsyncClient instance with credentials applied
            bus: Event bus receiving join/part notifications
            settings: Application settings
        """
        self.client = client
        self.bus = bus
        self.settings = settings
        self.store: Optional[LocalStore] = None
        self.since_token: Optional[str] = None
        self._timelines: Dict[str, RoomTimeline] = {}
        self._known_rooms: Dict[str, Any] = {}
        self._sync_running = False
        self._sync_task: Optional[asyncio.Task] = None

    @property
    def my_user_id(self) -> str:
        return self.client.user_id

    @property
    def rooms(self) -> List[Any]:
        """Joined and invited rooms, as nio MatrixRoom objects."""
        return list(self.client.rooms.values()) + list(self.client.invited_rooms.values())

    def room(self, room_id: str) -> Optional[Any]:
        return self.client.rooms.get(room_id) or self.client.invited_rooms.get(room_id)

    def is_invited(self, room_id: str) -> bool:
        return room_id in self.client.invited_rooms and room_id not in self.client.rooms

    def user(self, user_id: str) -> Optional[Any]:
        """Find a user (nio MatrixUser) in any room the session knows."""
        for room in self.rooms:
            member = room.users.get(user_id)
            if member is not None:
                return member
        return None

    def timeline(self, room_id: str) -> Optional[RoomTimeline]:
        """Existing timeline for a room, without creating one."""
        return self._timelines.get(room_id)

    def live_timeline(self, room_id: str) -> RoomTimeline:
        timeline = self._timelines.get(room_id)
        if timeline is None:
            timeline = self._timelines[room_id] = RoomTimeline(self, room_id)
        return timeline

    async def set_store(self, store: LocalStore) -> None:
        """Open and attach a local store.

        Raises:
            StoreAttachError: If the store cannot be opened
        """
        try:
            await asyncio.to_thread(store.open)
        except StoreAttachError:
            raise
        except Exception as e:
            raise StoreAttachError(f"Unexpected store failure: {e}")

        self.store = store
        self.since_token = store.since_token

    async def start(self) -> None:
        """Run the initial full-state sync.

        Raises:
            SessionStartError: If no store is attached or the sync fails
        """
        if self.store is None:
            raise SessionStartError("no store attached")

        try:
            response = await self.client.sync(
                timeout=0, full_state=True, since=self.since_token
            )
        except Exception as e:
            metrics.sync_iterations_total.labels(result="failure").inc()
            raise SessionStartError(str(e))

        if not isinstance(response, SyncResponse):
            metrics.sync_iterations_total.labels(result="failure").inc()
            raise SessionStartError(str(response))

        metrics.sync_iterations_total.labels(result="success").inc()
        self.handle_sync(response, announce=False)
        logger.info(f"Session started for {self.my_user_id} with {len(self.rooms)} rooms")

    def handle_sync(self, response: SyncResponse, announce: bool = True) -> None:
        """Route one /sync response into notifications, timelines and the store.

        Args:
            response: Sync response already processed by the nio client
            announce: Publish join/part notifications for room changes
        """
        rooms = response.rooms

        for room_id in list(rooms.join) + list(rooms.invite):
            room = self.room(room_id)
            if room is None:
                continue
            is_new = room_id not in self._known_rooms
            self._known_rooms[room_id] = room
            if is_new and announce:
                logger.info(f"Joined room {room_id}")
                self.bus.publish(Topic.DID_JOIN_ROOM, room)

        for room_id, info in rooms.join.items():
            timeline = self.live_timeline(room_id)
            for nio_event in info.timeline.events:
                event = TimelineEvent.from_nio(room_id, nio_event, Direction.FORWARDS)
                self.store.append_event(room_id, event.source)
                timeline.deliver(event)

        for room_id in rooms.leave:
            room = self._known_rooms.pop(room_id, None)
            timeline = self._timelines.pop(room_id, None)
            if timeline is not None:
                timeline.remove_all_listeners()
            if room is not None and announce:
                logger.info(f"Left room {room_id}")
                self.bus.publish(Topic.DID_PART_ROOM, room)

        self.since_token = response.next_batch
        self.store.since_token = response.next_batch
        try:
            self.store.commit()
        except Exception:
            logger.exception("Failed to commit local store")

    async def sync_once(self) -> bool:
        """Run a single long-poll sync and route its response.

        Returns:
            True if the sync succeeded
        """
        response = await self.client.sync(
            timeout=self.settings.SYNC_TIMEOUT_MS, since=self.since_token
        )
        if not isinstance(response, SyncResponse):
            metrics.sync_iterations_total.labels(result="failure").inc()
            logger.warning(f"Sync failed: {response}")
            return False
        metrics.sync_iterations_total.labels(result="success").inc()
        self.handle_sync(response)
        return True

    async def sync_forever(self) -> None:
        """Run the sync loop with exponential backoff on failures."""
        initial_backoff = max(1, self.settings.SYNC_INITIAL_BACKOFF_SECONDS)
        backoff_max = max(initial_backoff, self.settings.SYNC_MAX_BACKOFF_SECONDS)
        backoff = initial_backoff
        self._sync_running = True

        while self._sync_running:
            try:
                if await self.sync_once():
                    backoff = initial_backoff
                    continue
            except asyncio.CancelledError:
                self._sync_running = False
                raise
            except Exception as e:
                metrics.sync_iterations_total.labels(result="failure").inc()
                if not self._sync_running:
                    break
                logger.warning(f"Sync loop error; retrying in {backoff}s: {e}")

            await asyncio.sleep(backoff)
            backoff = min(backoff * 2, backoff_max)

    def start_background_sync(self) -> None:
        if self._sync_task is not None and not self._sync_task.done():
            return
        self._sync_task = asyncio.create_task(self.sync_forever(), name="matrix-sync")

    async def stop_sync(self) -> None:
        """Signal sync loop shutdown and wait for it to finish."""
        self._sync_running = False
        task, self._sync_task = self._sync_task, None
        if task is not None and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

    async def logout(self) -> bool:
        """Invalidate the access token on the homeserver.

        Returns:
            True if the homeserver confirmed the logout
        """
        await self.stop_sync()
        response = await self.client.logout()
        if isinstance(response, LogoutResponse):
            logger.info(f"Logged out {self.my_user_id}")
            return True
        logger.warning(f"Remote logout failed for {self.my_user_id}: {response}")
        return False

    async def close(self) -> None:
        """Stop syncing and release the client's transport. Idempotent."""
        await self.stop_sync()
        for timeline in self._timelines.values():
            timeline.remove_all_listeners()
        await self.client.close()
        logger.info(f"Matrix session closed for {self.my_user_id}")
