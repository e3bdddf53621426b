"""Per-room live timeline subscriptions feeding the event cache."""

import asyncio
import logging
from typing import Any, Dict, Optional

from roomsync.core.config import Settings
from roomsync.event_cache import EventCache, InsertOutcome
from roomsync.models import Direction, PaginationResult, TimelineEvent
from roomsync.observers import EventBus, Topic
from roomsync.session import MatrixSession, TimelineListener

logger = logging.getLogger(__name__)


class RoomSubscriptionManager:
    """Routes every event of subscribed rooms through the event cache.

    For each subscribed room a listener is registered on the session's live
    timeline and an initial backward pagination is issued. Events that make
    it into the cache are announced as ``did_room_message`` followed by
    ``did_update_room``.

    Attributes:
        session: Started MatrixSession
        cache: Event cache shared with the lifecycle manager
        bus: Event bus for notifications
        page_size: Events requested per backward pagination
    """

    def __init__(
        self,
        session: MatrixSession,
        cache: EventCache,
        bus: EventBus,
        settings: Settings,
    ):
        self.session = session
        self.cache = cache
        self.bus = bus
        self.page_size = settings.PAGINATION_PAGE_SIZE
        self.drop_cache_on_part = settings.EVENT_CACHE_DROP_ON_PART
        self._listeners: Dict[str, TimelineListener] = {}
        self._paginations: Dict[str, asyncio.Task] = {}

    def is_subscribed(self, room_id: str) -> bool:
        return room_id in self._listeners

    def subscribe_to_room(self, room_id: str) -> bool:
        """Start following a room's live timeline.

        Args:
            room_id: Room to subscribe to

        Returns:
            True if the room is (now) subscribed, False if the session
            does not know the room
        """
        room = self.session.room(room_id)
        if room is None:
            logger.debug(f"Cannot subscribe to unknown room {room_id}")
            return False

        if room_id in self._listeners:
            return True

        timeline = self.session.live_timeline(room_id)
        self._listeners[room_id] = timeline.listen_to_events(self._on_timeline_event)

        timeline.reset_pagination()
        self._start_pagination(room_id)
        logger.debug(f"Subscribed to {room_id}")
        return True

    def unsubscribe_from_room(self, room_id: str) -> None:
        """Stop following a room, cancel its pagination and apply retention."""
        listener = self._listeners.pop(room_id, None)
        timeline = self.session.timeline(room_id)
        if listener is not None and timeline is not None:
            timeline.remove_listener(listener)

        task = self._paginations.pop(room_id, None)
        if task is not None and not task.done():
            task.cancel()

        if self.drop_cache_on_part:
            self.cache.drop_room(room_id)
        logger.debug(f"Unsubscribed from {room_id}")

    async def load_more(self, room_id: str, count: Optional[int] = None) -> PaginationResult:
        """Paginate further back in a subscribed room."""
        if room_id not in self._listeners:
            logger.debug(f"load_more for unsubscribed room {room_id}")
            return PaginationResult(error="room not subscribed")

        previous = self._paginations.get(room_id)
        if previous is not None and not previous.done():
            # One pagination per room at a time
            await asyncio.wait([previous])

        timeline = self.session.live_timeline(room_id)
        return await timeline.paginate(count or self.page_size, Direction.BACKWARDS, only_from_store=False)

    async def close(self) -> None:
        """Unsubscribe from every room and wait for cancelled paginations."""
        tasks = [task for task in self._paginations.values() if not task.done()]
        for room_id in list(self._listeners):
            self.unsubscribe_from_room(room_id)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._paginations.clear()

    def _start_pagination(self, room_id: str) -> None:
        timeline = self.session.live_timeline(room_id)
        task = asyncio.create_task(
            timeline.paginate(self.page_size, Direction.BACKWARDS, only_from_store=False),
            name=f"paginate-{room_id}",
        )
        self._paginations[room_id] = task
        task.add_done_callback(lambda t, rid=room_id: self._pagination_done(rid, t))

    def _pagination_done(self, room_id: str, task: asyncio.Task) -> None:
        if self._paginations.get(room_id) is task:
            del self._paginations[room_id]
        if task.cancelled():
            logger.debug(f"Pagination for {room_id} cancelled")
            return
        exc = task.exception()
        if exc is not None:
            logger.error(f"Pagination for {room_id} failed", exc_info=exc)

    def _on_timeline_event(self, event: TimelineEvent, direction: Direction, state: Any) -> None:
        if not event.room_id:
            logger.debug(f"Dropping event {event.event_id} without room id")
            return

        outcome = self.cache.insert(event, direction)
        if outcome != InsertOutcome.CACHED:
            return

        self.bus.publish(Topic.DID_ROOM_MESSAGE, event, direction, state)

        room = state if state is not None else self.session.room(event.room_id)
        if room is None:
            logger.debug(f"No room state for {event.room_id}, room list not refreshed")
            return
        self.bus.publish(Topic.DID_UPDATE_ROOM, room)
