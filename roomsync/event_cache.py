"""Per-room ordered, deduplicated timeline event cache.

Forward (live) events append to the tail of a room's sequence, backward
(pagination) events prepend to the head, so a sequence always reads
``[oldest paginated ... earlier live ... latest live]``. An event id is
never cached twice for the same room.
"""

import logging
from collections import deque
from enum import Enum
from typing import Deque, Dict, Iterable, List, Optional, Set

from roomsync import metrics
from roomsync.models import Direction, TimelineEvent

logger = logging.getLogger(__name__)


class InsertOutcome(str, Enum):
    CACHED = "cached"
    NO_ROOM = "no_room"
    FILTERED_TYPE = "filtered_type"
    DUPLICATE = "duplicate"
    RETENTION = "retention"


class _RoomSequence:
    """Events of one room with O(1) membership checks and end insertion."""

    __slots__ = ("events", "event_ids")

    def __init__(self) -> None:
        self.events: Deque[TimelineEvent] = deque()
        self.event_ids: Set[str] = set()

    def __len__(self) -> int:
        return len(self.events)

    def append(self, event: TimelineEvent) -> None:
        self.events.append(event)
        self.event_ids.add(event.event_id)

    def prepend(self, event: TimelineEvent) -> None:
        self.events.appendleft(event)
        self.event_ids.add(event.event_id)

    def evict_oldest(self) -> TimelineEvent:
        evicted = self.events.popleft()
        self.event_ids.discard(evicted.event_id)
        return evicted


class EventCache:
    """Mapping of room id to its ordered event sequence.

    Attributes:
        allowed_types: Event types worth caching; everything else is skipped
        max_events_per_room: Retention bound per room, 0 for unbounded
    """

    def __init__(self, allowed_types: Iterable[str], max_events_per_room: int = 0):
        self.allowed_types = frozenset(allowed_types)
        self.max_events_per_room = max_events_per_room
        self._rooms: Dict[str, _RoomSequence] = {}

    def insert(self, event: TimelineEvent, direction: Optional[Direction] = None) -> InsertOutcome:
        """Merge one event into its room's sequence.

        Args:
            event: Event to cache
            direction: Arrival direction; defaults to ``event.direction``

        Returns:
            InsertOutcome.CACHED if the sequence changed, otherwise why not
        """
        direction = direction or event.direction
        outcome = self._insert(event, direction)
        metrics.timeline_events_total.labels(outcome=outcome.value).inc()
        return outcome

    def _insert(self, event: TimelineEvent, direction: Direction) -> InsertOutcome:
        if not event.room_id:
            logger.debug(f"Ignoring event {event.event_id} without room id")
            return InsertOutcome.NO_ROOM

        sequence = self._rooms.get(event.room_id)
        if sequence is None:
            sequence = self._rooms[event.room_id] = _RoomSequence()
            metrics.cached_rooms.set(len(self._rooms))

        if event.type not in self.allowed_types:
            return InsertOutcome.FILTERED_TYPE

        if event.event_id in sequence.event_ids:
            return InsertOutcome.DUPLICATE

        full = bool(self.max_events_per_room) and len(sequence) >= self.max_events_per_room

        if direction == Direction.FORWARDS:
            sequence.append(event)
            if full:
                evicted = sequence.evict_oldest()
                logger.debug(f"Evicted {evicted.event_id} from {event.room_id} (retention)")
        else:
            if full:
                return InsertOutcome.RETENTION
            sequence.prepend(event)

        return InsertOutcome.CACHED

    def events(self, room_id: str) -> List[TimelineEvent]:
        """Cached events of a room, oldest first (empty for unknown rooms)."""
        sequence = self._rooms.get(room_id)
        return list(sequence.events) if sequence else []

    def latest(self, room_id: str) -> Optional[TimelineEvent]:
        sequence = self._rooms.get(room_id)
        if not sequence:
            return None
        return sequence.events[-1]

    def contains(self, room_id: str, event_id: str) -> bool:
        sequence = self._rooms.get(room_id)
        return sequence is not None and event_id in sequence.event_ids

    def has_room(self, room_id: str) -> bool:
        return room_id in self._rooms

    def rooms(self) -> List[str]:
        return list(self._rooms)

    def drop_room(self, room_id: str) -> bool:
        """Forget a room's sequence.

        Returns:
            True if the room was cached
        """
        removed = self._rooms.pop(room_id, None) is not None
        if removed:
            metrics.cached_rooms.set(len(self._rooms))
            logger.debug(f"Dropped event cache for {room_id}")
        return removed

    def clear(self) -> None:
        self._rooms.clear()
        metrics.cached_rooms.set(0)

    def __len__(self) -> int:
        return sum(len(sequence) for sequence in self._rooms.values())
