"""Display-ready room state for room listings.

``RoomSummary`` is a pure projection of a nio ``MatrixRoom``; every read is
side-effect free. ``RoomSummaryList`` keeps one summary per room id,
reacting to the core's notifications, and answers the questions a room
list view asks: order, rows, selection, unread markers.
"""

import logging
from dataclasses import dataclass, field, replace
from typing import Any, Dict, List, Optional

from roomsync.dispatch import ContextDispatcher
from roomsync.models import Direction, SessionState, TimelineEvent
from roomsync.observers import EventBus, Subscription, Topic

logger = logging.getLogger(__name__)

DEFAULT_TOPIC = "No topic set"

INVITE_WEIGHT = 0
GROUP_WEIGHT = 50
DIRECT_WEIGHT = 70


@dataclass(frozen=True)
class MemberEntry:
    user_id: str
    display_name: Optional[str] = None
    avatar_url: Optional[str] = None

    @property
    def label(self) -> str:
        return self.display_name or self.user_id


@dataclass(frozen=True)
class AvatarTarget:
    """Whose avatar represents a room: ``kind`` is "room" or "user"."""

    kind: str
    id: str


@dataclass(frozen=True)
class RoomSummary:
    room_id: str
    name: str = ""
    canonical_alias: str = ""
    topic: str = ""
    avatar_url: str = ""
    members: List[MemberEntry] = field(default_factory=list)
    invited: bool = False
    unread: bool = False

    @classmethod
    def from_room(cls, room: Any, invited: bool = False, unread: bool = False) -> "RoomSummary":
        """Project a nio MatrixRoom (or anything with the same attributes)."""
        members = [
            MemberEntry(
                user_id=user.user_id,
                display_name=user.display_name,
                avatar_url=user.avatar_url,
            )
            for user in room.users.values()
        ]
        return cls(
            room_id=room.room_id,
            name=room.name or "",
            canonical_alias=room.canonical_alias or "",
            topic=room.topic or "",
            avatar_url=room.room_avatar_url or "",
            members=members,
            invited=invited,
            unread=unread,
        )

    @property
    def member_count(self) -> int:
        return len(self.members)

    @property
    def sort_weight(self) -> int:
        if self.invited:
            return INVITE_WEIGHT
        if self.member_count <= 2:
            return DIRECT_WEIGHT
        return GROUP_WEIGHT

    def display_name(self, my_user_id: str) -> str:
        """Room name, else canonical alias, else the other members' names."""
        if self.name:
            return self.name
        if self.canonical_alias:
            return self.canonical_alias
        return ", ".join(
            member.label for member in self.members if member.user_id != my_user_id
        )

    def avatar_target(self, my_user_id: str) -> Optional[AvatarTarget]:
        """Pick the avatar shown for the room.

        Without a room avatar, a room of at most two members shows the other
        participant's avatar. Everything else uses the room avatar.
        """
        if not self.avatar_url and self.member_count <= 2:
            for member in self.members:
                if member.user_id != my_user_id:
                    return AvatarTarget("user", member.user_id)
            return None
        return AvatarTarget("room", self.room_id)

    def member_label(self) -> str:
        count = self.member_count
        if count <= 1:
            return "Empty room"
        if count == 2:
            return "Direct chat"
        return f"{count} members"

    def subtitle(self) -> str:
        return f"{self.member_label()}\n{self.topic or DEFAULT_TOPIC}"

    def sort_key(self, my_user_id: str) -> tuple:
        return (self.sort_weight, self.display_name(my_user_id))


class RoomSummaryList:
    """Room listing keyed by room id and kept current from bus notifications.

    Attributes:
        manager: Lifecycle manager used to (un)subscribe rooms
        selected_room_id: Room currently selected by the user, if any
    """

    def __init__(self, manager: Any, bus: EventBus, dispatcher: ContextDispatcher):
        self.manager = manager
        self.bus = bus
        self.dispatcher = dispatcher
        self.selected_room_id: Optional[str] = None
        self._entries: Dict[str, RoomSummary] = {}
        self._subscriptions: List[Subscription] = []

    def attach(self) -> None:
        """Subscribe to the core's notifications."""
        if not self._subscriptions:
            self._subscriptions = self.bus.attach(self)

    def detach(self) -> None:
        for subscription in self._subscriptions:
            subscription.unsubscribe()
        self._subscriptions = []

    @property
    def my_user_id(self) -> str:
        session = self.manager.session
        return session.my_user_id if session is not None else ""

    def __len__(self) -> int:
        return len(self._entries)

    def get(self, room_id: str) -> Optional[RoomSummary]:
        return self._entries.get(room_id)

    def arranged(self) -> List[RoomSummary]:
        """Summaries ordered by sort weight, then display name."""
        my_user_id = self.my_user_id
        return sorted(self._entries.values(), key=lambda entry: entry.sort_key(my_user_id))

    def row(self, index: int) -> Optional[RoomSummary]:
        rows = self.arranged()
        if index < 0 or index >= len(rows):
            logger.debug(f"Row {index} exceeds room list size {len(rows)}")
            return None
        return rows[index]

    def index_of(self, room_id: str) -> Optional[int]:
        for index, entry in enumerate(self.arranged()):
            if entry.room_id == room_id:
                return index
        return None

    def search_placeholder(self) -> str:
        count = len(self._entries)
        return f"Search {count} room" + ("" if count == 1 else "s")

    def connection_status(self) -> str:
        state = self.manager.state
        if state == SessionState.STARTED:
            return self.my_user_id
        if state == SessionState.STARTING:
            return "Authenticating..."
        return "Not authenticated"

    def select(self, room_id: str) -> Optional[RoomSummary]:
        """Make a room the active selection and clear its unread marker."""
        entry = self._entries.get(room_id)
        if entry is None:
            logger.debug(f"Cannot select unknown room {room_id}")
            return None

        self.selected_room_id = room_id
        if entry.unread:
            entry = self._entries[room_id] = replace(entry, unread=False)
        self.dispatcher.post(self.bus.publish, Topic.DID_SELECT_ROOM, entry)
        return entry

    def select_row(self, index: int) -> Optional[RoomSummary]:
        entry = self.row(index)
        if entry is None:
            logger.warning(f"Selected row {index} invalid")
            return None
        return self.select(entry.room_id)

    # Notification handlers

    def did_login(self, session: Any) -> None:
        for room in session.rooms:
            self.did_join_room(room)

    def did_join_room(self, room: Any) -> None:
        existing = self._entries.get(room.room_id)
        self._entries[room.room_id] = RoomSummary.from_room(
            room,
            invited=self._is_invited(room.room_id),
            unread=existing.unread if existing else False,
        )
        self.manager.subscribe_to_room(room.room_id)
        logger.debug(f"{self.search_placeholder()} after join of {room.room_id}")

    def did_part_room(self, room: Any) -> None:
        self._entries.pop(room.room_id, None)
        if self.selected_room_id == room.room_id:
            self.selected_room_id = None
        self.manager.unsubscribe_from_room(room.room_id)
        logger.debug(f"{self.search_placeholder()} after part of {room.room_id}")

    def did_update_room(self, room: Any) -> None:
        existing = self._entries.get(room.room_id)
        if existing is None:
            return
        self._entries[room.room_id] = RoomSummary.from_room(
            room, invited=self._is_invited(room.room_id), unread=existing.unread
        )

    def did_room_message(self, event: TimelineEvent, direction: Direction, state: Any) -> None:
        if direction != Direction.FORWARDS or event.room_id == self.selected_room_id:
            return
        entry = self._entries.get(event.room_id)
        if entry is not None and not entry.unread:
            self._entries[event.room_id] = replace(entry, unread=True)

    def will_logout(self) -> None:
        self._entries.clear()
        self.selected_room_id = None

    def _is_invited(self, room_id: str) -> bool:
        session = self.manager.session
        return session is not None and session.is_invited(room_id)
