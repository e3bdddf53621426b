"""Domain models shared by the synchronization core."""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Mapping, Optional

from pydantic import BaseModel, ConfigDict, Field


class SessionState(str, Enum):
    """Lifecycle state of the session. Only advances forward except on logout."""

    NEEDS_CREDENTIALS = "needs_credentials"
    NOT_STARTED = "not_started"
    STARTING = "starting"
    STARTED = "started"

    @property
    def metric_value(self) -> int:
        return _STATE_ORDER.index(self)


_STATE_ORDER = [
    SessionState.NEEDS_CREDENTIALS,
    SessionState.NOT_STARTED,
    SessionState.STARTING,
    SessionState.STARTED,
]


class Direction(str, Enum):
    """Direction in which a timeline event arrived."""

    FORWARDS = "forwards"  # live sync
    BACKWARDS = "backwards"  # pagination


class StartErrorKind(str, Enum):
    """Why a session start attempt did not reach STARTED."""

    INVALID_STATE = "invalid_state"
    MISSING_CREDENTIALS = "missing_credentials"
    STORE_ATTACH = "store_attach"
    SESSION_START = "session_start"


class Credentials(BaseModel):
    """Minimal credential triple needed to resume a Matrix session."""

    model_config = ConfigDict(frozen=True)

    home_server: str = Field(..., min_length=1)
    user_id: str = Field(..., min_length=1)
    access_token: str = Field(..., min_length=1, repr=False)

    def to_storage_dict(self) -> Dict[str, str]:
        return {
            "homeServer": self.home_server,
            "userId": self.user_id,
            "token": self.access_token,
        }

    @classmethod
    def from_storage_dict(cls, data: Mapping[str, Any]) -> Optional["Credentials"]:
        """Build credentials from the stored mapping.

        Returns:
            Credentials if all three keys hold non-empty strings, otherwise None
        """
        home_server = data.get("homeServer")
        user_id = data.get("userId")
        token = data.get("token")
        if not all(isinstance(v, str) and v for v in (home_server, user_id, token)):
            return None
        return cls(home_server=home_server, user_id=user_id, access_token=token)


@dataclass(frozen=True)
class TimelineEvent:
    """A room timeline event as held by the event cache."""

    event_id: str
    room_id: str
    type: str
    direction: Direction
    sender: str = ""
    origin_server_ts: int = 0
    content: Dict[str, Any] = field(default_factory=dict)
    source: Dict[str, Any] = field(default_factory=dict, repr=False, compare=False)

    @classmethod
    def from_source(
        cls, room_id: str, source: Mapping[str, Any], direction: Direction
    ) -> "TimelineEvent":
        """Build an event from its raw client-server API JSON."""
        content = source.get("content")
        return cls(
            event_id=str(source.get("event_id") or ""),
            room_id=str(source.get("room_id") or room_id or ""),
            type=str(source.get("type") or ""),
            direction=direction,
            sender=str(source.get("sender") or ""),
            origin_server_ts=int(source.get("origin_server_ts") or 0),
            content=dict(content) if isinstance(content, Mapping) else {},
            source=dict(source),
        )

    @classmethod
    def from_nio(cls, room_id: str, event: Any, direction: Direction) -> "TimelineEvent":
        """Build an event from a matrix-nio event object."""
        source = dict(getattr(event, "source", None) or {})
        # Prefer the parsed event_id when the raw source lacks one
        if not source.get("event_id") and getattr(event, "event_id", None):
            source["event_id"] = event.event_id
        return cls.from_source(room_id, source, direction)


@dataclass
class StartResult:
    """Outcome of a session start attempt."""

    ok: bool
    error_kind: Optional[StartErrorKind] = None
    retryable: bool = False
    message: str = ""

    @classmethod
    def success(cls) -> "StartResult":
        return cls(ok=True)

    @classmethod
    def failure(
        cls, kind: StartErrorKind, message: str, retryable: bool = False
    ) -> "StartResult":
        return cls(ok=False, error_kind=kind, retryable=retryable, message=message)


@dataclass
class PaginationResult:
    """Outcome of a pagination request."""

    delivered: int = 0
    reached_start: bool = False
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None
