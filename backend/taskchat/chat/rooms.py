"""Room membership table and bounded per-room message history.

Pure in-memory data structure with no I/O. Readers always get snapshots
(tuples), never live views, so a caller iterating members while another
handler removes one cannot observe a half-updated room.

Rooms are created implicitly on first use and only removed by
``drop_room`` (used by the optional idle eviction policy).
"""
import logging
import time
from collections import deque
from typing import Callable, Deque, Dict, List, NamedTuple, Optional, Tuple

from .registry import Connection
from .schemas import ChatMessage, Identity

logger = logging.getLogger(__name__)

# Default number of messages retained per room
DEFAULT_HISTORY_LIMIT = 100


class Member(NamedTuple):
    """A (connection, identity) pair inside a room."""
    connection: Connection
    identity: Identity


class RoomTable:
    """Room ID -> members, and room ID -> most recent messages."""

    def __init__(
        self,
        history_limit: int = DEFAULT_HISTORY_LIMIT,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if history_limit <= 0:
            raise ValueError("history_limit must be positive")
        self.history_limit = history_limit
        self._clock = clock

        # room_id -> {connection_id -> Member}, insertion ordered
        self._members: Dict[str, Dict[str, Member]] = {}

        # room_id -> bounded history, oldest first
        self._history: Dict[str, Deque[ChatMessage]] = {}

        # room_id -> clock value of the last join/leave/message
        self._last_activity: Dict[str, float] = {}

    def _ensure_room(self, room_id: str) -> None:
        if room_id not in self._members:
            self._members[room_id] = {}
            self._history[room_id] = deque(maxlen=self.history_limit)
            logger.debug(f"[Rooms] Created room {room_id}")
        self._last_activity[room_id] = self._clock()

    # =========================================================================
    # Membership
    # =========================================================================

    def add_member(self, room_id: str, connection: Connection, identity: Identity) -> bool:
        """Add a member. Returns False if the connection was already a member."""
        self._ensure_room(room_id)
        members = self._members[room_id]
        if connection.id in members:
            return False
        members[connection.id] = Member(connection, identity)
        return True

    def remove_member(self, room_id: str, connection: Connection) -> Optional[Member]:
        """Remove a member and return it, or None if it was not in the room."""
        members = self._members.get(room_id)
        if members is None:
            return None
        removed = members.pop(connection.id, None)
        if removed is not None:
            self._last_activity[room_id] = self._clock()
        return removed

    def members_of(self, room_id: str) -> Tuple[Member, ...]:
        """Snapshot of the room's current members, in join order."""
        return tuple(self._members.get(room_id, {}).values())

    # =========================================================================
    # History
    # =========================================================================

    def append_message(self, room_id: str, message: ChatMessage) -> ChatMessage:
        """Append a message, dropping the oldest entries beyond the limit."""
        self._ensure_room(room_id)
        self._history[room_id].append(message)
        return message

    def history_of(self, room_id: str) -> Tuple[ChatMessage, ...]:
        """Snapshot of the room's history, oldest first."""
        return tuple(self._history.get(room_id, ()))

    # =========================================================================
    # Room lifecycle
    # =========================================================================

    def rooms(self) -> List[str]:
        return list(self._members.keys())

    def last_activity(self, room_id: str) -> Optional[float]:
        return self._last_activity.get(room_id)

    def drop_room(self, room_id: str) -> None:
        """Forget a room entirely (members, history, activity)."""
        self._members.pop(room_id, None)
        self._history.pop(room_id, None)
        self._last_activity.pop(room_id, None)

    def idle_rooms(self, max_idle: float, now: Optional[float] = None) -> List[str]:
        """Rooms with no members whose last activity is older than ``max_idle``."""
        now = self._clock() if now is None else now
        return [
            room_id for room_id, members in self._members.items()
            if not members and now - self._last_activity.get(room_id, now) >= max_idle
        ]

    def clear(self) -> None:
        self._members.clear()
        self._history.clear()
        self._last_activity.clear()
