"""Session lifecycle controller for real-time task chat rooms.

This module owns all chat state: the connection registry, room membership,
and per-room message history. Every mutation goes through ``SessionManager``
so there is a single writer for each structure.

Key features:
    - Rooms keyed by task ID, created implicitly on first join
    - Identity bound to a connection at its first successful join
    - Bounded history per room (most recent 100 messages by default)
    - History snapshot sent to the joiner only
    - Presence events (user_joined / user_left) broadcast to the room
    - Optional eviction of empty, idle rooms

Concurrency:
    Designed for a single asyncio event loop. Each operation applies its
    whole state transition synchronously before queueing any events, so no
    observer can see a partially updated room. It is NOT thread-safe.
"""
import logging
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple, Union

from .broadcaster import Broadcaster
from .registry import Connection, ConnectionRegistry
from .rooms import DEFAULT_HISTORY_LIMIT, RoomTable
from .schemas import ChatMessage, EventType, Identity

logger = logging.getLogger(__name__)

IdentityInput = Union[Identity, Mapping[str, Any], None]


# =============================================================================
# Errors
# =============================================================================


class ChatRequestError(ValueError):
    """A client request was rejected. Reported to the originating connection only."""

    def __init__(self, message: str, missing: Sequence[str] = ()) -> None:
        super().__init__(message)
        self.missing = list(missing)


class InvalidJoinRequest(ChatRequestError):
    """join_room without a task ID or a complete user identity."""


class InvalidMessageRequest(ChatRequestError):
    """chat_message without a task ID or a complete sender identity."""


def _field(value: Any) -> str:
    # Anything but a string counts as missing
    return value if isinstance(value, str) else ""


def _body(value: Any) -> str:
    if value is None:
        return ""
    return value if isinstance(value, str) else str(value)


def _parse_identity(value: IdentityInput, prefix: str) -> Tuple[Optional[Identity], List[str]]:
    """Validate an identity payload, returning it and the names of missing fields."""
    if isinstance(value, Identity):
        value = value.model_dump()
    if not value or not isinstance(value, Mapping):
        return None, [f"{prefix} object"]

    auid = _field(value.get("auid"))
    name = _field(value.get("name"))
    missing = []
    if not auid:
        missing.append(f"{prefix}.auid")
    if not name:
        missing.append(f"{prefix}.name")
    if missing:
        return None, missing
    return Identity(auid=auid, name=name), []


# =============================================================================
# Session Manager
# =============================================================================


class SessionManager:
    """Orchestrates join / message / leave / disconnect for all rooms.

    Note:
        A module-level instance (``manager``) is shared by every WebSocket
        handler so all connections see the same rooms.
    """

    def __init__(self, history_limit: int = DEFAULT_HISTORY_LIMIT) -> None:
        self.connections = ConnectionRegistry()
        self.rooms = RoomTable(history_limit=history_limit)
        self.broadcaster = Broadcaster(self.rooms)
        # None means empty rooms are kept forever
        self.idle_eviction_seconds: Optional[float] = None

    def configure(
        self,
        history_limit: int = DEFAULT_HISTORY_LIMIT,
        idle_eviction_seconds: Optional[float] = None,
    ) -> None:
        """Apply room settings. Only allowed before any room exists."""
        if self.rooms.rooms():
            raise RuntimeError("Cannot reconfigure SessionManager with live rooms")
        self.rooms = RoomTable(history_limit=history_limit)
        self.broadcaster = Broadcaster(self.rooms)
        self.idle_eviction_seconds = idle_eviction_seconds

    # =========================================================================
    # Connections
    # =========================================================================

    def connect(self, websocket: Any = None) -> Connection:
        """Register a newly accepted transport and return its Connection."""
        connection = self.connections.register(websocket)
        logger.info(f"[Manager] Connection {connection.id} opened ({len(self.connections)} live)")
        return connection

    # =========================================================================
    # Lifecycle operations
    # =========================================================================

    def join(self, connection: Connection, room_id: Optional[str], user: IdentityInput) -> Identity:
        """Join ``connection`` to ``room_id``.

        Broadcasts ``user_joined`` to the whole room (joiner included), then
        sends the room history to the joiner only.

        Args:
            connection: The requesting connection.
            room_id: Task ID of the room.
            user: Identity payload with ``auid`` and ``name``.

        Returns:
            The identity bound to the connection. This is the first identity
            the connection ever joined with, which may differ from ``user``.

        Raises:
            InvalidJoinRequest: If the task ID or identity fields are missing.
        """
        room_id = _field(room_id)
        identity, missing = _parse_identity(user, "user")
        if not room_id:
            missing.insert(0, "taskId")
        if missing:
            raise InvalidJoinRequest(
                f"Failed to join room. Missing: {', '.join(missing)}.", missing
            )

        bound = connection.bind_identity(identity)
        self.rooms.add_member(room_id, connection, bound)
        connection.rooms.add(room_id)
        history = self.rooms.history_of(room_id)

        logger.info(
            f"[Manager] User {bound.name} (AUID: {bound.auid}, connection {connection.id}) "
            f"joined room {room_id} ({len(self.rooms.members_of(room_id))} member(s))"
        )

        self.broadcaster.broadcast(room_id, {
            "type": EventType.USER_JOINED.value,
            "taskId": room_id,
            "user": bound.model_dump(),
        })
        self.broadcaster.send(connection, {
            "type": EventType.CHAT_HISTORY.value,
            "taskId": room_id,
            "messages": [msg.model_dump(mode="json") for msg in history],
        })
        return bound

    def send_message(
        self,
        connection: Connection,
        room_id: Optional[str],
        sender: IdentityInput,
        body: Optional[str] = None,
        files: Optional[List[Any]] = None,
    ) -> ChatMessage:
        """Create a message, append it to history, and broadcast it to the room.

        The sender receives its own message through the broadcast.

        Raises:
            InvalidMessageRequest: If the task ID or sender fields are missing.
        """
        room_id = _field(room_id)
        identity, missing = _parse_identity(sender, "sender")
        if not room_id:
            missing.insert(0, "taskId")
        if missing:
            raise InvalidMessageRequest(
                f"Cannot send message. Missing: {', '.join(missing)}.", missing
            )

        message = ChatMessage(
            sender=identity,
            message=_body(body),
            files=list(files or []),
            taskId=room_id,
        )
        self.rooms.append_message(room_id, message)
        delivered = self.broadcaster.broadcast(room_id, message.to_event())

        preview = message.message[:50] + ("..." if len(message.message) > 50 else "")
        logger.info(
            f"[Manager] Message {message.id} to room {room_id} by {identity.name}: "
            f"{preview!r}, files={[f.get('name') for f in message.files if isinstance(f, Mapping)]}, "
            f"delivered to {delivered}"
        )
        return message

    def leave(self, connection: Connection, room_id: Optional[str]) -> bool:
        """Remove ``connection`` from one room and broadcast ``user_left``.

        Returns:
            True if the connection was a member, False otherwise (no-op).
        """
        room_id = _field(room_id)
        member = self.rooms.remove_member(room_id, connection) if room_id else None
        connection.rooms.discard(room_id)
        if member is None:
            return False

        logger.info(f"[Manager] User {member.identity.name} left room {room_id}")
        self.broadcaster.broadcast(room_id, self._user_left_event(room_id, member.identity))
        return True

    def disconnect(self, connection: Connection) -> List[str]:
        """Remove a connection from every room it joined.

        All memberships are removed before any ``user_left`` event is queued,
        and the connection is closed first, so it receives nothing further.
        Empty rooms keep their history.

        Returns:
            The room IDs the connection was removed from.
        """
        identity = connection.identity or connection.placeholder_identity()
        self.connections.unregister(connection)

        left: List[str] = []
        for room_id in sorted(connection.rooms):
            if self.rooms.remove_member(room_id, connection) is not None:
                left.append(room_id)
        connection.rooms.clear()

        for room_id in left:
            self.broadcaster.broadcast(room_id, self._user_left_event(room_id, identity))
            logger.info(
                f"[Manager] User {identity.name} (AUID: {identity.auid}) auto-left room "
                f"{room_id} due to disconnect"
            )

        logger.info(f"[Manager] Connection {connection.id} closed ({len(self.connections)} live)")
        return left

    @staticmethod
    def _user_left_event(room_id: str, identity: Identity) -> Dict[str, Any]:
        return {
            "type": EventType.USER_LEFT.value,
            "taskId": room_id,
            "user": identity.model_dump(),
        }

    def send_error(self, connection: Connection, message: str) -> bool:
        """Send a point-to-point ``error_message`` to one connection."""
        return self.broadcaster.send(connection, {
            "type": EventType.ERROR_MESSAGE.value,
            "message": message,
        })

    # =========================================================================
    # Queries
    # =========================================================================

    def get_history(self, room_id: str) -> Tuple[ChatMessage, ...]:
        return self.rooms.history_of(room_id)

    def get_message_count(self, room_id: str) -> int:
        return len(self.rooms.history_of(room_id))

    def get_room_size(self, room_id: str) -> int:
        return len(self.rooms.members_of(room_id))

    # =========================================================================
    # Maintenance
    # =========================================================================

    def evict_idle_rooms(self, now: Optional[float] = None) -> List[str]:
        """Drop empty rooms idle for longer than ``idle_eviction_seconds``.

        Does nothing when the policy is disabled (the default).
        """
        if self.idle_eviction_seconds is None:
            return []
        evicted = self.rooms.idle_rooms(self.idle_eviction_seconds, now)
        for room_id in evicted:
            self.rooms.drop_room(room_id)
        if evicted:
            logger.info(f"[Manager] Evicted {len(evicted)} idle room(s): {evicted}")
        return evicted

    def clear(self) -> None:
        """Drop all connections and rooms (for testing)."""
        self.connections.clear()
        self.rooms.clear()


# Global singleton instance used by all WebSocket handlers
manager = SessionManager()
