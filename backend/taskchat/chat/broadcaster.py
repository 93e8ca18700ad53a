"""Fan-out of events to the members of a room.

Delivery is fire-and-forget: an event is queued on each member
connection's outbox and written by that connection's writer task. A
connection that is already closing simply misses the event. Queueing is
synchronous, so the order in which a handler calls ``broadcast`` is the
order every member receives events in.
"""
import logging
from typing import Any, Dict, Optional

from .registry import Connection
from .rooms import RoomTable

logger = logging.getLogger(__name__)


class Broadcaster:
    """Delivers events to all current members of a room."""

    def __init__(self, rooms: RoomTable) -> None:
        self._rooms = rooms

    def broadcast(
        self,
        room_id: str,
        event: Dict[str, Any],
        exclude: Optional[Connection] = None,
    ) -> int:
        """Queue ``event`` for every member of ``room_id`` at call time.

        Args:
            room_id: Room to broadcast to.
            event: JSON-serializable event.
            exclude: Optional connection to skip.

        Returns:
            Number of connections the event was queued for.
        """
        delivered = 0
        for member in self._rooms.members_of(room_id):
            if member.connection is exclude:
                continue
            if member.connection.send(event):
                delivered += 1
        logger.debug(
            f"[Broadcast] {event.get('type')} to room {room_id}: {delivered} connection(s)"
        )
        return delivered

    def send(self, connection: Connection, event: Dict[str, Any]) -> bool:
        """Queue ``event`` for a single connection."""
        return connection.send(event)
