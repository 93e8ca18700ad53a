"""Connection registry: live connections and the identity bound to each.

Every WebSocket gets a ``Connection`` when it is accepted. Outbound events
are queued on the connection and written by a single writer task, so the
order a connection sees events in is exactly the order they were queued.
"""
import asyncio
import logging
import uuid
from typing import Any, Dict, Optional, Set

from fastapi import WebSocket

from .schemas import Identity

logger = logging.getLogger(__name__)

# Events queued beyond this for a slow reader are dropped
OUTBOX_LIMIT = 100


class Connection:
    """One live client session.

    Attributes:
        id: Server-generated connection ID.
        websocket: Underlying transport (None in unit tests).
        identity: Identity bound at the first successful join, or None.
        rooms: Room IDs this connection has joined and not left.
        outbox: Events waiting to be written to the transport.
    """

    def __init__(
        self,
        websocket: Optional[WebSocket] = None,
        connection_id: Optional[str] = None,
        outbox_limit: int = OUTBOX_LIMIT,
    ) -> None:
        self.id = connection_id or uuid.uuid4().hex
        self.websocket = websocket
        self.rooms: Set[str] = set()
        self.outbox: "asyncio.Queue[Dict[str, Any]]" = asyncio.Queue(maxsize=outbox_limit)
        self.closed = False
        self._identity: Optional[Identity] = None

    @property
    def identity(self) -> Optional[Identity]:
        return self._identity

    def bind_identity(self, identity: Identity) -> Identity:
        """Bind an identity if none is bound yet; return the bound one.

        The first identity wins for the lifetime of the connection.
        """
        if self._identity is None:
            self._identity = identity
        elif self._identity != identity:
            logger.debug(
                f"[Registry] Connection {self.id} keeps identity {self._identity.auid}, "
                f"ignoring {identity.auid}"
            )
        return self._identity

    def placeholder_identity(self) -> Identity:
        """Identity used in presence events for a connection that never joined."""
        short_id = self.id[:6]
        return Identity(auid=f"socket_{short_id}", name=f"User {short_id}")

    def send(self, event: Dict[str, Any]) -> bool:
        """Queue an event for delivery.

        Returns False if the connection is closed or its outbox is full, in
        which case the event is dropped for this connection only.
        """
        if self.closed:
            return False
        try:
            self.outbox.put_nowait(event)
        except asyncio.QueueFull:
            logger.warning(
                f"[Registry] Outbox full for connection {self.id}, dropping {event.get('type')}"
            )
            return False
        return True

    def close(self) -> None:
        """Stop accepting events. Already queued events are dropped by the writer."""
        self.closed = True

    async def pump(self) -> None:
        """Write queued events to the WebSocket until the connection closes.

        Runs as one task per connection. A failed write marks the connection
        closed; the receive loop notices the disconnect and cleans up.
        """
        while True:
            event = await self.outbox.get()
            if self.closed or self.websocket is None:
                continue
            try:
                await self.websocket.send_json(event)
            except Exception as e:
                logger.debug(f"[Registry] Failed to send to connection {self.id}: {e}")
                self.closed = True

    def __repr__(self) -> str:
        who = self._identity.auid if self._identity else "-"
        return f"<Connection {self.id[:8]} identity={who} rooms={sorted(self.rooms)}>"


class ConnectionRegistry:
    """Maps connection IDs to live ``Connection`` objects."""

    def __init__(self) -> None:
        self._connections: Dict[str, Connection] = {}

    def register(self, websocket: Optional[WebSocket] = None) -> Connection:
        connection = Connection(websocket)
        self._connections[connection.id] = connection
        return connection

    def unregister(self, connection: Connection) -> None:
        self._connections.pop(connection.id, None)
        connection.close()

    def __contains__(self, connection: Connection) -> bool:
        return connection.id in self._connections

    def __len__(self) -> int:
        return len(self._connections)

    def clear(self) -> None:
        for connection in list(self._connections.values()):
            connection.close()
        self._connections.clear()
