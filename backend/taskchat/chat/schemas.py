"""Pydantic models and event names for the task chat protocol.

Field names follow the wire format used by the chat clients (camelCase
``taskId``), so ``model_dump(mode="json")`` can be sent as-is.
"""
import itertools
import secrets
import string
import time
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List

from pydantic import BaseModel, ConfigDict, Field


class EventType(str, Enum):
    """Event names carried in the ``type`` field of every WebSocket frame.

    Client -> server: JOIN_ROOM, CHAT_MESSAGE, LEAVE_ROOM.
    Server -> client: CHAT_HISTORY, USER_JOINED, CHAT_MESSAGE, USER_LEFT,
    ERROR_MESSAGE.
    """
    JOIN_ROOM = "join_room"
    LEAVE_ROOM = "leave_room"
    CHAT_MESSAGE = "chat_message"
    CHAT_HISTORY = "chat_history"
    USER_JOINED = "user_joined"
    USER_LEFT = "user_left"
    ERROR_MESSAGE = "error_message"


class Identity(BaseModel):
    """Externally asserted participant identity. Not authenticated."""
    model_config = ConfigDict(frozen=True)

    auid: str = Field(..., description="Application user ID")
    name: str = Field(..., description="Display name")


_BASE36 = string.digits + string.ascii_lowercase
_message_seq = itertools.count(1)


def new_message_id() -> str:
    """Return a message id unique for the lifetime of the process.

    The sequence number keeps ids distinct even when two messages share a
    millisecond.
    """
    suffix = "".join(secrets.choice(_BASE36) for _ in range(6))
    return f"msg-{int(time.time() * 1000)}-{next(_message_seq)}-{suffix}"


class ChatMessage(BaseModel):
    """A chat message as stored in history and broadcast to a room.

    Attributes:
        id: Unique message identifier.
        sender: Identity asserted by the sending client.
        message: Text body, possibly empty.
        files: Attachment metadata produced by the upload endpoint. Carried
            as opaque payload, never inspected or mutated here.
        taskId: Room the message belongs to.
        timestamp: Server receive time (UTC).
    """
    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=new_message_id, description="Unique message ID")
    sender: Identity = Field(..., description="Sender identity")
    message: str = Field(default="", description="Message text")
    files: List[Any] = Field(default_factory=list, description="Attachments")
    taskId: str = Field(..., description="Room (task) ID")
    timestamp: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc),
        description="Server timestamp",
    )

    def to_event(self) -> Dict[str, Any]:
        """Wire representation used for live broadcast."""
        return {"type": EventType.CHAT_MESSAGE.value, **self.model_dump(mode="json")}
