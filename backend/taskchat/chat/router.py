"""Chat router providing the WebSocket event channel and a history endpoint.

This module provides:
    - GET /chat/{task_id}/history: Current history snapshot for a room
    - WebSocket /ws/chat: Room-scoped real-time chat

The WebSocket protocol is JSON frames carrying a ``type`` field.

Client -> server:
    - join_room: {taskId, user: {auid, name}}
    - chat_message: {taskId, sender: {auid, name}, message, files}
    - leave_room: {taskId}

Server -> client:
    - chat_history: {taskId, messages} (joiner only)
    - user_joined: {taskId, user} (whole room)
    - chat_message: full message (whole room, sender included)
    - user_left: {taskId, user} (remaining members)
    - error_message: {message} (originating connection only)

A rejected or malformed request never closes the connection.
"""
import asyncio
import json
import logging
from typing import Any, Dict

from fastapi import APIRouter, WebSocket, WebSocketDisconnect
from fastapi.responses import JSONResponse

from .manager import ChatRequestError, manager
from .registry import Connection
from .schemas import EventType

logger = logging.getLogger(__name__)

router = APIRouter(tags=["chat"])


@router.get("/chat/{task_id}/history")
async def get_history(task_id: str) -> JSONResponse:
    """Return the retained messages of a room, oldest first.

    Args:
        task_id: The room (task) ID.

    Returns:
        JSON with taskId and messages array (empty for unknown rooms).
    """
    messages = manager.get_history(task_id)
    return JSONResponse({
        "taskId": task_id,
        "messages": [msg.model_dump(mode="json") for msg in messages],
    })


def dispatch(connection: Connection, data: Dict[str, Any]) -> None:
    """Apply one client event to the session manager.

    Raises:
        ChatRequestError: If the event is invalid. Reported to the sender only.
    """
    event_type = data.get("type")

    if event_type == EventType.JOIN_ROOM.value:
        manager.join(connection, data.get("taskId"), data.get("user"))
        return

    if event_type == EventType.CHAT_MESSAGE.value:
        files = data.get("files")
        if files is not None and not isinstance(files, list):
            raise ChatRequestError("Cannot send message. 'files' must be a list.")
        manager.send_message(
            connection,
            data.get("taskId"),
            data.get("sender"),
            data.get("message"),
            files,
        )
        return

    if event_type == EventType.LEAVE_ROOM.value:
        manager.leave(connection, data.get("taskId"))
        return

    raise ChatRequestError(f"Unknown event type: {event_type!r}")


@router.websocket("/ws/chat")
async def websocket_chat_endpoint(websocket: WebSocket) -> None:
    """WebSocket endpoint for real-time task chat.

    Handles the complete lifecycle of one client connection:

    Protocol Flow:
        1. Client connects (no rooms joined, no identity bound)
        2. Client sends join_room for one or more task rooms
           -> room receives user_joined, client receives chat_history
        3. Client sends chat_message
           -> room (sender included) receives chat_message
        4. Client sends leave_room, or disconnects
           -> remaining members receive user_left

    Args:
        websocket: The WebSocket connection.
    """
    await websocket.accept()
    connection = manager.connect(websocket)
    writer = asyncio.create_task(connection.pump())
    logger.info(f"[WS] Connection accepted: {connection.id}")

    try:
        while True:
            frame = await websocket.receive()
            if frame["type"] == "websocket.disconnect":
                raise WebSocketDisconnect(frame.get("code", 1000), frame.get("reason"))
            raw = frame.get("text")
            if raw is None:
                manager.send_error(connection, "Invalid message format: expected JSON text.")
                continue
            try:
                data = json.loads(raw)
            except json.JSONDecodeError:
                manager.send_error(connection, "Invalid message format: expected JSON.")
                continue
            if not isinstance(data, dict):
                manager.send_error(connection, "Invalid message format: expected a JSON object.")
                continue

            logger.debug("[WS] Connection %s received: type=%s", connection.id, data.get("type", "?"))

            try:
                dispatch(connection, data)
            except ChatRequestError as e:
                logger.warning(f"[WS] Rejected {data.get('type')!r} from {connection.id}: {e}")
                manager.send_error(connection, str(e))
            except Exception as e:
                logger.exception(f"[WS] Error handling {data.get('type')!r} from {connection.id}")
                manager.send_error(connection, f"Server socket error: {e}.")

    except WebSocketDisconnect as e:
        logger.info(f"[WS] Connection {connection.id} disconnected (code={e.code})")
    finally:
        manager.disconnect(connection)
        writer.cancel()
        try:
            await writer
        except asyncio.CancelledError:
            pass
