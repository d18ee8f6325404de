"""
WebSocket endpoint of the chat core.

Authenticates the connection, registers it with the hub, then maps every
inbound frame to a hub operation. Domain errors go back to the originating
connection only, as ``error`` frames.
"""
import asyncio
import inspect
import json
import logging
from typing import Any, Awaitable, Callable, Dict, Optional, Type, Union
from uuid import uuid4
from fastapi import APIRouter, Depends, Query, WebSocket, WebSocketDisconnect
from pydantic import ValidationError as SchemaValidationError
from api.dependencies import get_ws_hub, validate_websocket_token
from api.schemas import (
    ACTIONS, WSAddReaction, WSAuthenticate, WSCommand, WSDeleteMessage, WSEditMessage,
    WSFetchHistory, WSJoinRoom, WSLeaveRoom, WSMarkRead, WSPong, WSRemoveReaction,
    WSRestoreMessage, WSSendMessage, WSStartTyping, WSStopTyping, WSUpdatePresence,
    parse_command
)
from core.audit_logger import audit_logger
from core.exceptions import CapacityError, ChatError
from core.metrics import websocket_frames_received_total
from realtime.hub import ChatHub

logger = logging.getLogger(__name__)

websocket_router = APIRouter()

# Close codes
CLOSE_AUTH_FAILED = 4001
CLOSE_CONNECTION_LIMIT = 4002

AUTH_TIMEOUT_SECONDS = 10.0

Handler = Callable[[ChatHub, str, Any], Union[Awaitable[Any], Any]]

HANDLERS: Dict[Type[WSCommand], Handler] = {
    WSJoinRoom: lambda hub, cid, c: hub.join_room(cid, c.room_id),
    WSLeaveRoom: lambda hub, cid, c: hub.leave_room(cid, c.room_id),
    WSSendMessage: lambda hub, cid, c: hub.send_message(
        cid, c.room_id, c.content, c.type,
        thread_id=c.thread_id,
        reply_to_id=c.reply_to_id,
        mentions=c.mentions,
        priority=c.priority
    ),
    WSEditMessage: lambda hub, cid, c: hub.edit_message(cid, c.message_id, c.content),
    WSDeleteMessage: lambda hub, cid, c: hub.delete_message(cid, c.message_id),
    WSRestoreMessage: lambda hub, cid, c: hub.restore_message(cid, c.message_id),
    WSAddReaction: lambda hub, cid, c: hub.add_reaction(cid, c.message_id, c.emoji),
    WSRemoveReaction: lambda hub, cid, c: hub.remove_reaction(cid, c.message_id, c.emoji),
    WSMarkRead: lambda hub, cid, c: hub.mark_read(cid, c.message_id),
    WSStartTyping: lambda hub, cid, c: hub.start_typing(cid, c.room_id),
    WSStopTyping: lambda hub, cid, c: hub.stop_typing(cid, c.room_id),
    WSUpdatePresence: lambda hub, cid, c: hub.update_presence(cid, c.status, c.custom_message),
    WSFetchHistory: lambda hub, cid, c: hub.fetch_history(cid, c.room_id, c.limit, c.include_deleted),
    WSPong: lambda hub, cid, c: hub.pong(cid),
}


async def dispatch(hub: ChatHub, connection_id: str, command: WSCommand) -> Any:
    """Run the hub operation for one parsed command."""
    handler = HANDLERS[type(command)]
    result = handler(hub, connection_id, command)
    if inspect.isawaitable(result):
        result = await result
    return result


async def _read_token(websocket: WebSocket) -> Optional[str]:
    """Wait for an ``authenticate`` frame when no query token was given."""
    try:
        raw = await asyncio.wait_for(websocket.receive_text(), AUTH_TIMEOUT_SECONDS)
        command = parse_command(json.loads(raw))
    except (asyncio.TimeoutError, json.JSONDecodeError, SchemaValidationError, TypeError):
        return None
    if not isinstance(command, WSAuthenticate):
        return None
    return command.token


@websocket_router.websocket("/ws")
async def websocket_endpoint(
    websocket: WebSocket,
    token: Optional[str] = Query(None, description="JWT access token"),
    hub: ChatHub = Depends(get_ws_hub)
):
    """
    WebSocket endpoint for real-time chat.

    Connection Flow:
        1. Client connects: ws://host/ws?token={jwt}, or connects bare and
           sends {"action": "authenticate", "token": "..."} first
        2. Server replies with a ``connected`` frame
        3. Client sends actions: joinRoom, sendMessage, startTyping, ...
        4. Server pushes events: receiveMessage, userTyping, presenceChanged, ...
        5. Server pings every 30s; silent connections are closed after 40s

    Close Codes:
        - 4001: Authentication failed
        - 4002: Connection limit reached (max 5 per user)
        - 1001: Connection timeout (no heartbeat)
    """
    await websocket.accept()
    transport = websocket.app.state.transport
    users = websocket.app.state.users
    connection_id = uuid4().hex

    if token is None:
        token = await _read_token(websocket)
    user = await validate_websocket_token(token, users)
    if user is None:
        audit_logger.log_auth_failure(connection_id, "Invalid or missing token")
        await websocket.close(code=CLOSE_AUTH_FAILED, reason="Authentication failed")
        return

    transport.attach(connection_id, websocket)
    try:
        await hub.connect(user.id, connection_id)
    except CapacityError:
        transport.detach(connection_id)
        await websocket.close(code=CLOSE_CONNECTION_LIMIT, reason="Connection limit reached")
        return

    logger.info(
        f"WebSocket connection established for user {user.username}",
        extra={"connection_id": connection_id, "user_id": user.id}
    )

    try:
        while True:
            data = await websocket.receive_text()
            hub.pong(connection_id)
            await handle_frame(hub, connection_id, data)

    except WebSocketDisconnect:
        logger.info(f"User {user.username} disconnected", extra={"connection_id": connection_id})
    except Exception as e:
        logger.error(f"WebSocket error for user {user.id}: {e}", extra={"connection_id": connection_id})
    finally:
        transport.detach(connection_id)
        await hub.disconnect(connection_id)


async def handle_frame(hub: ChatHub, connection_id: str, data: str) -> None:
    """Decode, validate and dispatch one frame, reporting errors to the sender."""
    action = None
    try:
        frame = json.loads(data)
        if not isinstance(frame, dict):
            await hub.send_error(connection_id, "Frame must be a JSON object", "INVALID_MESSAGE")
            return
        action = frame.get("action")
        if action not in ACTIONS:
            await hub.send_error(connection_id, f"Unknown action: {action}", "INVALID_ACTION")
            return
        websocket_frames_received_total.labels(action=action).inc()
        command = parse_command(frame)
        if isinstance(command, WSAuthenticate):
            await hub.send_error(connection_id, "Already authenticated", "INVALID_ACTION", action)
            return
        await dispatch(hub, connection_id, command)

    except json.JSONDecodeError:
        await hub.send_error(connection_id, "Invalid JSON format", "INVALID_JSON")
    except SchemaValidationError as e:
        await hub.send_error(connection_id, _first_error(e), "INVALID_MESSAGE", action)
    except ChatError as e:
        await hub.send_error(connection_id, e.message, e.code, action)
    except Exception:
        logger.exception("Error processing WebSocket message", extra={"connection_id": connection_id})
        await hub.send_error(connection_id, "Internal server error", "INTERNAL_ERROR", action)


def _first_error(error: SchemaValidationError) -> str:
    first = error.errors()[0]
    location = ".".join(str(part) for part in first.get("loc", ()) if part)
    return f"{location}: {first.get('msg')}" if location else first.get("msg", "Invalid message")
