"""Chat router providing WebSocket and HTTP endpoints.

This module provides:
    - GET/PATCH /users/me: Own profile
    - GET /users: Contacts with presence and unread direct-message counts
    - /rooms: Create, search, inspect, join and leave rooms
    - /conversations/{ref}/...: Send, page history, mark read, typing, unread
    - WebSocket /ws: Real-time push channel and command interface

A conversation reference in a path is the wire form ``room:<roomId>`` or
``dm:<userA>:<userB>``.

The WebSocket protocol:
    1. Client connects with ``?token=<sessionToken>`` or sends
       ``{type: "authenticate", token}`` as its first frame
       → Server sends: {type: "connected", connectionId, userId}
       The connection is subscribed to every room the user belongs to.
    2. Client sends commands, each a JSON object tagged by ``type``
       (subscribe, unsubscribe, send, history, read, typing, join_room,
       leave_room, create_room, ping). An optional ``requestId`` is echoed
       in the matching ack, history or error event.
    3. Errors never close the socket; they arrive as
       {type: "error", error, detail, requestId?, retryAfterMs?}
    4. On reconnect, ``subscribe`` with ``cursor`` set to the last message id
       seen replays the missed messages with ``isRecovery: true``.
"""
import logging
from typing import Optional

from fastapi import APIRouter, Depends, Query, WebSocket, WebSocketDisconnect
from pydantic import ValidationError

from app.dependencies import get_current_user_id, get_services
from app.errors import ChatError, InvalidInput

from .gateway import WebSocketChannel
from .schemas import (
    AckEvent,
    AuthenticateCommand,
    ConversationRef,
    CreateRoomCommand,
    CreateRoomRequest,
    ErrorEvent,
    HistoryCommand,
    HistoryEvent,
    JoinRoomCommand,
    LeaveRoomCommand,
    MarkReadRequest,
    PingCommand,
    PongEvent,
    ProfileUpdate,
    ReadCommand,
    SendCommand,
    SendMessageRequest,
    SubscribeCommand,
    TypingCommand,
    UnsubscribeCommand,
    client_command_adapter,
)
from .services import ChatServices

logger = logging.getLogger(__name__)

router = APIRouter()


# =============================================================================
# Users
# =============================================================================


@router.get("/users/me")
async def get_me(
    user_id: str = Depends(get_current_user_id),
    services: ChatServices = Depends(get_services),
) -> dict:
    return services.users.require(user_id).model_dump(mode="json")


@router.patch("/users/me")
async def update_me(
    update: ProfileUpdate,
    user_id: str = Depends(get_current_user_id),
    services: ChatServices = Depends(get_services),
) -> dict:
    user = services.users.update_profile(user_id, update.displayName, update.avatarRef)
    return user.model_dump(mode="json")


@router.get("/users")
async def list_contacts(
    q: Optional[str] = Query(None, description="Filter by display name or email"),
    user_id: str = Depends(get_current_user_id),
    services: ChatServices = Depends(get_services),
) -> dict:
    """Every other active user with status, last-seen and DM unread count."""
    return {"users": services.router.contacts(user_id, q)}


# =============================================================================
# Rooms
# =============================================================================


@router.post("/rooms", status_code=201)
async def create_room(
    request: CreateRoomRequest,
    user_id: str = Depends(get_current_user_id),
    services: ChatServices = Depends(get_services),
) -> dict:
    room = services.router.create_room(user_id, request.name, request.description)
    return room.model_dump(mode="json")


@router.get("/rooms")
async def list_rooms(
    q: Optional[str] = Query(None, description="Case-insensitive name filter"),
    user_id: str = Depends(get_current_user_id),
    services: ChatServices = Depends(get_services),
) -> dict:
    joined = set(services.rooms.rooms_for(user_id))
    return {
        "rooms": [
            {**room.model_dump(mode="json"), "isMember": room.id in joined}
            for room in services.router.list_rooms(q)
        ]
    }


@router.get("/rooms/{room_id}")
async def get_room(
    room_id: str,
    user_id: str = Depends(get_current_user_id),
    services: ChatServices = Depends(get_services),
) -> dict:
    room = services.rooms.require(room_id)
    return {**room.model_dump(mode="json"), "isMember": services.rooms.is_member(room_id, user_id)}


@router.post("/rooms/{room_id}/join")
async def join_room(
    room_id: str,
    user_id: str = Depends(get_current_user_id),
    services: ChatServices = Depends(get_services),
) -> dict:
    return services.router.join_room(user_id, room_id).model_dump(mode="json")


@router.post("/rooms/{room_id}/leave")
async def leave_room(
    room_id: str,
    user_id: str = Depends(get_current_user_id),
    services: ChatServices = Depends(get_services),
) -> dict:
    return services.router.leave_room(user_id, room_id).model_dump(mode="json")


# =============================================================================
# Conversations
# =============================================================================


@router.post("/conversations/{conversation}/messages", status_code=201)
async def send_message(
    conversation: str,
    request: SendMessageRequest,
    user_id: str = Depends(get_current_user_id),
    services: ChatServices = Depends(get_services),
) -> dict:
    message = await services.router.send_as(user_id, ConversationRef.parse(conversation), request.body)
    return message.model_dump(mode="json")


@router.get("/conversations/{conversation}/messages")
async def get_messages(
    conversation: str,
    cursor: Optional[str] = Query(None, description="Message id; returns messages after it"),
    limit: Optional[int] = Query(None, ge=1, description="Number of messages (capped at messaging.max_page_size)"),
    user_id: str = Depends(get_current_user_id),
    services: ChatServices = Depends(get_services),
) -> dict:
    """Forward paging for catch-up.

    Example:
        GET /conversations/room:room-1/messages?cursor=1707321600123-0000000042
    """
    ref = ConversationRef.parse(conversation)
    messages = services.router.history(user_id, ref, cursor, limit)

    # Check if there are more messages after the newest returned
    has_more = False
    if messages:
        has_more = bool(services.router.history(user_id, ref, messages[-1].id, 1))

    return {
        "messages": [m.model_dump(mode="json") for m in messages],
        "hasMore": has_more,
    }


@router.get("/conversations/{conversation}/messages/latest")
async def get_latest_messages(
    conversation: str,
    before: Optional[str] = Query(None, description="Message id; returns messages older than it"),
    limit: Optional[int] = Query(None, ge=1, description="Number of messages (capped at messaging.max_page_size)"),
    user_id: str = Depends(get_current_user_id),
    services: ChatServices = Depends(get_services),
) -> dict:
    """Backward paging for lazy loading of older history."""
    ref = ConversationRef.parse(conversation)
    messages = services.router.latest(user_id, ref, before, limit)

    # Check if there are more messages before the oldest returned
    has_more = False
    if messages:
        has_more = bool(services.router.latest(user_id, ref, messages[0].id, 1))

    return {
        "messages": [m.model_dump(mode="json") for m in messages],
        "hasMore": has_more,
    }


@router.post("/conversations/{conversation}/read")
async def mark_read(
    conversation: str,
    request: MarkReadRequest,
    user_id: str = Depends(get_current_user_id),
    services: ChatServices = Depends(get_services),
) -> dict:
    receipts = await services.router.mark_read(
        user_id, ConversationRef.parse(conversation), request.uptoMessageId
    )
    return {"receipts": [r.model_dump(mode="json") for r in receipts]}


@router.post("/conversations/{conversation}/typing")
async def set_typing(
    conversation: str,
    user_id: str = Depends(get_current_user_id),
    services: ChatServices = Depends(get_services),
) -> dict:
    typers = services.router.set_typing(user_id, ConversationRef.parse(conversation))
    return {"conversation": conversation, "userIds": typers}


@router.get("/conversations/{conversation}/unread")
async def unread_count(
    conversation: str,
    user_id: str = Depends(get_current_user_id),
    services: ChatServices = Depends(get_services),
) -> dict:
    ref = ConversationRef.parse(conversation)
    return {"conversation": ref.key, "unreadCount": services.router.unread_count(user_id, ref)}


# =============================================================================
# WebSocket
# =============================================================================


async def _handle_command(services: ChatServices, connection_id: str, command) -> None:
    """Apply one validated client command; ChatErrors propagate to the caller."""
    router_ = services.router
    gateway = services.gateway

    # --- Handle AUTHENTICATE (connected event is pushed by the router) ---
    if isinstance(command, AuthenticateCommand):
        router_.authenticate_connection(connection_id, command.token)
        return

    # --- Handle PING ---
    if isinstance(command, PingCommand):
        gateway.push(connection_id, PongEvent())
        return

    user_id = services.registry.resolve_user(connection_id)

    if isinstance(command, SubscribeCommand):
        replayed = await router_.subscribe(
            connection_id, ConversationRef.parse(command.conversation), command.cursor
        )
        gateway.push(connection_id, AckEvent(
            command=command.type, requestId=command.requestId, result={"replayed": len(replayed)}
        ))
        return

    if isinstance(command, UnsubscribeCommand):
        router_.unsubscribe(connection_id, ConversationRef.parse(command.conversation))
        gateway.push(connection_id, AckEvent(command=command.type, requestId=command.requestId))
        return

    # --- Handle SEND: the message event reaches the sender before the ack ---
    if isinstance(command, SendCommand):
        message = await router_.send(
            connection_id,
            ConversationRef.parse(command.conversation),
            command.body,
            command.clientMessageId,
        )
        gateway.push(connection_id, AckEvent(
            command=command.type,
            requestId=command.requestId,
            result={"message": message.model_dump(mode="json")},
        ))
        return

    if isinstance(command, HistoryCommand):
        ref = ConversationRef.parse(command.conversation)
        messages = router_.history(user_id, ref, command.cursor, command.limit)
        gateway.push(connection_id, HistoryEvent(
            conversation=ref.key, messages=messages, requestId=command.requestId
        ))
        return

    if isinstance(command, ReadCommand):
        receipts = await router_.mark_read(
            user_id, ConversationRef.parse(command.conversation), command.uptoMessageId
        )
        gateway.push(connection_id, AckEvent(
            command=command.type,
            requestId=command.requestId,
            result={"marked": sum(len(r.messageIds) for r in receipts)},
        ))
        return

    if isinstance(command, TypingCommand):
        router_.set_typing(user_id, ConversationRef.parse(command.conversation))
        return

    if isinstance(command, (JoinRoomCommand, LeaveRoomCommand, CreateRoomCommand)):
        if isinstance(command, JoinRoomCommand):
            room = router_.join_room(user_id, command.roomId)
        elif isinstance(command, LeaveRoomCommand):
            room = router_.leave_room(user_id, command.roomId)
        else:
            room = router_.create_room(user_id, command.name, command.description)
        gateway.push(connection_id, AckEvent(
            command=command.type,
            requestId=command.requestId,
            result={"room": room.model_dump(mode="json")},
        ))
        return

    raise InvalidInput(f"Unsupported command: {command.type}")


def _push_error(services: ChatServices, connection_id: str, error: ChatError,
                request_id: Optional[str] = None) -> None:
    retry_after = services.config.gateway.transient_retry_ms if error.retryable else None
    services.gateway.push(
        connection_id,
        ErrorEvent(**error.to_payload(retry_after), requestId=request_id),
    )


@router.websocket("/ws")
async def websocket_endpoint(
    websocket: WebSocket,
    token: Optional[str] = Query(None, description="Session token (or send an authenticate command)"),
) -> None:
    """WebSocket endpoint: one connection per browser tab.

    All outbound events go through the Gateway's per-connection queue, so
    the replies to this client's commands and the fan-out from other users
    arrive in one consistent order.
    """
    services: ChatServices = websocket.app.state.chat
    await websocket.accept()
    connection = services.gateway.open(WebSocketChannel(websocket))
    connection_id = connection.connection_id
    logger.info(f"[WS] New connection {connection_id}")

    if token is not None:
        try:
            services.router.authenticate_connection(connection_id, token)
        except ChatError as e:
            logger.info(f"[WS] Rejected {connection_id}: {e.detail}")
            _push_error(services, connection_id, e)
            await services.gateway.close(connection_id, code=1008)  # 1008 = Policy Violation
            return

    try:
        # Main message loop
        while True:
            raw = await websocket.receive_text()
            if connection_id not in services.gateway:
                break

            try:
                command = client_command_adapter.validate_json(raw)
            except ValidationError as e:
                logger.debug(f"[WS] Invalid frame from {connection_id}: {e.error_count()} errors")
                _push_error(services, connection_id, InvalidInput(_summarize(e)))
                continue

            logger.debug(f"[WS] {connection_id} received: type={command.type}")
            try:
                await _handle_command(services, connection_id, command)
            except ChatError as e:
                logger.info(f"[WS] {command.type} from {connection_id} failed: {e.code} {e.detail}")
                _push_error(services, connection_id, e, command.requestId)
                continue

    except WebSocketDisconnect:
        logger.info(f"[WS] Client disconnected: {connection_id}")
    finally:
        await services.router.disconnect(connection_id)


def _summarize(error: ValidationError) -> str:
    first = error.errors()[0]
    location = ".".join(str(part) for part in first.get("loc", ()))
    return f"{location}: {first.get('msg')}" if location else first.get("msg", "Invalid command")
