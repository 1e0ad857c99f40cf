"""Pydantic schemas for the messaging core.

This module defines the records the core stores (users, rooms, messages),
the conversation reference used as the unit of ordering, and the two closed
tagged unions that cross the gateway boundary:

    - ServerEvent: everything the server pushes to a connection
    - ClientCommand: everything a client may send over the socket

Both unions discriminate on the ``type`` field, so an unknown or malformed
frame fails validation instead of being passed through as an ad-hoc dict.
"""
import time
from enum import Enum
from typing import Annotated, List, Literal, Optional, Set, Tuple, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter

from app.errors import InvalidInput

ROOM_PREFIX = "room"
DIRECT_PREFIX = "dm"


def now_ms() -> int:
    """Current wall-clock time in epoch milliseconds."""
    return int(time.time() * 1000)


# =============================================================================
# Conversations
# =============================================================================


class ConversationKind(str, Enum):
    ROOM = "room"
    DIRECT = "direct"


class ConversationRef(BaseModel):
    """A room or a direct-message pair; the unit of message ordering.

    The wire form is ``room:<roomId>`` or ``dm:<userA>:<userB>`` with the pair
    sorted, so both participants of a direct conversation address the same
    log no matter who started it.
    """
    model_config = ConfigDict(frozen=True)

    kind: ConversationKind
    roomId: Optional[str] = None
    members: Tuple[str, ...] = ()

    @classmethod
    def room(cls, room_id: str) -> "ConversationRef":
        return cls(kind=ConversationKind.ROOM, roomId=room_id)

    @classmethod
    def direct(cls, user_a: str, user_b: str) -> "ConversationRef":
        if not user_a or not user_b or user_a == user_b:
            raise InvalidInput("A direct conversation needs two distinct users")
        return cls(kind=ConversationKind.DIRECT, members=tuple(sorted((user_a, user_b))))

    @classmethod
    def parse(cls, key: str) -> "ConversationRef":
        """Parse the wire form; raises InvalidInput when malformed."""
        prefix, _, rest = (key or "").partition(":")
        if prefix == ROOM_PREFIX and rest and ":" not in rest:
            return cls.room(rest)
        if prefix == DIRECT_PREFIX:
            parts = rest.split(":")
            if len(parts) == 2:
                return cls.direct(parts[0], parts[1])
        raise InvalidInput(f"Malformed conversation reference: {key!r}")

    @property
    def key(self) -> str:
        if self.kind == ConversationKind.ROOM:
            return f"{ROOM_PREFIX}:{self.roomId}"
        return f"{DIRECT_PREFIX}:{self.members[0]}:{self.members[1]}"

    @property
    def is_room(self) -> bool:
        return self.kind == ConversationKind.ROOM

    def other_party(self, user_id: str) -> Optional[str]:
        """For a direct pair, the participant who is not ``user_id``."""
        if self.is_room or user_id not in self.members:
            return None
        return self.members[1] if self.members[0] == user_id else self.members[0]

    def __str__(self) -> str:
        return self.key


# =============================================================================
# Records
# =============================================================================


class UserStatus(str, Enum):
    ONLINE = "online"
    OFFLINE = "offline"


class User(BaseModel):
    """An account. Never hard-deleted; ``active`` is the soft-deactivation flag."""
    id: str = Field(..., description="Stable user ID")
    email: str = Field(..., description="Unique, stored lowercased")
    displayName: str = Field(..., description="Display name shown in UI")
    avatarRef: Optional[str] = Field(default=None, description="Avatar URL or key")
    status: UserStatus = Field(default=UserStatus.OFFLINE)
    lastSeenAt: Optional[int] = Field(default=None, description="Epoch ms of last disconnect")
    active: bool = Field(default=True)


class Room(BaseModel):
    id: str = Field(..., description="Room ID")
    name: str = Field(..., description="Room name (3-30 characters)")
    description: Optional[str] = Field(default=None)
    memberCount: int = Field(default=0, ge=0)
    createdAt: int = Field(default_factory=now_ms, description="Epoch ms")


class Message(BaseModel):
    """A committed message. Only ``readBy`` changes after creation."""
    id: str = Field(..., description="Orderable ID: <ms>-<seq>")
    conversation: str = Field(..., description="Conversation key")
    senderId: str
    body: str
    createdAt: int = Field(..., description="Epoch ms")
    seq: int = Field(..., ge=1, description="Per-conversation sequence number")
    readBy: Set[str] = Field(default_factory=set)


def format_message_id(created_at: int, seq: int) -> str:
    return f"{created_at:013d}-{seq:010d}"


def parse_message_seq(message_id: str) -> int:
    """Extract the sequence number from a message ID (InvalidInput if malformed)."""
    ts_part, sep, seq_part = (message_id or "").partition("-")
    if not sep or not ts_part.isdigit() or not seq_part.isdigit():
        raise InvalidInput(f"Malformed message id: {message_id!r}")
    return int(seq_part)


class ReadReceipt(BaseModel):
    """One read-state change, batched per original sender."""
    conversation: str
    readerId: str
    senderId: str
    messageIds: List[str]


# =============================================================================
# Server events (push channel)
# =============================================================================


class ConnectedEvent(BaseModel):
    type: Literal["connected"] = "connected"
    connectionId: str
    userId: Optional[str] = None


class MessageEvent(BaseModel):
    type: Literal["message"] = "message"
    message: Message
    isRecovery: bool = False


class PresenceChangedEvent(BaseModel):
    type: Literal["presence_changed"] = "presence_changed"
    userId: str
    status: UserStatus
    lastSeenAt: Optional[int] = None


class TypingChangedEvent(BaseModel):
    type: Literal["typing_changed"] = "typing_changed"
    conversation: str
    userIds: List[str]


class RoomMembershipChangedEvent(BaseModel):
    type: Literal["room_membership_changed"] = "room_membership_changed"
    roomId: str
    userId: str
    action: Literal["joined", "left"]
    memberCount: int


class ReadStateChangedEvent(BaseModel):
    type: Literal["read_state_changed"] = "read_state_changed"
    conversation: str
    readerId: str
    senderId: str
    messageIds: List[str]


class HistoryEvent(BaseModel):
    type: Literal["history"] = "history"
    conversation: str
    messages: List[Message]
    requestId: Optional[str] = None


class AckEvent(BaseModel):
    type: Literal["ack"] = "ack"
    command: str
    requestId: Optional[str] = None
    result: Optional[dict] = None


class ErrorEvent(BaseModel):
    type: Literal["error"] = "error"
    error: str
    detail: str = ""
    requestId: Optional[str] = None
    retryAfterMs: Optional[int] = None


class PongEvent(BaseModel):
    type: Literal["pong"] = "pong"


ServerEvent = Annotated[
    Union[
        ConnectedEvent,
        MessageEvent,
        PresenceChangedEvent,
        TypingChangedEvent,
        RoomMembershipChangedEvent,
        ReadStateChangedEvent,
        HistoryEvent,
        AckEvent,
        ErrorEvent,
        PongEvent,
    ],
    Field(discriminator="type"),
]

server_event_adapter: TypeAdapter = TypeAdapter(ServerEvent)


# =============================================================================
# Client commands (socket inbound)
# =============================================================================


class _Command(BaseModel):
    requestId: Optional[str] = None


class AuthenticateCommand(_Command):
    type: Literal["authenticate"] = "authenticate"
    token: str


class SubscribeCommand(_Command):
    type: Literal["subscribe"] = "subscribe"
    conversation: str
    cursor: Optional[str] = Field(default=None, description="Last message id seen; replays newer ones")


class UnsubscribeCommand(_Command):
    type: Literal["unsubscribe"] = "unsubscribe"
    conversation: str


class SendCommand(_Command):
    type: Literal["send"] = "send"
    conversation: str
    body: str
    clientMessageId: Optional[str] = None


class HistoryCommand(_Command):
    type: Literal["history"] = "history"
    conversation: str
    cursor: Optional[str] = None
    limit: Optional[int] = Field(default=None, ge=1)


class ReadCommand(_Command):
    type: Literal["read"] = "read"
    conversation: str
    uptoMessageId: str


class TypingCommand(_Command):
    type: Literal["typing"] = "typing"
    conversation: str


class JoinRoomCommand(_Command):
    type: Literal["join_room"] = "join_room"
    roomId: str


class LeaveRoomCommand(_Command):
    type: Literal["leave_room"] = "leave_room"
    roomId: str


class CreateRoomCommand(_Command):
    type: Literal["create_room"] = "create_room"
    name: str
    description: Optional[str] = None


class PingCommand(_Command):
    type: Literal["ping"] = "ping"


ClientCommand = Annotated[
    Union[
        AuthenticateCommand,
        SubscribeCommand,
        UnsubscribeCommand,
        SendCommand,
        HistoryCommand,
        ReadCommand,
        TypingCommand,
        JoinRoomCommand,
        LeaveRoomCommand,
        CreateRoomCommand,
        PingCommand,
    ],
    Field(discriminator="type"),
]

client_command_adapter: TypeAdapter = TypeAdapter(ClientCommand)


# =============================================================================
# HTTP request bodies
# =============================================================================


class CreateRoomRequest(BaseModel):
    name: str
    description: Optional[str] = None


class SendMessageRequest(BaseModel):
    body: str


class MarkReadRequest(BaseModel):
    uptoMessageId: str


class ProfileUpdate(BaseModel):
    displayName: Optional[str] = None
    avatarRef: Optional[str] = None
