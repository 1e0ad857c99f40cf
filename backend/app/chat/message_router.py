"""MessageRouter: the orchestration core of the messaging backend.

Every client operation, whether it arrives over HTTP or the WebSocket,
ends up here. The router:

    1. resolves who is asking (ConnectionRegistry / SessionManager)
    2. validates and applies the operation against ConversationStore,
       RoomDirectory, TypingCoordinator and PresenceTracker
    3. computes the recipient connections
    4. hands typed events to the Gateway for delivery

Recipient sets:
    - room conversation: every connection subscribed to the room
    - direct conversation: every connection of either participant, so the
      sender's other tabs see the echo too
    - presence: connections of users who share a room with, or have a
      direct conversation with, the user whose status changed

Ordering:
    Message and read-receipt fan-out is enqueued from the store's commit
    hook, i.e. while the conversation lock is held, so every recipient sees
    messages in the store's append order. Validation failures raise before
    anything is stored or broadcast; delivery failures never undo an append.

Deduplication:
    A client may retry a send with the same ``clientMessageId`` (after a
    Transient error or a reconnect); the router returns the originally
    committed message instead of appending it twice.
"""
import asyncio
import logging
from collections import OrderedDict
from typing import Dict, List, Optional, Tuple

from app.auth.service import CredentialVerifier, SessionManager, UserDirectory
from app.errors import NotAMember, NotFound, Unauthenticated

from .connections import Connection, ConnectionRegistry
from .gateway import Gateway
from .presence import PresenceTracker
from .rooms import RoomDirectory
from .schemas import (
    ConnectedEvent,
    ConversationRef,
    Message,
    MessageEvent,
    PresenceChangedEvent,
    ReadReceipt,
    ReadStateChangedEvent,
    Room,
    RoomMembershipChangedEvent,
    TypingChangedEvent,
    User,
)
from .store import ConversationStore
from .typing_state import TypingCoordinator

logger = logging.getLogger(__name__)

# Maximum number of client message IDs to remember for deduplication
MESSAGE_DEDUP_CACHE_SIZE = 10000


class MessageRouter:
    """Validates, persists and fans out every messaging operation."""

    def __init__(
        self,
        users: UserDirectory,
        verifier: CredentialVerifier,
        sessions: SessionManager,
        registry: ConnectionRegistry,
        presence: PresenceTracker,
        rooms: RoomDirectory,
        store: ConversationStore,
        typing: TypingCoordinator,
        gateway: Gateway,
    ) -> None:
        self._users = users
        self._verifier = verifier
        self._sessions = sessions
        self._registry = registry
        self._presence = presence
        self._rooms = rooms
        self._store = store
        self._typing = typing
        self._gateway = gateway

        # (user_id, client_message_id) -> committed Message, LRU
        self._sent: "OrderedDict[Tuple[str, str], Message]" = OrderedDict()

        self._presence.subscribe(self._on_presence_changed)
        self._gateway.set_connection_lost_handler(self.disconnect)

    # =========================================================================
    # Sessions
    # =========================================================================

    def signup(
        self,
        email: str,
        password: str,
        display_name: str,
        avatar_ref: Optional[str] = None,
    ) -> Tuple[User, str]:
        user = self._users.signup(email, password, display_name, avatar_ref)
        return user, self._sessions.issue(user.id).token

    def authenticate(self, email: str, password: str) -> Tuple[str, str]:
        """Verify a credential and issue a session.

        Raises:
            Unauthenticated: wrong credential; no token is issued.
        """
        user_id = self._verifier.verify(email, password)
        session = self._sessions.issue(user_id)
        logger.info(f"[Router] {user_id} logged in")
        return user_id, session.token

    async def deauthenticate(self, token: str) -> None:
        """Revoke a session token and close every socket opened with it."""
        user_id = self._sessions.revoke(token)
        for connection in self._registry.connections_for_session(token):
            await self.disconnect(connection.connection_id)
        if user_id:
            logger.info(f"[Router] {user_id} logged out")

    async def deactivate(self, user_id: str) -> User:
        """Soft-delete an account: revoke its sessions and drop its sockets."""
        user = self._users.deactivate(user_id)
        self._sessions.revoke_user(user_id)
        for connection in self._registry.connections_for_user(user_id):
            await self.disconnect(connection.connection_id)
        return user

    # =========================================================================
    # Connection lifecycle
    # =========================================================================

    def authenticate_connection(self, connection_id: str, token: str) -> str:
        """Authenticate a socket, subscribe it to the user's rooms, mark presence."""
        user_id = self._registry.authenticate(connection_id, token)
        self._gateway.push(connection_id, ConnectedEvent(connectionId=connection_id, userId=user_id))
        for room_id in self._rooms.rooms_for(user_id):
            self._registry.subscribe(connection_id, ConversationRef.room(room_id).key)
        self._presence.connection_opened(user_id)
        return user_id

    async def disconnect(self, connection_id: str) -> None:
        """Tear down a connection. Idempotent.

        Undelivered fan-out to this connection is abandoned; committed
        messages stay in the store for catch-up.
        """
        connection = self._registry.get(connection_id)
        user_id = connection.user_id if connection and connection.is_authenticated else None
        await self._gateway.close(connection_id, drain=False)
        if user_id:
            self._presence.connection_closed(user_id)

    async def subscribe(
        self,
        connection_id: str,
        ref: ConversationRef,
        cursor: Optional[str] = None,
    ) -> List[Message]:
        """Add a conversation to a connection's interest set.

        With a ``cursor`` (the last message id the client saw), every newer
        message is replayed to this connection before any live message.
        Subscription and replay happen under the conversation lock, so there
        is neither a gap nor a duplicate between the two. Replay waits for
        room in the connection's queue, so a gap larger than the queue is
        still delivered in full. Returns the messages actually enqueued; if
        the connection goes away mid-replay the rest stay in history.
        """
        user_id = self._registry.resolve_user(connection_id)
        self._require_access(user_id, ref)
        replayed: List[Message] = []
        async with self._store.locked(ref):
            self._registry.subscribe(connection_id, ref.key)
            if cursor is not None:
                while True:
                    page = self._store.history(ref, cursor or None)
                    if not page:
                        break
                    enqueued = await self._gateway.replay(
                        connection_id,
                        (MessageEvent(message=message, isRecovery=True) for message in page),
                    )
                    replayed.extend(page[:enqueued])
                    if enqueued < len(page):
                        logger.warning(
                            f"[Router] Replay of {ref.key} to {connection_id} stopped after "
                            f"{len(replayed)} messages; connection closed"
                        )
                        break
                    cursor = page[-1].id
        if replayed:
            logger.info(f"[Router] Replayed {len(replayed)} messages of {ref.key} to {connection_id}")
        return replayed

    def unsubscribe(self, connection_id: str, ref: ConversationRef) -> bool:
        return self._registry.unsubscribe(connection_id, ref.key)

    # =========================================================================
    # Messages
    # =========================================================================

    async def send(self, connection_id: str, ref: ConversationRef, body: str,
                   client_message_id: Optional[str] = None) -> Message:
        """Send a message on behalf of the user behind a connection."""
        user_id = self._registry.resolve_user(connection_id)
        return await self.send_as(user_id, ref, body, client_message_id)

    async def send_as(self, user_id: str, ref: ConversationRef, body: str,
                      client_message_id: Optional[str] = None) -> Message:
        """Persist and fan out a message.

        Raises:
            EmptyBody / InvalidInput: invalid body; nothing is stored.
            InvalidSender: the user may not post here.
            NotFound: unknown room or direct-message recipient.
            Transient: storage failure; safe to retry with the same
                ``client_message_id``.
        """
        if client_message_id:
            previous = self._sent.get((user_id, client_message_id))
            if previous is not None:
                self._sent.move_to_end((user_id, client_message_id))
                logger.debug(f"[Router] Duplicate send {client_message_id} from {user_id}")
                return previous
        if not ref.is_room:
            self._users.require(ref.other_party(user_id) or user_id)

        message = await self._store.append(
            ref,
            user_id,
            body,
            on_commit=lambda m: self._gateway.broadcast(self._audience(ref), MessageEvent(message=m)),
        )

        if client_message_id:
            self._sent[(user_id, client_message_id)] = message
            while len(self._sent) > MESSAGE_DEDUP_CACHE_SIZE:
                self._sent.popitem(last=False)
        logger.info(f"[Router] {user_id} sent {message.id} to {ref.key}")
        return message

    def history(
        self,
        user_id: str,
        ref: ConversationRef,
        cursor: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> List[Message]:
        self._require_access(user_id, ref)
        return self._store.history(ref, cursor, limit)

    def latest(
        self,
        user_id: str,
        ref: ConversationRef,
        before: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> List[Message]:
        self._require_access(user_id, ref)
        return self._store.latest(ref, before, limit)

    async def mark_read(self, user_id: str, ref: ConversationRef, upto_message_id: str) -> List[ReadReceipt]:
        self._require_access(user_id, ref)

        def fan_out(receipts: List[ReadReceipt]) -> None:
            audience = self._audience(ref)
            for receipt in receipts:
                self._gateway.broadcast(audience, ReadStateChangedEvent(**receipt.model_dump()))

        return await self._store.mark_read(ref, user_id, upto_message_id, on_commit=fan_out)

    def unread_count(self, user_id: str, ref: ConversationRef) -> int:
        self._require_access(user_id, ref)
        return self._store.unread_count(ref, user_id)

    # =========================================================================
    # Typing
    # =========================================================================

    def set_typing(self, user_id: str, ref: ConversationRef) -> List[str]:
        self._require_access(user_id, ref)
        typers = self._typing.set_typing(ref.key, user_id)
        self._gateway.broadcast(
            self._audience(ref), TypingChangedEvent(conversation=ref.key, userIds=typers)
        )
        return typers

    def expire_typing(self) -> int:
        """Push the shrunken typer set of every conversation that had an expiry."""
        changed = self._typing.sweep()
        for key, typers in changed.items():
            self._gateway.broadcast(
                self._audience(ConversationRef.parse(key)),
                TypingChangedEvent(conversation=key, userIds=typers),
            )
        return len(changed)

    async def run_typing_sweeper(self, interval: float) -> None:
        while True:
            await asyncio.sleep(interval)
            self.expire_typing()

    # =========================================================================
    # Rooms
    # =========================================================================

    def create_room(self, user_id: str, name: str, description: Optional[str] = None) -> Room:
        """Create a room and make its creator the first member."""
        room = self._rooms.create(name, description)
        return self.join_room(user_id, room.id)

    def list_rooms(self, query: Optional[str] = None) -> List[Room]:
        return self._rooms.list_rooms(query)

    def join_room(self, user_id: str, room_id: str) -> Room:
        changed, room = self._rooms.join(room_id, user_id)
        key = ConversationRef.room(room_id).key
        for connection in self._registry.connections_for_user(user_id):
            self._registry.subscribe(connection.connection_id, key)
        if changed:
            self._announce_membership(room, user_id, "joined")
        return room

    def leave_room(self, user_id: str, room_id: str) -> Room:
        changed, room = self._rooms.leave(room_id, user_id)
        key = ConversationRef.room(room_id).key
        own = self._registry.connections_for_user(user_id)
        if changed:
            self._announce_membership(room, user_id, "left", extra=own)
        for connection in own:
            self._registry.unsubscribe(connection.connection_id, key)
        return room

    def _announce_membership(
        self, room: Room, user_id: str, action: str, extra: Optional[List[Connection]] = None
    ) -> None:
        audience = self._registry.subscribers(ConversationRef.room(room.id).key) + (extra or [])
        self._gateway.broadcast(
            audience,
            RoomMembershipChangedEvent(
                roomId=room.id, userId=user_id, action=action, memberCount=room.memberCount
            ),
        )

    # =========================================================================
    # Users
    # =========================================================================

    def contacts(self, user_id: str, query: Optional[str] = None) -> List[Dict]:
        """Every other active user with presence and unread direct messages."""
        contacts = []
        for user in self._users.search(query):
            if user.id == user_id:
                continue
            ref = ConversationRef.direct(user_id, user.id)
            contacts.append({
                **user.model_dump(mode="json", exclude={"email", "active"}),
                "conversation": ref.key,
                "unreadCount": self._store.unread_count(ref, user_id),
            })
        return contacts

    # =========================================================================
    # Presence fan-out
    # =========================================================================

    def _on_presence_changed(self, event: PresenceChangedEvent) -> None:
        watchers = set(self._store.direct_partners(event.userId))
        for room_id in self._rooms.rooms_for(event.userId):
            watchers.update(self._rooms.members(room_id))
        watchers.discard(event.userId)
        audience = [
            connection
            for watcher in sorted(watchers)
            for connection in self._registry.connections_for_user(watcher)
        ]
        self._gateway.broadcast(audience, event)

    # =========================================================================
    # Helpers
    # =========================================================================

    def _require_access(self, user_id: str, ref: ConversationRef) -> None:
        if not user_id:
            raise Unauthenticated("Not authenticated")
        if ref.is_room:
            self._rooms.require(ref.roomId)
            if not self._rooms.is_member(ref.roomId, user_id):
                raise NotAMember(f"Not a member of room {ref.roomId}")
            return
        if user_id not in ref.members:
            raise NotAMember(f"Not a participant of {ref.key}")
        other = ref.other_party(user_id)
        if self._users.get(other) is None:
            raise NotFound(f"Unknown user: {other}")

    def _audience(self, ref: ConversationRef) -> List[Connection]:
        if ref.is_room:
            return self._registry.subscribers(ref.key)
        return [
            connection
            for member in ref.members
            for connection in self._registry.connections_for_user(member)
        ]
