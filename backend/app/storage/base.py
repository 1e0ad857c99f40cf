"""MessageLog abstract interface for persistence backends.

The messaging core never talks to a database directly. ConversationStore,
RoomDirectory and the auth UserDirectory all go through a ``MessageLog``, so
the in-memory backend used in tests and the DuckDB backend used in
deployments are interchangeable without touching the router.

Usage:
    from app.storage import create_backend

    backend = create_backend(config.storage)
    backend.append_message(message)
    page = backend.messages_after("room:abc", after_seq=0, limit=50)
"""
from abc import ABC, abstractmethod
from typing import List, Optional, Set, Tuple

from app.chat.schemas import Message, Room, User


class MessageLog(ABC):
    """Durable append-only store for users, rooms, memberships and messages.

    Implementations must return copies: callers may hold on to returned
    records, and mutating them must never change stored state.
    """

    # -- users ---------------------------------------------------------------

    @abstractmethod
    def save_user(self, user: User) -> None:
        """Insert or replace a user record."""

    @abstractmethod
    def get_user(self, user_id: str) -> Optional[User]:
        pass

    @abstractmethod
    def get_user_by_email(self, email: str) -> Optional[User]:
        """Look up by (already lowercased) email."""

    @abstractmethod
    def list_users(self) -> List[User]:
        pass

    @abstractmethod
    def save_credential(self, email: str, user_id: str, password_hash: str) -> None:
        pass

    @abstractmethod
    def get_credential(self, email: str) -> Optional[Tuple[str, str]]:
        """Return ``(user_id, password_hash)`` for an email, if registered."""

    # -- rooms ---------------------------------------------------------------

    @abstractmethod
    def save_room(self, room: Room) -> None:
        """Insert room metadata. ``memberCount`` is derived, never stored."""

    @abstractmethod
    def get_room(self, room_id: str) -> Optional[Room]:
        pass

    @abstractmethod
    def list_rooms(self) -> List[Room]:
        pass

    @abstractmethod
    def add_member(self, room_id: str, user_id: str) -> bool:
        """Add to the membership set. Returns False if already a member."""

    @abstractmethod
    def remove_member(self, room_id: str, user_id: str) -> bool:
        """Remove from the membership set. Returns False if not a member."""

    @abstractmethod
    def members(self, room_id: str) -> Set[str]:
        pass

    @abstractmethod
    def rooms_for(self, user_id: str) -> List[str]:
        """Room IDs the user is a member of."""

    # -- messages ------------------------------------------------------------

    @abstractmethod
    def append_message(self, message: Message) -> None:
        """Persist a message. ``message.seq`` must be last_seq + 1."""

    @abstractmethod
    def last_message(self, conversation: str) -> Optional[Message]:
        pass

    @abstractmethod
    def messages_after(self, conversation: str, after_seq: int, limit: int) -> List[Message]:
        """Messages with seq > after_seq, oldest first, at most ``limit``."""

    @abstractmethod
    def messages_before(
        self, conversation: str, before_seq: Optional[int], limit: int
    ) -> List[Message]:
        """The newest ``limit`` messages with seq < before_seq, oldest first."""

    @abstractmethod
    def messages_upto(self, conversation: str, upto_seq: int) -> List[Message]:
        """All messages with seq <= upto_seq, oldest first."""

    @abstractmethod
    def add_readers(self, conversation: str, reader_id: str, seqs: List[int]) -> None:
        """Add ``reader_id`` to readBy of each listed message."""

    @abstractmethod
    def unread_count(self, conversation: str, user_id: str) -> int:
        """Messages not sent by and not yet read by ``user_id``."""

    @abstractmethod
    def direct_conversations(self) -> List[str]:
        """Keys of every direct conversation that has at least one message."""

    def close(self) -> None:
        """Release any held resources."""
