"""In-memory MessageLog, used for tests and single-process development.

Records live in plain dicts and lists for the lifetime of the owning
instance (not the module), so every app instance starts empty.
"""
from typing import Dict, List, Optional, Set, Tuple

from app.chat.schemas import DIRECT_PREFIX, Message, Room, User

from .base import MessageLog


class InMemoryMessageLog(MessageLog):
    """Dictionary-backed implementation of :class:`MessageLog`."""

    def __init__(self) -> None:
        # user_id -> User
        self._users: Dict[str, User] = {}

        # email -> (user_id, password_hash)
        self._credentials: Dict[str, Tuple[str, str]] = {}

        # room_id -> Room (memberCount filled in on read)
        self._rooms: Dict[str, Room] = {}

        # room_id -> set of member user_ids
        self._members: Dict[str, Set[str]] = {}

        # conversation key -> messages, index == seq - 1
        self._messages: Dict[str, List[Message]] = {}

    # -- users ---------------------------------------------------------------

    def save_user(self, user: User) -> None:
        self._users[user.id] = user.model_copy(deep=True)

    def get_user(self, user_id: str) -> Optional[User]:
        user = self._users.get(user_id)
        return user.model_copy(deep=True) if user else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        for user in self._users.values():
            if user.email == email:
                return user.model_copy(deep=True)
        return None

    def list_users(self) -> List[User]:
        return [u.model_copy(deep=True) for u in self._users.values()]

    def save_credential(self, email: str, user_id: str, password_hash: str) -> None:
        self._credentials[email] = (user_id, password_hash)

    def get_credential(self, email: str) -> Optional[Tuple[str, str]]:
        return self._credentials.get(email)

    # -- rooms ---------------------------------------------------------------

    def save_room(self, room: Room) -> None:
        self._rooms[room.id] = room.model_copy(update={"memberCount": 0})
        self._members.setdefault(room.id, set())

    def get_room(self, room_id: str) -> Optional[Room]:
        room = self._rooms.get(room_id)
        if room is None:
            return None
        return room.model_copy(update={"memberCount": len(self._members.get(room_id, ()))})

    def list_rooms(self) -> List[Room]:
        return [self.get_room(room_id) for room_id in self._rooms]

    def add_member(self, room_id: str, user_id: str) -> bool:
        members = self._members.setdefault(room_id, set())
        if user_id in members:
            return False
        members.add(user_id)
        return True

    def remove_member(self, room_id: str, user_id: str) -> bool:
        members = self._members.get(room_id)
        if not members or user_id not in members:
            return False
        members.discard(user_id)
        return True

    def members(self, room_id: str) -> Set[str]:
        return set(self._members.get(room_id, ()))

    def rooms_for(self, user_id: str) -> List[str]:
        return [room_id for room_id, members in self._members.items() if user_id in members]

    # -- messages ------------------------------------------------------------

    def append_message(self, message: Message) -> None:
        log = self._messages.setdefault(message.conversation, [])
        if message.seq != len(log) + 1:
            raise ValueError(
                f"Out-of-order append to {message.conversation}: "
                f"seq {message.seq} after {len(log)}"
            )
        log.append(message.model_copy(deep=True))

    def last_message(self, conversation: str) -> Optional[Message]:
        log = self._messages.get(conversation)
        return log[-1].model_copy(deep=True) if log else None

    def messages_after(self, conversation: str, after_seq: int, limit: int) -> List[Message]:
        log = self._messages.get(conversation, [])
        return [m.model_copy(deep=True) for m in log[max(after_seq, 0):max(after_seq, 0) + limit]]

    def messages_before(
        self, conversation: str, before_seq: Optional[int], limit: int
    ) -> List[Message]:
        log = self._messages.get(conversation, [])
        end = len(log) if before_seq is None else max(min(before_seq - 1, len(log)), 0)
        start = max(end - limit, 0)
        return [m.model_copy(deep=True) for m in log[start:end]]

    def messages_upto(self, conversation: str, upto_seq: int) -> List[Message]:
        log = self._messages.get(conversation, [])
        return [m.model_copy(deep=True) for m in log[:max(upto_seq, 0)]]

    def add_readers(self, conversation: str, reader_id: str, seqs: List[int]) -> None:
        log = self._messages.get(conversation, [])
        for seq in seqs:
            if 1 <= seq <= len(log):
                log[seq - 1].readBy.add(reader_id)

    def unread_count(self, conversation: str, user_id: str) -> int:
        return sum(
            1 for m in self._messages.get(conversation, [])
            if m.senderId != user_id and user_id not in m.readBy
        )

    def direct_conversations(self) -> List[str]:
        return [
            key for key, log in self._messages.items()
            if log and key.startswith(f"{DIRECT_PREFIX}:")
        ]
