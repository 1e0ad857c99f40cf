"""Room metadata and membership.

Membership is an explicit set of user IDs per room, so join/leave are exact
and idempotent and ``memberCount`` can never be inflated by a double join.
"""
import logging
import uuid
from typing import List, Optional, Set, Tuple

from app.config import RoomSettings
from app.errors import Conflict, InvalidInput, InvalidName, NotFound
from app.storage import MessageLog

from .schemas import Room

logger = logging.getLogger(__name__)


class RoomDirectory:
    """Creates rooms and tracks who is in them."""

    def __init__(self, backend: MessageLog, settings: Optional[RoomSettings] = None) -> None:
        self._backend = backend
        self._settings = settings or RoomSettings()

    def create(self, name: str, description: Optional[str] = None) -> Room:
        """Create a room owned by no single user.

        Raises:
            InvalidName: trimmed name length outside [3, 30].
            InvalidInput: description longer than 100 characters.
            Conflict: duplicate name when ``rooms.unique_names`` is enabled.
        """
        name = (name or "").strip()
        low, high = self._settings.min_name_length, self._settings.max_name_length
        if not low <= len(name) <= high:
            raise InvalidName(f"Room name must be between {low} and {high} characters")

        description = (description or "").strip() or None
        if description and len(description) > self._settings.max_description_length:
            raise InvalidInput(
                f"Description must be at most "
                f"{self._settings.max_description_length} characters"
            )

        if self._settings.unique_names and any(
            r.name.lower() == name.lower() for r in self._backend.list_rooms()
        ):
            raise Conflict(f"A room named {name!r} already exists")

        room = Room(id=f"room-{uuid.uuid4().hex[:12]}", name=name, description=description)
        self._backend.save_room(room)
        logger.info(f"[Rooms] Created room {room.id} ({name})")
        return self.require(room.id)

    def get(self, room_id: str) -> Optional[Room]:
        return self._backend.get_room(room_id)

    def require(self, room_id: str) -> Room:
        room = self._backend.get_room(room_id)
        if room is None:
            raise NotFound(f"Unknown room: {room_id}")
        return room

    def list_rooms(self, query: Optional[str] = None) -> List[Room]:
        """All rooms, newest first, optionally filtered by name/description."""
        rooms = self._backend.list_rooms()
        if query:
            needle = query.strip().lower()
            rooms = [
                r for r in rooms
                if needle in r.name.lower() or needle in (r.description or "").lower()
            ]
        return sorted(rooms, key=lambda r: r.createdAt, reverse=True)

    def join(self, room_id: str, user_id: str) -> Tuple[bool, Room]:
        """Add a member. Returns (changed, room); joining twice is a no-op."""
        self.require(room_id)
        changed = self._backend.add_member(room_id, user_id)
        if changed:
            logger.info(f"[Rooms] {user_id} joined {room_id}")
        return changed, self.require(room_id)

    def leave(self, room_id: str, user_id: str) -> Tuple[bool, Room]:
        """Remove a member. Returns (changed, room); leaving twice is a no-op."""
        self.require(room_id)
        changed = self._backend.remove_member(room_id, user_id)
        if changed:
            logger.info(f"[Rooms] {user_id} left {room_id}")
        return changed, self.require(room_id)

    def is_member(self, room_id: str, user_id: str) -> bool:
        return user_id in self._backend.members(room_id)

    def members(self, room_id: str) -> Set[str]:
        return self._backend.members(room_id)

    def rooms_for(self, user_id: str) -> List[str]:
        return self._backend.rooms_for(user_id)
