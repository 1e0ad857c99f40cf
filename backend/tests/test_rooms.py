"""Tests for RoomDirectory: validation, membership and search."""
import pytest

from app.chat.rooms import RoomDirectory
from app.config import RoomSettings
from app.errors import Conflict, InvalidInput, InvalidName, NotFound
from app.storage import InMemoryMessageLog


@pytest.fixture
def rooms():
    return RoomDirectory(InMemoryMessageLog())


class TestCreate:
    def test_create_trims_and_starts_empty(self, rooms):
        room = rooms.create("  Orbit  ", "  Space talk ")

        assert room.name == "Orbit"
        assert room.description == "Space talk"
        assert room.memberCount == 0
        assert room.id.startswith("room-")
        assert rooms.get(room.id) == room

    @pytest.mark.parametrize("name", ["ab", "   ab   ", "x" * 31, ""])
    def test_name_length_bounds(self, rooms, name):
        with pytest.raises(InvalidName):
            rooms.create(name)

    @pytest.mark.parametrize("name", ["abc", "x" * 30])
    def test_name_length_inclusive(self, rooms, name):
        assert rooms.create(name).name == name

    def test_description_too_long(self, rooms):
        with pytest.raises(InvalidInput):
            rooms.create("Orbit", "d" * 101)
        assert rooms.create("Orbit", "d" * 100).description == "d" * 100

    def test_duplicate_names_allowed_by_default(self, rooms):
        first = rooms.create("Orbit")
        second = rooms.create("orbit")
        assert first.id != second.id

    def test_unique_names_when_configured(self):
        rooms = RoomDirectory(InMemoryMessageLog(), RoomSettings(unique_names=True))
        rooms.create("Orbit")
        with pytest.raises(Conflict):
            rooms.create("ORBIT")


class TestMembership:
    def test_join_is_idempotent(self, rooms):
        room = rooms.create("Orbit")

        changed, joined = rooms.join(room.id, "user-a")
        assert changed is True
        assert joined.memberCount == 1

        changed, again = rooms.join(room.id, "user-a")
        assert changed is False
        assert again.memberCount == 1

    def test_leave_is_idempotent(self, rooms):
        room = rooms.create("Orbit")
        rooms.join(room.id, "user-a")
        rooms.join(room.id, "user-b")

        changed, left = rooms.leave(room.id, "user-a")
        assert changed is True
        assert left.memberCount == 1
        assert not rooms.is_member(room.id, "user-a")

        changed, again = rooms.leave(room.id, "user-a")
        assert changed is False
        assert again.memberCount == 1

    def test_unknown_room(self, rooms):
        with pytest.raises(NotFound):
            rooms.join("room-missing", "user-a")
        with pytest.raises(NotFound):
            rooms.leave("room-missing", "user-a")

    def test_rooms_for(self, rooms):
        orbit = rooms.create("Orbit")
        nebula = rooms.create("Nebula")
        rooms.join(orbit.id, "user-a")
        rooms.join(nebula.id, "user-b")

        assert rooms.rooms_for("user-a") == [orbit.id]
        assert rooms.members(nebula.id) == {"user-b"}


def test_search_matches_name_and_description(rooms):
    rooms.create("Orbit", "Launch schedules")
    rooms.create("Nebula", "Gas clouds")
    rooms.create("Kitchen")

    assert [r.name for r in rooms.list_rooms("orb")] == ["Orbit"]
    assert [r.name for r in rooms.list_rooms("CLOUD")] == ["Nebula"]
    assert len(rooms.list_rooms()) == 3
