"""End-to-end tests for the HTTP API and the WebSocket protocol.

Every test runs inside one ``TestClient`` context (see the ``api_client``
fixture) so all sockets and HTTP calls share the app's event loop.
"""
import pytest
from fastapi.testclient import TestClient
from fastapi.websockets import WebSocketDisconnect

from app.main import create_app
from conftest import make_config


def signup(client, name: str):
    """Create an account; returns (user_id, token, auth headers)."""
    response = client.post("/auth/signup", json={
        "email": f"{name.lower()}@example.com",
        "password": "correct-horse",
        "displayName": name,
    })
    assert response.status_code == 201
    data = response.json()
    return data["userId"], data["sessionToken"], {"Authorization": f"Bearer {data['sessionToken']}"}


def receive_event(ws, event_type: str) -> dict:
    """Receive until an event of ``event_type`` arrives, skipping others."""
    while True:
        event = ws.receive_json()
        if event["type"] == event_type:
            return event


def receive_next(ws, skip=("presence_changed", "typing_changed", "room_membership_changed")) -> dict:
    """Receive the next event that is not background noise."""
    while True:
        event = ws.receive_json()
        if event["type"] not in skip:
            return event


def receive_credentials(ws) -> dict:
    connected = receive_event(ws, "connected")
    assert connected["connectionId"].startswith("conn-")
    return connected


# =============================================================================
# HTTP: auth and users
# =============================================================================


class TestAuthEndpoints:
    def test_health(self, api_client):
        assert api_client.get("/health").json() == {"status": "ok"}

    def test_signup_then_login(self, api_client):
        user_id, _, _ = signup(api_client, "Ada")

        response = api_client.post("/auth/login", json={
            "email": "ADA@example.com", "password": "correct-horse",
        })

        assert response.status_code == 200
        assert response.json()["userId"] == user_id
        assert response.json()["sessionToken"]

    def test_invalid_login_is_unauthenticated(self, api_client):
        """A wrong password gets 401 and no token."""
        signup(api_client, "Ada")

        response = api_client.post("/auth/login", json={
            "email": "ada@example.com", "password": "wrong-horse",
        })

        assert response.status_code == 401
        assert response.json()["error"] == "unauthenticated"
        assert "sessionToken" not in response.json()

    def test_duplicate_signup_is_conflict(self, api_client):
        signup(api_client, "Ada")
        response = api_client.post("/auth/signup", json={
            "email": "Ada@Example.com", "password": "another-pass", "displayName": "Ada 2",
        })
        assert response.status_code == 409
        assert response.json()["error"] == "conflict"

    def test_short_password_is_invalid_input(self, api_client):
        response = api_client.post("/auth/signup", json={
            "email": "ada@example.com", "password": "short", "displayName": "Ada",
        })
        assert response.status_code == 422
        assert response.json()["error"] == "invalid_input"

    def test_missing_or_bad_token(self, api_client):
        assert api_client.get("/users/me").status_code == 401
        response = api_client.get("/users/me", headers={"Authorization": "Bearer forged"})
        assert response.status_code == 401
        assert response.json()["error"] == "unauthenticated"

    def test_logout_revokes_token(self, api_client):
        _, _, headers = signup(api_client, "Ada")

        assert api_client.post("/auth/logout", headers=headers).status_code == 200
        assert api_client.get("/users/me", headers=headers).status_code == 401

    def test_deactivate(self, api_client):
        _, _, headers = signup(api_client, "Ada")
        _, _, bob_headers = signup(api_client, "Bob")

        response = api_client.post("/auth/deactivate", headers=headers)

        assert response.json()["active"] is False
        assert api_client.get("/users/me", headers=headers).status_code == 401
        assert api_client.post("/auth/login", json={
            "email": "ada@example.com", "password": "correct-horse",
        }).status_code == 401
        assert api_client.get("/users", headers=bob_headers).json()["users"] == []


class TestUserEndpoints:
    def test_profile(self, api_client):
        user_id, _, headers = signup(api_client, "Ada")

        me = api_client.get("/users/me", headers=headers).json()
        assert me["id"] == user_id
        assert me["email"] == "ada@example.com"

        updated = api_client.patch("/users/me", headers=headers, json={"displayName": "Countess"})
        assert updated.json()["displayName"] == "Countess"

    def test_contacts_with_unread_counts(self, api_client):
        ada_id, _, ada_headers = signup(api_client, "Ada")
        bob_id, _, bob_headers = signup(api_client, "Bob")
        signup(api_client, "Grace")

        api_client.post(f"/conversations/dm:{ada_id}:{bob_id}/messages",
                        headers=bob_headers, json={"body": "hi"})

        users = api_client.get("/users", headers=ada_headers).json()["users"]
        assert [(u["displayName"], u["unreadCount"]) for u in users] == [("Bob", 1), ("Grace", 0)]
        assert all(u["status"] == "offline" for u in users)

        filtered = api_client.get("/users", params={"q": "gra"}, headers=ada_headers).json()["users"]
        assert [u["displayName"] for u in filtered] == ["Grace"]


# =============================================================================
# HTTP: rooms and conversations
# =============================================================================


class TestRoomEndpoints:
    def test_create_join_leave(self, api_client):
        ada_id, _, ada_headers = signup(api_client, "Ada")
        _, _, bob_headers = signup(api_client, "Bob")

        room = api_client.post("/rooms", headers=ada_headers,
                               json={"name": "Orbit", "description": "Space"})
        assert room.status_code == 201
        room = room.json()
        assert room["memberCount"] == 1

        joined = api_client.post(f"/rooms/{room['id']}/join", headers=bob_headers).json()
        assert joined["memberCount"] == 2
        again = api_client.post(f"/rooms/{room['id']}/join", headers=bob_headers).json()
        assert again["memberCount"] == 2

        detail = api_client.get(f"/rooms/{room['id']}", headers=bob_headers).json()
        assert detail["isMember"] is True

        left = api_client.post(f"/rooms/{room['id']}/leave", headers=bob_headers).json()
        assert left["memberCount"] == 1

    def test_invalid_room_name(self, api_client):
        _, _, headers = signup(api_client, "Ada")
        response = api_client.post("/rooms", headers=headers, json={"name": "ab"})
        assert response.status_code == 422
        assert response.json()["error"] == "invalid_input"

    def test_search_rooms(self, api_client):
        _, _, headers = signup(api_client, "Ada")
        api_client.post("/rooms", headers=headers, json={"name": "Orbit"})
        api_client.post("/rooms", headers=headers, json={"name": "Kitchen"})

        rooms = api_client.get("/rooms", params={"q": "orb"}, headers=headers).json()["rooms"]
        assert [r["name"] for r in rooms] == ["Orbit"]
        assert rooms[0]["isMember"] is True

    def test_unknown_room(self, api_client):
        _, _, headers = signup(api_client, "Ada")
        assert api_client.get("/rooms/room-missing", headers=headers).status_code == 404
        assert api_client.post("/rooms/room-missing/join", headers=headers).status_code == 404


class TestConversationEndpoints:
    def test_send_and_page_history(self, api_client):
        _, _, headers = signup(api_client, "Ada")
        room = api_client.post("/rooms", headers=headers, json={"name": "Orbit"}).json()
        path = f"/conversations/room:{room['id']}/messages"

        sent = [api_client.post(path, headers=headers, json={"body": f"m{i}"}).json() for i in range(5)]

        page = api_client.get(path, params={"limit": 2}, headers=headers).json()
        assert [m["body"] for m in page["messages"]] == ["m0", "m1"]
        assert page["hasMore"] is True

        rest = api_client.get(path, params={"cursor": page["messages"][-1]["id"]}, headers=headers).json()
        assert [m["id"] for m in rest["messages"]] == [m["id"] for m in sent[2:]]
        assert rest["hasMore"] is False

        latest = api_client.get(f"{path}/latest", params={"limit": 2}, headers=headers).json()
        assert [m["body"] for m in latest["messages"]] == ["m3", "m4"]
        assert latest["hasMore"] is True

    def test_empty_body_rejected(self, api_client):
        _, _, headers = signup(api_client, "Ada")
        room = api_client.post("/rooms", headers=headers, json={"name": "Orbit"}).json()

        response = api_client.post(f"/conversations/room:{room['id']}/messages",
                                   headers=headers, json={"body": "   "})

        assert response.status_code == 422
        history = api_client.get(f"/conversations/room:{room['id']}/messages", headers=headers)
        assert history.json()["messages"] == []

    def test_non_member_forbidden(self, api_client):
        _, _, ada_headers = signup(api_client, "Ada")
        _, _, eve_headers = signup(api_client, "Eve")
        room = api_client.post("/rooms", headers=ada_headers, json={"name": "Orbit"}).json()

        response = api_client.post(f"/conversations/room:{room['id']}/messages",
                                   headers=eve_headers, json={"body": "let me in"})
        assert response.status_code == 403
        assert response.json()["error"] == "not_a_member"

    def test_malformed_conversation(self, api_client):
        _, _, headers = signup(api_client, "Ada")
        response = api_client.get("/conversations/bogus/messages", headers=headers)
        assert response.status_code == 422

    def test_mark_read_and_unread(self, api_client):
        ada_id, _, ada_headers = signup(api_client, "Ada")
        bob_id, _, bob_headers = signup(api_client, "Bob")
        path = f"/conversations/dm:{ada_id}:{bob_id}"

        m1 = api_client.post(f"{path}/messages", headers=ada_headers, json={"body": "M1"}).json()
        api_client.post(f"{path}/messages", headers=ada_headers, json={"body": "M2"})
        assert api_client.get(f"{path}/unread", headers=bob_headers).json()["unreadCount"] == 2

        receipts = api_client.post(f"{path}/read", headers=bob_headers,
                                   json={"uptoMessageId": m1["id"]}).json()["receipts"]
        assert receipts[0]["messageIds"] == [m1["id"]]
        assert api_client.get(f"{path}/unread", headers=bob_headers).json()["unreadCount"] == 1

        repeat = api_client.post(f"{path}/read", headers=bob_headers, json={"uptoMessageId": m1["id"]})
        assert repeat.json()["receipts"] == []


# =============================================================================
# WebSocket
# =============================================================================


class TestWebSocketProtocol:
    def test_bad_token_closes_socket(self, api_client):
        with api_client.websocket_connect("/ws?token=forged") as ws:
            error = ws.receive_json()
            assert error["type"] == "error"
            assert error["error"] == "unauthenticated"
            with pytest.raises(WebSocketDisconnect) as exc_info:
                ws.receive_json()
            assert exc_info.value.code == 1008

    def test_authenticate_command_and_ping(self, api_client):
        user_id, token, _ = signup(api_client, "Ada")

        with api_client.websocket_connect("/ws") as ws:
            ws.send_json({"type": "send", "conversation": "room:x", "body": "hi", "requestId": "r1"})
            error = receive_next(ws)
            assert error["error"] == "unauthenticated"
            assert error["requestId"] == "r1"

            ws.send_json({"type": "authenticate", "token": token})
            assert receive_credentials(ws)["userId"] == user_id

            ws.send_json({"type": "ping"})
            assert receive_next(ws) == {"type": "pong"}

    def test_invalid_frames_keep_socket_open(self, api_client):
        _, token, _ = signup(api_client, "Ada")

        with api_client.websocket_connect(f"/ws?token={token}") as ws:
            receive_credentials(ws)

            ws.send_text("not json")
            assert receive_next(ws)["error"] == "invalid_input"

            ws.send_json({"type": "teleport"})
            assert receive_next(ws)["error"] == "invalid_input"

            ws.send_json({"type": "history", "conversation": "nonsense"})
            assert receive_next(ws)["error"] == "invalid_input"

            ws.send_json({"type": "ping"})
            assert receive_next(ws) == {"type": "pong"}

    def test_orbit_room_scenario(self, api_client):
        """Ada creates Orbit, Bob joins, both see each message in order."""
        ada_id, ada_token, _ = signup(api_client, "Ada")
        bob_id, bob_token, _ = signup(api_client, "Bob")

        with api_client.websocket_connect(f"/ws?token={ada_token}") as ws_a, \
             api_client.websocket_connect(f"/ws?token={bob_token}") as ws_b:
            receive_credentials(ws_a)
            receive_credentials(ws_b)

            ws_a.send_json({"type": "create_room", "name": "Orbit", "requestId": "c1"})
            room = receive_event(ws_a, "ack")["result"]["room"]
            conversation = f"room:{room['id']}"

            ws_b.send_json({"type": "join_room", "roomId": room["id"]})
            assert receive_event(ws_b, "ack")["result"]["room"]["memberCount"] == 2
            joined = receive_event(ws_a, "room_membership_changed")
            assert (joined["userId"], joined["action"], joined["memberCount"]) == (bob_id, "joined", 2)

            ws_a.send_json({"type": "send", "conversation": conversation, "body": "Liftoff",
                            "requestId": "s1"})
            echoed = receive_next(ws_a)
            ack = receive_next(ws_a)
            assert echoed["type"] == "message"
            assert ack["type"] == "ack"
            assert ack["requestId"] == "s1"
            assert ack["result"]["message"]["id"] == echoed["message"]["id"]

            ws_b.send_json({"type": "send", "conversation": conversation, "body": "Copy that"})

            bodies_a = [receive_event(ws_a, "message")["message"]["body"]]
            bodies_b = [receive_event(ws_b, "message")["message"]["body"] for _ in range(2)]
            assert bodies_a == ["Copy that"]
            assert bodies_b == ["Liftoff", "Copy that"]

            ws_b.send_json({"type": "history", "conversation": conversation, "requestId": "h1"})
            history = receive_event(ws_b, "history")
            assert history["requestId"] == "h1"
            assert [m["senderId"] for m in history["messages"]] == [ada_id, bob_id]

    def test_dm_ordering_and_read_receipt(self, api_client):
        """M1 then M2 arrive in order; Bob's read reaches Ada."""
        ada_id, ada_token, ada_headers = signup(api_client, "Ada")
        bob_id, bob_token, _ = signup(api_client, "Bob")
        conversation = f"dm:{ada_id}:{bob_id}"

        with api_client.websocket_connect(f"/ws?token={ada_token}") as ws_a, \
             api_client.websocket_connect(f"/ws?token={bob_token}") as ws_b:
            receive_credentials(ws_a)
            receive_credentials(ws_b)

            api_client.post(f"/conversations/{conversation}/messages",
                            headers=ada_headers, json={"body": "M1"})
            ws_a.send_json({"type": "send", "conversation": conversation, "body": "M2"})

            received = [receive_event(ws_b, "message")["message"] for _ in range(2)]
            assert [m["body"] for m in received] == ["M1", "M2"]
            assert received[0]["id"] < received[1]["id"]

            ws_b.send_json({"type": "read", "conversation": conversation,
                            "uptoMessageId": received[1]["id"]})
            assert receive_event(ws_b, "ack")["result"]["marked"] == 2

            receipt = receive_event(ws_a, "read_state_changed")
            assert receipt["readerId"] == bob_id
            assert receipt["senderId"] == ada_id
            assert receipt["messageIds"] == [m["id"] for m in received]

    def test_presence_between_room_members(self, api_client):
        ada_id, ada_token, ada_headers = signup(api_client, "Ada")
        _, bob_token, bob_headers = signup(api_client, "Bob")
        room = api_client.post("/rooms", headers=ada_headers, json={"name": "Orbit"}).json()
        api_client.post(f"/rooms/{room['id']}/join", headers=bob_headers)

        with api_client.websocket_connect(f"/ws?token={bob_token}") as ws_b:
            receive_credentials(ws_b)

            with api_client.websocket_connect(f"/ws?token={ada_token}") as ws_a:
                receive_credentials(ws_a)
                online = receive_event(ws_b, "presence_changed")
                assert (online["userId"], online["status"]) == (ada_id, "online")

            offline = receive_event(ws_b, "presence_changed")
            assert (offline["userId"], offline["status"]) == (ada_id, "offline")
            assert offline["lastSeenAt"] is not None

    def test_reconnect_catch_up(self, api_client):
        ada_id, ada_token, ada_headers = signup(api_client, "Ada")
        _, bob_token, bob_headers = signup(api_client, "Bob")
        room = api_client.post("/rooms", headers=ada_headers, json={"name": "Orbit"}).json()
        api_client.post(f"/rooms/{room['id']}/join", headers=bob_headers)
        path = f"/conversations/room:{room['id']}/messages"

        last_seen = api_client.post(path, headers=ada_headers, json={"body": "seen"}).json()
        for body in ("missed 1", "missed 2"):
            api_client.post(path, headers=ada_headers, json={"body": body})

        with api_client.websocket_connect(f"/ws?token={bob_token}") as ws_b:
            receive_credentials(ws_b)
            ws_b.send_json({"type": "subscribe", "conversation": f"room:{room['id']}",
                            "cursor": last_seen["id"]})

            replayed = [receive_event(ws_b, "message") for _ in range(2)]
            assert [e["message"]["body"] for e in replayed] == ["missed 1", "missed 2"]
            assert all(e["isRecovery"] for e in replayed)
            assert receive_event(ws_b, "ack")["result"]["replayed"] == 2

    def test_logout_closes_sockets(self, api_client):
        _, token, headers = signup(api_client, "Ada")

        with api_client.websocket_connect(f"/ws?token={token}") as ws:
            receive_credentials(ws)
            api_client.post("/auth/logout", headers=headers)
            with pytest.raises(WebSocketDisconnect):
                while True:
                    ws.receive_json()


@pytest.fixture
def fast_typing_client():
    config = make_config(typing_ttl_seconds=0.2, typing_sweep_interval_seconds=0.05)
    with TestClient(create_app(config)) as client:
        yield client


def test_typing_indicator_expires(fast_typing_client):
    """Bob sees Ada typing, then the indicator clears on its own."""
    client = fast_typing_client
    ada_id, ada_token, ada_headers = signup(client, "Ada")
    _, bob_token, bob_headers = signup(client, "Bob")
    room = client.post("/rooms", headers=ada_headers, json={"name": "Orbit"}).json()
    client.post(f"/rooms/{room['id']}/join", headers=bob_headers)
    conversation = f"room:{room['id']}"

    with client.websocket_connect(f"/ws?token={ada_token}") as ws_a, \
         client.websocket_connect(f"/ws?token={bob_token}") as ws_b:
        receive_credentials(ws_a)
        receive_credentials(ws_b)

        ws_a.send_json({"type": "typing", "conversation": conversation})

        started = receive_event(ws_b, "typing_changed")
        assert started == {"type": "typing_changed", "conversation": conversation, "userIds": [ada_id]}

        stopped = receive_event(ws_b, "typing_changed")
        assert stopped["userIds"] == []


@pytest.fixture
def small_page_client():
    config = make_config(default_page_size=10, max_page_size=20)
    with TestClient(create_app(config)) as client:
        yield client


def test_paging_follows_configured_page_size(small_page_client):
    """A client that keeps following hasMore sees every message exactly once."""
    client = small_page_client
    _, _, headers = signup(client, "Ada")
    room = client.post("/rooms", headers=headers, json={"name": "Orbit"}).json()
    path = f"/conversations/room:{room['id']}/messages"
    sent = [client.post(path, headers=headers, json={"body": f"m{i}"}).json()["id"] for i in range(30)]

    first = client.get(path, headers=headers).json()
    assert len(first["messages"]) == 10
    assert first["hasMore"] is True

    capped = client.get(path, params={"limit": 100}, headers=headers).json()
    assert len(capped["messages"]) == 20
    assert capped["hasMore"] is True

    seen, cursor = [], None
    while True:
        params = {"limit": 100}
        if cursor:
            params["cursor"] = cursor
        page = client.get(path, params=params, headers=headers).json()
        seen.extend(m["id"] for m in page["messages"])
        if not page["hasMore"]:
            break
        cursor = page["messages"][-1]["id"]
    assert seen == sent
