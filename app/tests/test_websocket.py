"""
Integration tests for the WebSocket endpoint and HTTP probes.
Runs the real application (lifespan, SQLite stores) through the test client.
"""
import pytest
from uuid import uuid4
from fastapi.testclient import TestClient
from jose import jwt
from starlette.websockets import WebSocketDisconnect
from core.config import settings
from db.database import SessionLocal
from db.models import RoomModel, UserModel
from main import app


def make_token(user_id: str, token_type: str = "access") -> str:
    return jwt.encode({"sub": user_id, "type": token_type}, settings.jwt_secret_key, algorithm=settings.jwt_algorithm)


def receive_until(websocket, event_type: str) -> dict:
    """Read frames until one of ``event_type`` arrives; returns its data."""
    while True:
        frame = websocket.receive_json()
        if frame["type"] == event_type:
            return frame["data"]


@pytest.fixture(scope="module")
def client():
    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture
def user(client) -> UserModel:
    return create_user()


@pytest.fixture
def room(client) -> str:
    """A fresh public room so tests never share membership."""
    room_id = f"room-{uuid4().hex[:8]}"
    db = SessionLocal()
    try:
        db.add(RoomModel(id=room_id, name=room_id, active_users=[]))
        db.commit()
    finally:
        db.close()
    return room_id


def create_user() -> UserModel:
    user_id = uuid4().hex
    db = SessionLocal()
    try:
        row = UserModel(id=user_id, username=f"user_{user_id[:10]}")
        db.add(row)
        db.commit()
        db.refresh(row)
        return row
    finally:
        db.close()


class TestAuthentication:
    """Tests for WebSocket authentication."""

    def test_query_token_connects(self, client: TestClient, user: UserModel):
        """Test a valid token in the query string is greeted with a connected frame."""
        with client.websocket_connect(f"/ws?token={make_token(user.id)}") as websocket:
            connected = receive_until(websocket, "connected")

        assert connected["userId"] == user.id
        assert connected["connectionId"]

    def test_authenticate_frame_connects(self, client: TestClient, user: UserModel):
        """Test a bare connection can authenticate with its first frame."""
        with client.websocket_connect("/ws") as websocket:
            websocket.send_json({"action": "authenticate", "token": make_token(user.id)})
            connected = receive_until(websocket, "connected")

        assert connected["userId"] == user.id

    def test_invalid_token_is_closed(self, client: TestClient):
        """Test an invalid token closes the socket with code 4001."""
        with pytest.raises(WebSocketDisconnect) as exc_info:
            with client.websocket_connect("/ws?token=not-a-jwt") as websocket:
                websocket.receive_json()
        assert exc_info.value.code == 4001

    def test_refresh_token_is_rejected(self, client: TestClient, user: UserModel):
        """Test tokens of another type cannot open a connection."""
        with pytest.raises(WebSocketDisconnect) as exc_info:
            with client.websocket_connect(f"/ws?token={make_token(user.id, 'refresh')}") as websocket:
                websocket.receive_json()
        assert exc_info.value.code == 4001

    def test_unknown_user_is_rejected(self, client: TestClient):
        """Test a well-signed token for a missing user is refused."""
        with pytest.raises(WebSocketDisconnect) as exc_info:
            with client.websocket_connect(f"/ws?token={make_token('nobody')}") as websocket:
                websocket.receive_json()
        assert exc_info.value.code == 4001


class TestMessaging:
    """Tests for room actions over the socket."""

    def test_send_message_round_trip(self, client: TestClient, room: str):
        """Test a message is acknowledged to its sender and pushed to other members."""
        alice, bob = create_user(), create_user()

        with client.websocket_connect(f"/ws?token={make_token(alice.id)}") as alice_ws, \
                client.websocket_connect(f"/ws?token={make_token(bob.id)}") as bob_ws:
            alice_ws.send_json({"action": "joinRoom", "roomId": room})
            assert receive_until(alice_ws, "joinedRoom")["roomId"] == room
            bob_ws.send_json({"action": "joinRoom", "roomId": room})
            receive_until(bob_ws, "joinedRoom")

            alice_ws.send_json({"action": "sendMessage", "roomId": room, "content": "hello bob"})
            sent = receive_until(alice_ws, "messageSent")
            received = receive_until(bob_ws, "receiveMessage")

        assert sent["success"] is True
        assert received["id"] == sent["message"]["id"]
        assert received["content"] == "hello bob"
        assert received["sequence"] == 1

    def test_send_without_joining(self, client: TestClient, user: UserModel, room: str):
        """Test posting to a room the user never joined returns FORBIDDEN."""
        with client.websocket_connect(f"/ws?token={make_token(user.id)}") as websocket:
            websocket.send_json({"action": "sendMessage", "roomId": room, "content": "hi"})
            error = receive_until(websocket, "error")

        assert error["code"] == "FORBIDDEN"
        assert error["action"] == "sendMessage"

    def test_history(self, client: TestClient, user: UserModel, room: str):
        """Test fetchHistory returns the room's persisted messages."""
        with client.websocket_connect(f"/ws?token={make_token(user.id)}") as websocket:
            websocket.send_json({"action": "joinRoom", "roomId": room})
            receive_until(websocket, "joinedRoom")
            for text in ("one", "two"):
                websocket.send_json({"action": "sendMessage", "roomId": room, "content": text})
                receive_until(websocket, "messageSent")

            websocket.send_json({"action": "fetchHistory", "roomId": room, "limit": 10})
            history = receive_until(websocket, "history")

        assert [m["content"] for m in history["messages"]] == ["one", "two"]


class TestFrameErrors:
    """Tests for malformed frames."""

    @pytest.mark.parametrize("frame, code", [
        ("not json", "INVALID_JSON"),
        ('{"action": "dance"}', "INVALID_ACTION"),
        ('{"action": "joinRoom"}', "INVALID_MESSAGE"),
        ("[1, 2]", "INVALID_MESSAGE"),
    ])
    def test_bad_frames_get_error(self, client: TestClient, user: UserModel, frame: str, code: str):
        """Test malformed frames are answered with an error and the socket stays open."""
        with client.websocket_connect(f"/ws?token={make_token(user.id)}") as websocket:
            websocket.send_text(frame)
            assert receive_until(websocket, "error")["code"] == code

            websocket.send_json({"action": "pong"})
            websocket.send_json({"action": "leaveRoom", "roomId": "general"})
            assert receive_until(websocket, "leftRoom")["roomId"] == "general"


class TestProbes:
    """Tests for health, readiness and metrics endpoints."""

    def test_health(self, client: TestClient):
        """Test /health reports the database and hub counters."""
        response = client.get("/health")

        assert response.status_code == 200
        data = response.json()
        assert data["database"]["healthy"] is True
        assert "connections" in data["hub"]

    def test_ready(self, client: TestClient):
        """Test /ready succeeds with the default in-process backends."""
        response = client.get("/ready")
        assert response.status_code == 200
        assert response.json()["checks"]["database"]["healthy"] is True

    def test_metrics(self, client: TestClient):
        """Test /metrics exposes the chat core collectors."""
        response = client.get("/metrics")
        assert response.status_code == 200
        assert "chat_websocket_connections_active" in response.text
