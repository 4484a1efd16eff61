import json

import msgpack
import pytest
from starlette.testclient import WebSocketDenialResponse

from pong_server import PROTOCOL

from conftest import SNAPSHOT, TEST_ADMIN_KEY, FakeSocket


def _connect(client, token):
    return client.websocket_connect("/ws", subprotocols=[PROTOCOL, token])


def test_handshake_welcomes_with_decoded_identity(client, token):
    with _connect(client, token) as ws:
        assert ws.accepted_subprotocol == PROTOCOL
        welcome = ws.receive_json()
    assert welcome["type"] == "welcome"
    assert welcome["user"]["sub"] == "player-1"
    assert welcome["user"]["role"] == "tester"


def test_handshake_with_query_token(client, token):
    with client.websocket_connect(f"/ws?token={token}", subprotocols=[PROTOCOL]) as ws:
        assert ws.receive_json()["user"]["sub"] == "player-1"


@pytest.mark.parametrize(
    "path, subprotocols, status",
    [
        ("/ws", [], 400),
        ("/ws", ["chat.v2", "whatever"], 400),
        ("/ws", [PROTOCOL], 401),
        ("/ws", [PROTOCOL, "not-a-jwt"], 401),
        ("/ws?token=not-a-jwt", [PROTOCOL], 401),
    ],
)
def test_rejected_handshakes_never_register(client, pong_app, path, subprotocols, status):
    with pytest.raises(WebSocketDenialResponse) as exc:
        with client.websocket_connect(path, subprotocols=subprotocols):
            pass
    assert exc.value.status_code == status
    assert len(pong_app.state.registry) == 0


def test_session_lives_as_long_as_connection(client, pong_app, token):
    with _connect(client, token) as ws:
        ws.receive_json()
        assert client.get("/health").json()["sessions"] == 1
        session = pong_app.state.registry.sessions()[0]
        assert session.identity == "player-1"
    assert len(pong_app.state.registry) == 0
    assert session.closed


def test_binary_and_text_state_frames_update_latest_state(client, pong_app, token):
    with _connect(client, token) as ws:
        ws.receive_json()
        ws.send_bytes(msgpack.packb(["state", SNAPSHOT]))
        ws.send_json({"type": "ping"})
        assert ws.receive_json()["type"] == "pong"
        session = pong_app.state.registry.sessions()[0]
        assert session.last_state == SNAPSHOT

        ws.send_text(json.dumps({"type": "state", "state": {"running": False}}))
        ws.send_json({"type": "ping"})
        assert ws.receive_json()["type"] == "pong"
        assert session.last_state == {"running": False}


def test_sixth_state_frame_within_a_second_is_dropped(client, pong_app, token):
    with _connect(client, token) as ws:
        ws.receive_json()
        for seq in range(6):
            ws.send_bytes(msgpack.packb(["state", {"seq": seq}]))
        ws.send_json({"type": "ping"})

        # Nothing is emitted for the dropped frame: the next event is the pong
        assert ws.receive_json()["type"] == "pong"
        session = pong_app.state.registry.sessions()[0]
        assert session.last_state == {"seq": 4}


def test_coach_toggle(client, pong_app, token):
    with _connect(client, token) as ws:
        ws.receive_json()
        session = pong_app.state.registry.sessions()[0]
        session.last_coach_at = 12345.0

        ws.send_json({"type": "coach_enable", "enable": True})
        assert ws.receive_json() == {"type": "coach_status", "enabled": True}
        assert session.coach_enabled
        assert session.last_coach_at is None

        ws.send_json({"type": "coach_enable", "enable": False})
        assert ws.receive_json() == {"type": "coach_status", "enabled": False}


def test_ping_pong(client, token):
    with _connect(client, token) as ws:
        ws.receive_json()
        ws.send_json({"type": "ping"})
        pong = ws.receive_json()
    assert pong["type"] == "pong"
    assert isinstance(pong["ts"], int)


def test_malformed_frames_report_error_and_keep_session(client, pong_app, token):
    with _connect(client, token) as ws:
        ws.receive_json()
        ws.send_bytes(b"\xc1\xc1")
        assert ws.receive_json() == {"type": "error", "message": "invalid message"}
        ws.send_text("{oops")
        assert ws.receive_json() == {"type": "error", "message": "invalid message"}

        session = pong_app.state.registry.sessions()[0]
        assert session.last_state is None

        ws.send_json({"type": "ping"})
        assert ws.receive_json()["type"] == "pong"


def test_unknown_message_type(client, token):
    with _connect(client, token) as ws:
        ws.receive_json()
        ws.send_json({"type": "launch_missiles"})
        assert ws.receive_json() == {"type": "error", "message": "unknown message type"}


def test_health(client):
    body = client.get("/health").json()
    assert body == {"ok": True, "simulated": True, "sessions": 0}


def test_dev_token_requires_admin_key(client):
    assert client.post("/auth/token", json={"adminKey": "wrong"}).status_code == 401
    assert client.post("/auth/token", json={}).status_code == 401
    response = client.post("/auth/token", content=b"not json", headers={"content-type": "application/json"})
    assert response.status_code == 401
    assert response.json() == {"error": "invalid adminKey"}


def test_dev_token_opens_a_session(client, pong_app):
    token = client.post("/auth/token", json={"adminKey": TEST_ADMIN_KEY}).json()["token"]
    claims = pong_app.state.authenticator.authenticate([PROTOCOL, token])
    assert claims["sub"] == "dev-user"
    assert claims["role"] == "tester"
    with _connect(client, token) as ws:
        assert ws.receive_json()["user"]["sub"] == "dev-user"


# -- Registry ----------------------------------------------------------------


def test_registry_lifecycle(registry):
    socket = FakeSocket()
    session = registry.register(socket, {"sub": "alice", "role": "tester"})
    assert registry.get(socket) is session
    assert session.identity == "alice"
    assert session.last_state is None
    assert not session.coach_enabled
    assert session.is_open

    assert registry.unregister(socket) is session
    assert session.closed
    assert not session.is_open
    assert registry.get(socket) is None
    assert registry.unregister(socket) is None


async def test_send_to_closed_or_failing_socket_is_swallowed(registry):
    class BrokenSocket(FakeSocket):
        async def send_text(self, text):
            raise RuntimeError("socket gone")

    broken = registry.register(BrokenSocket(), {"sub": "bob"})
    assert await broken.send({"type": "commentary", "text": "hi"}) is False

    socket = FakeSocket()
    session = registry.register(socket, {"sub": "carol"})
    socket.disconnect()
    assert await session.send({"type": "commentary", "text": "hi"}) is False
    assert socket.sent == []
