"""
WebSocket bridge: channel routing, fan-out to sockets and connection auth.
"""
import asyncio

import pytest
from fastapi.testclient import TestClient
from starlette.websockets import WebSocketDisconnect

from tableside import security, ws_bridge


@pytest.fixture(autouse=True)
def clear_connections():
    ws_bridge.connections.clear()
    yield
    ws_bridge.connections.clear()


@pytest.fixture
def bridge():
    # Not entered as a context manager, so the Redis listener never starts
    return TestClient(ws_bridge.app)


class FakeSocket:
    def __init__(self):
        self.sent = []

    async def send_text(self, data):
        self.sent.append(data)


class ClosedSocket:
    async def send_text(self, data):
        raise RuntimeError("Cannot call send once a close message has been sent")


@pytest.mark.parametrize("channel, topic", [
    ("tableside:session:abc123", "session:abc123"),
    ("tableside:venue:4", "venue:4"),
    ("tableside:kitchen:4", None),
    ("tableside:venue:", None),
    ("other:venue:4", None),
])
def test_topic_from_channel(channel, topic):
    assert ws_bridge.topic_from_channel(channel) == topic


def test_broadcast_drops_dead_sockets():
    alive, dead = FakeSocket(), ClosedSocket()
    ws_bridge.register("venue:1", alive)
    ws_bridge.register("venue:1", dead)

    delivered = asyncio.run(ws_bridge.broadcast("venue:1", '{"kind": "updated"}'))

    assert delivered == 1
    assert alive.sent == ['{"kind": "updated"}']
    assert ws_bridge.connections["venue:1"] == {alive}


def test_broadcast_to_unknown_topic():
    assert asyncio.run(ws_bridge.broadcast("session:nobody", "{}")) == 0


def test_unregister_is_idempotent():
    socket = FakeSocket()
    ws_bridge.register("session:s1", socket)

    ws_bridge.unregister("session:s1", socket)
    ws_bridge.unregister("session:s1", socket)

    assert "session:s1" not in ws_bridge.connections


def test_venue_socket_rejects_bad_token(bridge):
    with bridge.websocket_connect("/ws/venue/1?token=garbage") as ws:
        with pytest.raises(WebSocketDisconnect) as exc_info:
            ws.receive_text()
    assert exc_info.value.code == 1008


def test_venue_socket_rejects_other_venue(bridge):
    token = security.create_access_token({"sub": "staff@bistro.test", "venue_id": 2})
    with bridge.websocket_connect(f"/ws/venue/1?token={token}") as ws:
        with pytest.raises(WebSocketDisconnect) as exc_info:
            ws.receive_text()
    assert exc_info.value.code == 1008


def test_venue_socket_asks_for_resync(bridge):
    token = security.create_access_token({"sub": "staff@bistro.test", "venue_id": 1})
    with bridge.websocket_connect(f"/ws/venue/1?token={token}") as ws:
        assert ws.receive_json() == {"type": "connected", "topic": "venue:1", "resync": True}
        assert len(ws_bridge.connections["venue:1"]) == 1


def test_table_socket_follows_active_session(bridge, monkeypatch):
    async def fake_validate(table_token):
        if table_token == "t7":
            return {"table_id": 7, "venue_id": 1, "session_id": "abc", "valid": True}
        return None

    monkeypatch.setattr(ws_bridge, "validate_table_token", fake_validate)

    with bridge.websocket_connect("/ws/table/t7") as ws:
        assert ws.receive_json()["topic"] == "session:abc"

    with bridge.websocket_connect("/ws/table/unknown") as ws:
        with pytest.raises(WebSocketDisconnect):
            ws.receive_text()


def test_table_socket_without_session_is_closed(bridge, monkeypatch):
    async def fake_validate(table_token):
        return {"table_id": 7, "venue_id": 1, "session_id": None, "valid": True}

    monkeypatch.setattr(ws_bridge, "validate_table_token", fake_validate)

    with bridge.websocket_connect("/ws/table/t7") as ws:
        with pytest.raises(WebSocketDisconnect) as exc_info:
            ws.receive_text()
    assert exc_info.value.code == 1008
