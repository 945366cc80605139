"""Tests for the WebSocket chat event relay."""

from __future__ import annotations

import time
from unittest.mock import AsyncMock

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from chat_copilot.transport import WebSocketGroupBroadcaster, init_chat_ws_route


def wait_for(condition, timeout=2.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if condition():
            return True
        time.sleep(0.01)
    return condition()


@pytest.fixture
def relay():
    return WebSocketGroupBroadcaster()


async def connect(relay, client_id, group_id):
    websocket = AsyncMock()
    assert await relay.connect(client_id, websocket)
    relay.add_to_group(client_id, group_id)
    return websocket


class TestBroadcaster:
    async def test_broadcast_reaches_group_only(self, relay):
        alice = await connect(relay, "alice", "chat-1")
        bob = await connect(relay, "bob", "chat-2")

        await relay.broadcast("chat-1", "ReceiveBotResponseStatus", "chat-1", "Generating bot response")

        alice.send_json.assert_awaited_once_with(
            {"type": "ReceiveBotResponseStatus", "payload": ["chat-1", "Generating bot response"]}
        )
        bob.send_json.assert_not_awaited()

    async def test_failed_send_does_not_stop_others(self, relay, log_messages):
        broken = await connect(relay, "broken", "chat-1")
        broken.send_json.side_effect = RuntimeError("connection reset")
        healthy = await connect(relay, "healthy", "chat-1")

        sent = await relay.broadcast_to_group("chat-1", {"type": "ReceiveMessage", "payload": []})

        assert sent == 1
        healthy.send_json.assert_awaited_once()
        assert any("connection reset" in w for w in log_messages("WARNING"))

    async def test_exclude(self, relay):
        await connect(relay, "alice", "chat-1")
        bob = await connect(relay, "bob", "chat-1")

        sent = await relay.broadcast_to_group("chat-1", {"type": "x"}, exclude={"bob"})

        assert sent == 1
        bob.send_json.assert_not_awaited()

    async def test_disconnect_leaves_groups(self, relay):
        websocket = await connect(relay, "alice", "chat-1")

        await relay.disconnect("alice")

        assert relay.group_members("chat-1") == set()
        assert "alice" not in relay.active_connections
        websocket.close.assert_awaited_once()

    async def test_accept_failure(self, relay, log_messages):
        websocket = AsyncMock()
        websocket.accept.side_effect = RuntimeError("handshake failed")

        assert not await relay.connect("alice", websocket)
        assert "alice" not in relay.active_connections
        assert log_messages("ERROR")

    async def test_unknown_client_send(self, relay):
        assert not await relay.send_json("ghost", {"type": "x"})


class TestRoute:
    @pytest.fixture
    def client(self, relay):
        app = FastAPI()
        app.include_router(init_chat_ws_route(relay))
        return TestClient(app)

    def test_receives_chat_events(self, client, relay):
        with client.websocket_connect("/chats/chat-1/ws?client_id=alice") as ws:
            assert wait_for(lambda: "alice" in relay.group_members("chat-1"))

            ws.portal.call(relay.broadcast, "chat-1", "ReceiveMessage", {"id": "m-1"})

            assert ws.receive_json() == {"type": "ReceiveMessage", "payload": [{"id": "m-1"}]}

    def test_join_and_leave(self, client, relay):
        with client.websocket_connect("/chats/chat-1/ws?client_id=alice") as ws:
            ws.send_json({"type": "join", "chat_id": "chat-2"})
            assert wait_for(lambda: "alice" in relay.group_members("chat-2"))

            ws.send_json({"type": "leave", "chat_id": "chat-1"})
            assert wait_for(lambda: "alice" not in relay.group_members("chat-1"))

    def test_disconnect_cleans_up(self, client, relay):
        with client.websocket_connect("/chats/chat-1/ws?client_id=alice"):
            assert wait_for(lambda: "alice" in relay.active_connections)

        assert wait_for(lambda: "alice" not in relay.active_connections)
        assert relay.group_members("chat-1") == set()
