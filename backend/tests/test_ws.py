from __future__ import annotations

import time

import pytest
from fastapi.websockets import WebSocketDisconnect
from starlette.testclient import WebSocketTestSession

from app.api import ws as ws_module
from app.core.security import create_access_token
from app.models import ChatType
from app.realtime import get_chat_manager, get_presence_manager, get_typing_manager
from app.services import conversations


@pytest.fixture(autouse=True)
def reset_realtime_state():
    def clear() -> None:
        get_chat_manager()._connections.clear()
        presence = get_presence_manager().store
        presence._online.clear()
        presence._sockets.clear()
        get_typing_manager().store._entries.clear()

    clear()
    yield
    clear()


@pytest.fixture()
def direct_chat(db_session, make_user):
    alice = make_user("alice")
    bob = make_user("bob")
    chat, _ = conversations.create_chat(alice.id, ChatType.DIRECT, [bob.id], db_session)
    return chat, alice, bob


def ws_url(chat_id: int, user) -> str:
    token = create_access_token({"sub": str(user.id)})
    return f"/ws/chats/{chat_id}?token={token}"


def test_socket_streams_presence_typing_messages_and_receipts(client, direct_chat, auth_headers) -> None:
    chat, alice, bob = direct_chat

    with client.websocket_connect(ws_url(chat.id, alice)) as alice_ws:
        assert alice_ws.receive_json() == {
            "type": "presence",
            "chat_id": chat.id,
            "online": [{"id": alice.id, "display_name": "Alice"}],
        }

        with client.websocket_connect(ws_url(chat.id, bob)) as bob_ws:
            bob_snapshot = bob_ws.receive_json()
            assert [entry["id"] for entry in bob_snapshot["online"]] == [alice.id, bob.id]
            joined = alice_ws.receive_json()
            assert joined["type"] == "presence"
            assert len(joined["online"]) == 2

            bob_ws.send_json({"type": "typing", "event": "start"})
            typing = alice_ws.receive_json()
            assert typing["type"] == "typing"
            assert typing["users"] == [{"id": bob.id, "display_name": "Bob"}]

            bob_ws.send_json({"type": "typing", "event": "stop"})
            assert alice_ws.receive_json()["users"] == []

            bob_ws.send_json({"type": "ping"})
            assert bob_ws.receive_json() == {"type": "pong"}

            response = client.post(
                f"/api/chats/{chat.id}/messages",
                json={"content": "hello bob", "client_token": "c-1"},
                headers=auth_headers(alice),
            )
            assert response.status_code == 201
            message_id = response.json()["id"]

            created = alice_ws.receive_json()
            assert created["type"] == "message"
            assert created["action"] == "created"
            assert created["message"]["id"] == message_id
            assert bob_ws.receive_json()["message"]["content"] == "hello bob"

            bob_ws.send_json({"type": "read", "last_message_id": message_id})
            status_update = alice_ws.receive_json()
            assert status_update == {
                "type": "status",
                "chat_id": chat.id,
                "updates": [{"message_id": message_id, "sequence": 1, "status": "read"}],
            }
            read_state = alice_ws.receive_json()
            assert read_state["type"] == "read_state"
            assert read_state["user_id"] == bob.id
            assert read_state["last_read_sequence"] == 1


def test_socket_reports_invalid_frames(client, direct_chat) -> None:
    chat, alice, _ = direct_chat

    with client.websocket_connect(ws_url(chat.id, alice)) as connection:
        connection.receive_json()

        connection.send_text("not json")
        assert connection.receive_json()["kind"] == "invalid_frame"

        connection.send_json({"type": "delivered", "message_ids": ["x"]})
        assert connection.receive_json()["kind"] == "invalid_frame"

        connection.send_json({"type": "teleport"})
        assert connection.receive_json()["kind"] == "invalid_frame"

        connection.send_json({"type": "read", "last_message_id": 999})
        error = connection.receive_json()
        assert error == {"type": "error", "kind": "message_not_found", "message": "Message not found"}


def test_socket_rejects_missing_token_and_outsiders(client, direct_chat, make_user) -> None:
    chat, _, _ = direct_chat
    outsider = make_user("mallory")

    with pytest.raises(WebSocketDisconnect):
        with client.websocket_connect(f"/ws/chats/{chat.id}"):
            pass

    with pytest.raises(WebSocketDisconnect) as excinfo:
        with client.websocket_connect(ws_url(chat.id, outsider)):
            pass
    assert excinfo.value.code == 1008


def test_connection_survives_keepalive_timeout(client, direct_chat, monkeypatch) -> None:
    """Server side keepalive pings keep an idle socket open."""

    chat, alice, _ = direct_chat
    monkeypatch.setattr(ws_module.settings, "websocket_keepalive_timeout_seconds", 0.1)
    monkeypatch.setattr(ws_module.settings, "websocket_keepalive_ping_interval_seconds", 0.05)

    with client.websocket_connect(ws_url(chat.id, alice)) as connection:
        _assert_keepalive_sequence(connection)


def _assert_keepalive_sequence(connection: WebSocketTestSession) -> None:
    snapshot = connection.receive_json()
    assert snapshot["type"] == "presence"

    time.sleep(0.15)
    ping = connection.receive_json()
    assert ping["type"] == "ping"
    connection.send_json({"type": "pong"})

    time.sleep(0.12)
    ping_again = connection.receive_json()
    assert ping_again["type"] == "ping"

    connection.send_json({"type": "ping"})
    assert connection.receive_json() == {"type": "pong"}
