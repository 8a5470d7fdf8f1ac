import asyncio

import pytest
from starlette.websockets import WebSocketDisconnect

from relaychat.routers.chat import WS_UNAUTHENTICATED, stop_forwarder
from relaychat.utils.security import create_access_token


def receive_until(ws, frame_type, limit=10):
    """Read frames until one of ``frame_type`` arrives; returns (match, skipped)."""
    skipped = []
    for _ in range(limit):
        frame = ws.receive_json()
        if frame.get("type") == frame_type:
            return frame, skipped
        skipped.append(frame)
    raise AssertionError(f"no {frame_type} frame in {skipped}")


@pytest.fixture
def direct_id(client, auth, users):
    resp = client.post("/conversations/direct", json={"peer_id": users["bob"]}, headers=auth(users["alice"]))
    return resp.json()["id"]


def test_socket_requires_token(client):
    with pytest.raises(WebSocketDisconnect) as exc_info:
        with client.websocket_connect("/ws"):
            pass
    assert exc_info.value.code == WS_UNAUTHENTICATED


def test_socket_rejects_bad_token(client, users, settings):
    token = create_access_token(users["bob"], secret="not-ours")
    with pytest.raises(WebSocketDisconnect):
        with client.websocket_connect(f"/ws?token={token}"):
            pass


def test_first_frame_is_snapshot(client, users, direct_id, settings):
    token = create_access_token(users["bob"])
    with client.websocket_connect(f"/ws?token={token}") as ws:
        frame = ws.receive_json()

    assert frame["type"] == "snapshot"
    assert [item["conversation"]["id"] for item in frame["items"]] == [direct_id]
    assert "as_of" in frame


def test_ping_and_resync(client, users, settings):
    token = create_access_token(users["bob"])
    with client.websocket_connect(f"/ws?token={token}") as ws:
        ws.receive_json()
        ws.send_json({"type": "ping"})
        assert ws.receive_json() == {"type": "pong"}
        ws.send_json({"type": "resync"})
        assert ws.receive_json()["type"] == "snapshot"


def test_message_is_pushed_to_peer(client, auth, users, direct_id):
    token = create_access_token(users["bob"])
    with client.websocket_connect(f"/ws?token={token}") as ws:
        ws.receive_json()
        sent = client.post(f"/conversations/{direct_id}/messages", json={"text": "hi"}, headers=auth(users["alice"])).json()

        event, _ = receive_until(ws, "message_created")

    assert event["conversation_id"] == direct_id
    assert event["message"]["id"] == sent["id"]
    assert event["message"]["seq"] == 1


def test_mark_read_frame_is_acked(client, auth, users, direct_id):
    client.post(f"/conversations/{direct_id}/messages", json={"text": "hi"}, headers=auth(users["alice"]))
    token = create_access_token(users["bob"])
    with client.websocket_connect(f"/ws?token={token}") as ws:
        snapshot = ws.receive_json()
        assert snapshot["items"][0]["unread_count"] == 1

        ws.send_json({"type": "mark_read", "conversation_id": direct_id})
        ack, _ = receive_until(ws, "ack")

    assert ack == {"type": "ack", "op": "mark_read", "conversation_id": direct_id, "unread_count": 0}


def test_send_frame(client, users, direct_id):
    token = create_access_token(users["bob"])
    with client.websocket_connect(f"/ws?token={token}") as ws:
        ws.receive_json()
        ws.send_json({"type": "send", "conversation_id": direct_id, "text": "from the socket"})
        ack, _ = receive_until(ws, "ack")

    assert ack["op"] == "send"
    assert ack["message"]["sender_id"] == users["bob"]
    assert ack["message"]["text"] == "from the socket"


def test_bad_frames_get_error_replies(client, users, direct_id):
    token = create_access_token(users["bob"])
    with client.websocket_connect(f"/ws?token={token}") as ws:
        ws.receive_json()

        ws.send_text("not json")
        assert ws.receive_json()["error"] == "InvalidInput"

        ws.send_json({"type": "send", "conversation_id": direct_id, "text": "a", "file_ref": "b"})
        assert ws.receive_json()["error"] == "InvalidPayload"

        ws.send_json({"type": "mark_read", "conversation_id": "64b7f0c2a1b2c3d4e5f60718"})
        assert ws.receive_json()["error"] == "ConversationNotFound"


@pytest.mark.anyio
async def test_stopping_a_failed_forwarder_logs_its_error(caplog):
    async def broken():
        raise RuntimeError("socket already closed")

    task = asyncio.create_task(broken())
    await asyncio.sleep(0)

    await stop_forwarder(task, "u1")

    assert task.done()
    assert "Push forwarder for u1 failed" in caplog.text


@pytest.mark.anyio
async def test_stopping_a_running_forwarder_cancels_it(caplog):
    task = asyncio.create_task(asyncio.Event().wait())
    await asyncio.sleep(0)

    await stop_forwarder(task, "u1")

    assert task.cancelled()
    assert "failed" not in caplog.text
