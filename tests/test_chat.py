import asyncio

import pytest
from starlette.websockets import WebSocketDisconnect

from auth import create_token
from chat import ChatHub, ChatStore


def test_store_keeps_conversations_apart():
    store = ChatStore()
    store.append("u1", "hi", is_admin=False)
    store.append("u2", "hello", is_admin=False)
    store.append("u1", "how can we help?", is_admin=True)

    assert [m["message"] for m in store.history("u1")] == ["hi", "how can we help?"]
    assert store.history("u3") == []


def test_message_reaches_user_and_admins(client, db, buyer, admin):
    uid = str(buyer["_id"])
    with client.websocket_connect(f"/ws/chat-admin?token={create_token(admin)}") as admin_ws:
        with client.websocket_connect(f"/ws/chat/{uid}?token={create_token(buyer)}") as ws:
            assert ws.receive_json() == {"type": "chatHistory", "messages": []}
            ws.send_json({"message": "My parcel is late"})

            echoed = ws.receive_json()
            assert echoed["type"] == "receiveMessage"
            assert echoed["message"]["message"] == "My parcel is late"
            assert echoed["message"]["is_admin"] is False

            relayed = admin_ws.receive_json()
            assert relayed["type"] == "receiveMessageAdmin"
            assert relayed["user_id"] == uid

            admin_ws.send_json({"user_id": uid, "message": "Checking now"})
            reply = ws.receive_json()
            assert reply["message"]["is_admin"] is True
            admin_ws.receive_json()

    actions = [a["action"] for a in db["activity"].find({"user_id": uid})]
    assert actions == ["User Messaged Support", "Admin Replied"]

    with client.websocket_connect(f"/ws/chat/{uid}?token={create_token(buyer)}") as ws:
        history = ws.receive_json()["messages"]
        assert [m["message"] for m in history] == ["My parcel is late", "Checking now"]


def test_chat_rejects_other_users(client, buyer, make_user):
    other = make_user("Other Person", "other@shopper.io")
    with pytest.raises(WebSocketDisconnect):
        with client.websocket_connect(f"/ws/chat/{buyer['_id']}?token={create_token(other)}") as ws:
            ws.receive_json()
    with pytest.raises(WebSocketDisconnect):
        with client.websocket_connect(f"/ws/chat-admin?token={create_token(buyer)}") as ws:
            ws.receive_json()


class FakeSocket:
    def __init__(self, closed=False):
        self.closed = closed
        self.sent = []

    async def send_json(self, payload):
        if self.closed:
            raise RuntimeError('Cannot call "send" once a close message has been sent.')
        self.sent.append(payload)


def test_closed_peer_does_not_block_delivery():
    hub = ChatHub()
    user_ws, dead_admin, live_admin = FakeSocket(), FakeSocket(closed=True), FakeSocket()
    hub.join("u1", user_ws)
    hub.join_admin(dead_admin)
    hub.join_admin(live_admin)

    asyncio.run(hub.deliver("u1", {"message": "hi"}))

    assert user_ws.sent[0]["type"] == "receiveMessage"
    assert live_admin.sent[0]["type"] == "receiveMessageAdmin"
    assert hub.admin_sockets == {live_admin}


def test_leave_forgets_empty_conversations():
    hub = ChatHub()
    first, second = FakeSocket(), FakeSocket()
    hub.join("u1", first)
    hub.join("u1", second)

    hub.leave(first)
    assert hub.user_sockets["u1"] == {second}

    hub.leave(second)
    assert "u1" not in hub.user_sockets
