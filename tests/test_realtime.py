import asyncio

import pytest
from fastapi.testclient import TestClient
from starlette.websockets import WebSocketDisconnect

import app as app_module
from auth_service import generate_access_token
from conftest import shipping
from realtime import ConnectionManager, chat_room, manager, order_room


class FakeSocket:
    def __init__(self, broken=False):
        self.accepted = False
        self.sent = []
        self.broken = broken

    async def accept(self):
        self.accepted = True

    async def send_json(self, message):
        if self.broken:
            raise RuntimeError("socket closed")
        self.sent.append(message)


def test_room_names():
    assert order_room("abc") == "order_abc"
    assert chat_room("abc") == "chat_abc"


def test_broadcast_skips_sender_and_drops_dead_sockets():
    connections = ConnectionManager()
    alive, sender, dead = FakeSocket(), FakeSocket(), FakeSocket(broken=True)

    async def scenario():
        for ws in (alive, sender, dead):
            await connections.connect("order_1", ws)
        return await connections.broadcast("order_1", "status_updated", {"status": "Packed"}, exclude=sender)

    assert asyncio.run(scenario()) == 1
    assert alive.sent == [{"event": "status_updated", "data": {"status": "Packed"}}]
    assert sender.sent == []
    assert connections.count("order_1") == 2

    connections.disconnect("order_1", alive)
    connections.disconnect("order_1", sender)
    assert connections.count("order_1") == 0
    assert "order_1" not in connections.rooms


@pytest.fixture
def live_client(services):
    with TestClient(app_module.app) as client:
        yield client


def token_for(user):
    return generate_access_token(user["_id"], user.get("email"))


@pytest.fixture
def dispatched(services, user, admin, rider, make_product, area):
    milk = make_product("Milk", price=100, quantity=10)
    order = services.order_service.create_order(user, [{"product": milk["_id"], "quantity": 1}], shipping())
    services.order_service.assign_delivery_person(admin["_id"], order["_id"], rider["_id"])
    return str(order["_id"])


def test_order_socket_rejects_strangers(live_client, make_user, dispatched):
    stranger = make_user()
    for url in (f"/ws/orders/{dispatched}", f"/ws/orders/{dispatched}?token={token_for(stranger)}",
                f"/ws/orders/{dispatched}?token=garbage"):
        with pytest.raises(WebSocketDisconnect) as exc:
            with live_client.websocket_connect(url):
                pass
        assert exc.value.code == 1008


def test_customer_sees_rider_location(live_client, user, rider, dispatched):
    with live_client.websocket_connect(f"/ws/orders/{dispatched}?token={token_for(user)}") as customer:
        resp = live_client.put(f"/api/order-tracking/{dispatched}/location",
                               headers={"Authorization": f"Bearer {token_for(rider)}"},
                               json={"latitude": 12.95, "longitude": 77.6})
        assert resp.status_code == 200
        message = customer.receive_json()
    assert message["event"] == "location_updated"
    assert message["data"]["latitude"] == 12.95


def test_rider_can_stream_location_over_socket(live_client, user, rider, dispatched):
    with live_client.websocket_connect(f"/ws/orders/{dispatched}?token={token_for(user)}") as customer, \
            live_client.websocket_connect(f"/ws/orders/{dispatched}?token={token_for(rider)}") as courier:
        courier.send_json({"event": "location", "latitude": 12.91, "longitude": 77.61})
        assert customer.receive_json()["data"]["longitude"] == 77.61
        assert courier.receive_json()["event"] == "location_updated"

        courier.send_json({"event": "location", "latitude": 500, "longitude": 77.61})
        assert courier.receive_json() == {"event": "error", "data": {"msg": "Invalid coordinates"}}


def test_chat_typing_and_messages(live_client, services, user, admin, make_user):
    conversation, _ = services.chat_service.create_conversation(user["_id"], "hello")
    cid = str(conversation["_id"])

    with pytest.raises(WebSocketDisconnect):
        with live_client.websocket_connect(f"/ws/chat/{cid}?token={token_for(make_user())}"):
            pass

    with live_client.websocket_connect(f"/ws/chat/{cid}?token={token_for(admin)}") as agent, \
            live_client.websocket_connect(f"/ws/chat/{cid}?token={token_for(user)}") as customer:
        customer.send_json({"event": "typing", "is_typing": True})
        typing = agent.receive_json()
        assert typing["event"] == "user_typing"
        assert typing["data"]["user_id"] == str(user["_id"])

        live_client.post(f"/api/chat/conversation/{cid}/support-message",
                         headers={"Authorization": f"Bearer {token_for(admin)}"}, json={"message": "On it"})
        assert customer.receive_json()["data"]["message"] == "On it"
        assert agent.receive_json()["event"] == "new_message"


def test_non_object_messages_keep_the_socket_alive(live_client, services, user, admin, rider, dispatched):
    conversation, _ = services.chat_service.create_conversation(user["_id"], "hello")
    cid = str(conversation["_id"])

    with live_client.websocket_connect(f"/ws/chat/{cid}?token={token_for(admin)}") as agent, \
            live_client.websocket_connect(f"/ws/chat/{cid}?token={token_for(user)}") as customer:
        customer.send_json(["typing"])
        customer.send_json("typing")
        customer.send_json({"event": "typing"})
        assert agent.receive_json()["event"] == "user_typing"
        assert manager.count(chat_room(cid)) == 2

    with live_client.websocket_connect(f"/ws/orders/{dispatched}?token={token_for(rider)}") as courier:
        courier.send_json([12.9, 77.6])
        courier.send_json({"event": "location", "latitude": 12.9, "longitude": 77.6})
        assert courier.receive_json()["event"] == "location_updated"
        assert manager.count(order_room(dispatched)) == 1
