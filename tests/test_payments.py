import hashlib
import hmac
import json
import time
from types import SimpleNamespace

import pytest
import stripe

import config
from conftest import auth_header, shipping
from errors import ServiceError

WEBHOOK_SECRET = "whsec_test"


@pytest.fixture
def order(services, user, make_product, area):
    milk = make_product("Milk", price=100, quantity=10)
    return services.order_service.create_order(user, [{"product": milk["_id"], "quantity": 2}], shipping(),
                                               payment_method="stripe")


@pytest.fixture
def checkout(monkeypatch):
    created = []

    def create(**params):
        created.append(params)
        return SimpleNamespace(id="cs_test_1", url="https://checkout.stripe.com/c/pay/cs_test_1", expires_at=1900000000)
    monkeypatch.setattr(stripe.checkout.Session, "create", create)
    return created


def signed(payload: dict):
    body = json.dumps(payload)
    timestamp = int(time.time())
    signature = hmac.new(WEBHOOK_SECRET.encode(), f"{timestamp}.{body}".encode(), hashlib.sha256).hexdigest()
    return body, f"t={timestamp},v1={signature}"


def session_event(event_type, order_id, payment_status="paid"):
    return {
        "id": "evt_1",
        "object": "event",
        "type": event_type,
        "data": {"object": {
            "id": "cs_test_1",
            "object": "checkout.session",
            "payment_status": payment_status,
            "payment_intent": "pi_123",
            "metadata": {"order_id": order_id},
        }},
    }


def test_create_session_charges_payable_amount(client, user, order, checkout, db):
    resp = client.post("/api/payments/create-session", headers=auth_header(user), json={"order_id": str(order["_id"])})
    assert resp.status_code == 200
    assert resp.json()["session_id"] == "cs_test_1"

    line = checkout[0]["line_items"][0]["price_data"]
    # 200 of goods plus 25 delivery, in paise
    assert line["unit_amount"] == 22500
    assert line["currency"] == "inr"
    assert checkout[0]["metadata"] == {"order_id": str(order["_id"]), "user_id": str(user["_id"])}

    payment = db["payments"].find_one({"session_id": "cs_test_1"})
    assert payment["status"] == "pending" and payment["amount"] == 225
    assert db["orders"].find_one({"_id": order["_id"]})["payment_info"]["checkout_session_id"] == "cs_test_1"


def test_create_session_for_someone_elses_order(client, make_user, order, checkout):
    other = make_user()
    resp = client.post("/api/payments/create-session", headers=auth_header(other), json={"order_id": str(order["_id"])})
    assert resp.status_code == 404
    assert checkout == []


def test_create_session_stripe_failure(client, user, order, monkeypatch):
    def fail(**params):
        raise stripe.InvalidRequestError("No such price", param="price")
    monkeypatch.setattr(stripe.checkout.Session, "create", fail)
    resp = client.post("/api/payments/create-session", headers=auth_header(user), json={"order_id": str(order["_id"])})
    assert resp.status_code == 502


def test_webhook_marks_order_paid_once(client, user, order, checkout, db, monkeypatch):
    monkeypatch.setattr(config, "STRIPE_WEBHOOK_SECRET", WEBHOOK_SECRET)
    client.post("/api/payments/create-session", headers=auth_header(user), json={"order_id": str(order["_id"])})

    body, signature = signed(session_event("checkout.session.completed", str(order["_id"])))
    for _ in range(2):
        resp = client.post("/api/payments/webhook", content=body, headers={"stripe-signature": signature})
        assert resp.status_code == 200

    paid = db["orders"].find_one({"_id": order["_id"]})
    assert paid["payment_info"]["status"] == "completed"
    assert paid["payment_info"]["payment_intent_id"] == "pi_123"
    assert db["payments"].find_one({"session_id": "cs_test_1"})["status"] == "completed"

    status = client.get(f"/api/payments/{order['_id']}", headers=auth_header(user)).json()
    assert status["status"] == "completed"


def test_webhook_rejects_bad_signature(client, order, monkeypatch):
    monkeypatch.setattr(config, "STRIPE_WEBHOOK_SECRET", WEBHOOK_SECRET)
    body, _ = signed(session_event("checkout.session.completed", str(order["_id"])))
    resp = client.post("/api/payments/webhook", content=body, headers={"stripe-signature": "t=1,v1=deadbeef"})
    assert resp.status_code == 400
    assert resp.json()["msg"] == "Invalid signature"


def test_webhook_requires_secret(client, monkeypatch):
    monkeypatch.setattr(config, "STRIPE_WEBHOOK_SECRET", "")
    assert client.post("/api/payments/webhook", content=b"{}").status_code == 503


def test_expired_session(client, user, order, checkout, db, monkeypatch):
    monkeypatch.setattr(config, "STRIPE_WEBHOOK_SECRET", WEBHOOK_SECRET)
    client.post("/api/payments/create-session", headers=auth_header(user), json={"order_id": str(order["_id"])})
    body, signature = signed(session_event("checkout.session.expired", str(order["_id"]), "unpaid"))
    client.post("/api/payments/webhook", content=body, headers={"stripe-signature": signature})
    assert db["payments"].find_one({"session_id": "cs_test_1"})["status"] == "expired"


def test_confirm_payment_from_success_page(client, user, order, checkout, db, monkeypatch):
    client.post("/api/payments/create-session", headers=auth_header(user), json={"order_id": str(order["_id"])})
    monkeypatch.setattr(stripe.checkout.Session, "retrieve", lambda session_id: stripe.checkout.Session.construct_from({
        "id": session_id, "object": "checkout.session", "payment_status": "paid", "payment_intent": "pi_9",
        "metadata": {"order_id": str(order["_id"])}, "amount_total": 22500, "currency": "inr",
    }, None))
    resp = client.get("/api/payments/confirm/cs_test_1", headers=auth_header(user)).json()
    assert resp["success"] is True and resp["amount_total"] == 225
    assert db["orders"].find_one({"_id": order["_id"]})["payment_info"]["status"] == "completed"


def test_confirm_payment_without_order_metadata(services, order, db, monkeypatch):
    monkeypatch.setattr(stripe.checkout.Session, "retrieve", lambda session_id: stripe.checkout.Session.construct_from({
        "id": session_id, "object": "checkout.session", "payment_status": "paid", "payment_intent": "pi_9",
        "metadata": {}, "amount_total": 22500, "currency": "inr",
    }, None))
    resp = services.payment_service.confirm_payment("cs_unknown")
    assert resp == {"success": False, "message": "Order ID not found in session metadata"}
    assert db["orders"].find_one({"_id": order["_id"]})["payment_info"]["status"] == "pending"


def test_payment_after_cancellation_queues_refund(client, user, order, checkout, db, monkeypatch):
    monkeypatch.setattr(config, "STRIPE_WEBHOOK_SECRET", WEBHOOK_SECRET)
    headers = auth_header(user)
    client.post("/api/payments/create-session", headers=headers, json={"order_id": str(order["_id"])})
    cancelled = client.put(f"/api/order-tracking/{order['_id']}/cancel", headers=headers, json={"reason": "changed mind"})
    assert "refund_status" not in cancelled.json()["order"]

    body, signature = signed(session_event("checkout.session.completed", str(order["_id"])))
    assert client.post("/api/payments/webhook", content=body, headers={"stripe-signature": signature}).status_code == 200

    paid = db["orders"].find_one({"_id": order["_id"]})
    assert paid["order_status"] == "Cancelled"
    assert paid["payment_info"]["status"] == "completed"
    assert paid["refund_status"] == "pending"
    assert paid["refund_amount"] == 225


def test_paid_or_cancelled_orders_cannot_be_charged(services, user, order, db):
    payments = services.payment_service
    db["orders"].update_one({"_id": order["_id"]}, {"$set": {"payment_info.status": "completed"}})
    with pytest.raises(ServiceError, match="already paid"):
        payments.create_checkout_session(db["orders"].find_one({"_id": order["_id"]}), user)

    cancelled = {**order, "order_status": "Cancelled"}
    with pytest.raises(ServiceError, match="cancelled"):
        payments.create_checkout_session(cancelled, user)


def test_refund(client, admin, user, order, db, monkeypatch):
    headers = auth_header(admin)
    assert client.post(f"/api/payments/{order['_id']}/refund", headers=headers, json={}).status_code == 400

    db["orders"].update_one({"_id": order["_id"]}, {"$set": {"payment_info.status": "completed",
                                                             "payment_info.payment_intent_id": "pi_123"}})
    refunds = []

    def create(**params):
        refunds.append(params)
        return SimpleNamespace(id="re_1", status="succeeded", amount=10000)
    monkeypatch.setattr(stripe.Refund, "create", create)

    assert client.post(f"/api/payments/{order['_id']}/refund", headers=auth_header(user), json={}).status_code == 403
    resp = client.post(f"/api/payments/{order['_id']}/refund", headers=headers, json={"amount": 100})
    assert resp.status_code == 200
    assert resp.json() == {"success": True, "refund_id": "re_1", "status": "completed", "amount": 100}
    assert refunds[0] == {"payment_intent": "pi_123", "reason": "requested_by_customer", "amount": 10000}

    refunded = db["orders"].find_one({"_id": order["_id"]})
    assert refunded["refund_status"] == "completed"
    assert refunded["payment_info"]["status"] == "refunded"
