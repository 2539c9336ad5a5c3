from datetime import timedelta
from types import SimpleNamespace
from unittest.mock import MagicMock

import pytest

from conftest import auth_header
from errors import NotFoundError, ServiceError
from helpers import utc_now
from notification_service import MSG91Service, NotificationService, PushNotificationService


class FakePush:
    def __init__(self):
        self.sent = []

    def send(self, tokens, title, body, data=None):
        self.sent.append((tokens, title, body, data))
        return {"success": True}


def test_notify_pushes_to_devices_unless_disabled(db, make_user):
    push = FakePush()
    notifications = NotificationService(db, push)
    user = make_user(device_tokens=[{"token": "tok-1", "platform": "android"}])

    doc = notifications.notify(str(user["_id"]), "Hi", "Order packed", "order", data={"order_id": "1"})
    assert doc["sent_via"] == ["push"]
    assert push.sent == [(["tok-1"], "Hi", "Order packed", {"order_id": "1"})]

    db["users"].update_one({"_id": user["_id"]}, {"$set": {"preferences.notifications.push": False}})
    doc = notifications.notify(str(user["_id"]), "Hi", "Again", "order")
    assert doc["sent_via"] == []
    assert len(push.sent) == 1


def test_unconfigured_push_is_not_reported_as_sent():
    result = PushNotificationService(credentials_file="").send(["tok"], "t", "b")
    assert result["success"] is False


def test_notification_inbox(client, user, services):
    uid = str(user["_id"])
    notifications = services.notification_service
    first = notifications.notify(uid, "One", "first", "order")
    notifications.notify(uid, "Two", "second", "offer")
    notifications.schedule(uid, "Later", "not yet", utc_now() + timedelta(hours=1))
    headers = auth_header(user)

    body = client.get("/api/notifications", headers=headers).json()
    assert {n["title"] for n in body["notifications"]} == {"One", "Two"}
    assert body["unread_count"] == 2
    assert client.get("/api/notifications", headers=headers, params={"type": "offer"}).json()["pagination"]["total"] == 1

    resp = client.put(f"/api/notifications/{first['_id']}/read", headers=headers)
    assert resp.json()["notification"]["is_read"] is True
    assert client.get("/api/notifications", headers=headers).json()["unread_count"] == 1

    assert client.put("/api/notifications/read-all", headers=headers).json()["updated"] == 1
    assert client.delete("/api/notifications/read/all", headers=headers).json()["deleted"] == 2
    assert client.get("/api/notifications", headers=headers).json()["notifications"] == []


def test_notifications_are_per_user(client, user, make_user, services):
    doc = services.notification_service.notify(str(user["_id"]), "Mine", "private")
    other = make_user()
    assert client.put(f"/api/notifications/{doc['_id']}/read", headers=auth_header(other)).status_code == 404
    assert client.delete(f"/api/notifications/{doc['_id']}", headers=auth_header(other)).status_code == 404
    assert client.delete(f"/api/notifications/{doc['_id']}", headers=auth_header(user)).status_code == 200


def test_expired_notifications_are_hidden(services, user, db):
    uid = str(user["_id"])
    doc = services.notification_service.notify(uid, "Flash sale", "ends soon", "offer")
    db["notifications"].update_one({"_id": doc["_id"]}, {"$set": {"expires_at": utc_now() - timedelta(minutes=1)}})
    assert services.notification_service.user_notifications(uid)["notifications"] == []


def test_admin_sends(client, admin, user, make_user, db):
    headers = auth_header(admin)
    other = make_user()

    resp = client.post("/api/notifications/send", headers=headers, json={
        "user_id": str(user["_id"]), "title": "Hello", "message": "Welcome", "priority": "high",
    })
    assert resp.json()["notification"]["priority"] == "high"
    assert client.post("/api/notifications/send", headers=headers, json={
        "user_id": "64b7f0c2a1b2c3d4e5f60718", "title": "Hello", "message": "Nobody",
    }).status_code == 404
    assert client.post("/api/notifications/send", headers=headers, json={
        "user_id": str(user["_id"]), "title": "Hello", "message": "Bad", "type": "spam",
    }).status_code == 400

    resp = client.post("/api/notifications/send-bulk", headers=headers, json={
        "user_ids": [str(user["_id"]), str(other["_id"])], "title": "Sale", "message": "50% off", "type": "offer",
    })
    assert resp.json()["count"] == 2
    assert client.post("/api/notifications/send-bulk", headers=headers,
                       json={"user_ids": [], "title": "x", "message": "y"}).status_code == 400

    resp = client.post("/api/notifications/send-all", headers=headers, json={"title": "News", "message": "We grew"})
    assert resp.json()["count"] == db["users"].count_documents({})

    assert client.post("/api/notifications/send-all", headers=auth_header(user),
                       json={"title": "News", "message": "x"}).status_code == 403


def test_schedule_validation(services, user):
    notifications = services.notification_service
    uid = str(user["_id"])
    with pytest.raises(ServiceError, match="future"):
        notifications.schedule(uid, "Past", "nope", utc_now() - timedelta(minutes=5))
    later = utc_now() + timedelta(hours=2)
    with pytest.raises(ServiceError, match="after"):
        notifications.schedule(uid, "Soon", "nope", later, expires_at=later - timedelta(hours=1))
    doc = notifications.schedule(uid, "Soon", "ok", later, expires_at=later + timedelta(days=1))
    assert doc["sent_at"] is None


def test_schedule_route_accepts_iso_timestamps(client, admin, user):
    when = (utc_now() + timedelta(days=1)).isoformat() + "Z"
    resp = client.post("/api/notifications/schedule", headers=auth_header(admin), json={
        "user_id": str(user["_id"]), "title": "Reminder", "message": "Your slot is tomorrow", "scheduled_for": when,
    })
    assert resp.status_code == 200
    assert resp.json()["notification"]["scheduled_for"]


def test_mark_missing_notification(services, user):
    with pytest.raises(NotFoundError):
        services.notification_service.mark_as_read(str(user["_id"]), "64b7f0c2a1b2c3d4e5f60718")


def test_msg91_skips_when_unconfigured(monkeypatch):
    post = MagicMock()
    monkeypatch.setattr("notification_service.requests.post", post)
    monkeypatch.setattr("config.MSG91_AUTH_KEY", "")
    result = MSG91Service().send_otp_sms("9876543210", "123456")
    assert result["success"] is False
    post.assert_not_called()


def test_msg91_sends_sms(monkeypatch):
    post = MagicMock(return_value=SimpleNamespace(status_code=200, json=lambda: {"type": "success"}, text="ok"))
    monkeypatch.setattr("notification_service.requests.post", post)
    monkeypatch.setattr("config.MSG91_AUTH_KEY", "key")
    monkeypatch.setattr("config.MSG91_SMS_TEMPLATE_ID", "tmpl")
    result = MSG91Service().send_delivery_otp_sms("+919876543210", "4321")
    assert result["success"] is True
    payload = post.call_args.kwargs["json"]
    assert payload["recipients"][0]["mobiles"] == "919876543210"
    assert "4321" in payload["recipients"][0]["message"]
    assert post.call_args.kwargs["headers"]["authkey"] == "key"


def test_msg91_email_uses_escaped_template(monkeypatch):
    post = MagicMock(return_value=SimpleNamespace(status_code=200, json=lambda: {"data": {"unique_id": "u1"}}, text="ok"))
    monkeypatch.setattr("notification_service.requests.post", post)
    monkeypatch.setattr("config.MSG91_AUTH_KEY", "key")
    monkeypatch.setattr("config.MSG91_DOMAIN", "mail.example.com")
    monkeypatch.setattr("config.MSG91_EMAIL_TEMPLATE_ID", "tmpl")
    result = MSG91Service().send_welcome_email("a@example.com", "<b>Asha</b>")
    assert result["success"] is True
    body = post.call_args.kwargs["json"]["recipients"][0]["variables"]["body"]
    assert "&lt;b&gt;Asha&lt;/b&gt;" in body
