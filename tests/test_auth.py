from datetime import timedelta

import jwt
import pytest

import config
from auth_service import decode_access_token, generate_refresh_token, public_user
from conftest import PASSWORD, auth_header
from errors import ServiceError
from helpers import utc_now


def test_register_returns_tokens_and_hides_password(client, mailer):
    resp = client.post("/api/auth/register", json={
        "first_name": "Asha", "last_name": "Rao", "email": "Asha@Example.com", "password": "longpassword",
    })
    assert resp.status_code == 200
    body = resp.json()
    assert body["success"] is True
    assert body["user"]["email"] == "asha@example.com"
    assert "password" not in body["user"]
    assert "refresh_token" not in body["user"]
    assert decode_access_token(body["token"])["user_id"] == body["user"]["id"]
    assert mailer.calls("send_welcome_email") == [("asha@example.com", "Asha")]


def test_register_rejects_duplicates_and_short_passwords(client, user):
    resp = client.post("/api/auth/register", json={"first_name": "A", "email": user["email"], "password": "longpassword"})
    assert resp.status_code == 400
    assert resp.json() == {"success": False, "msg": "An account with this email is already registered"}

    resp = client.post("/api/auth/register", json={"first_name": "A", "mobile": "9000000000", "password": "short"})
    assert resp.status_code == 400


def test_login_by_email_and_mobile(client, user):
    for identifier in (user["email"], user["mobile"]):
        resp = client.post("/api/auth/login", json={"identifier": identifier, "password": PASSWORD})
        assert resp.status_code == 200
        assert resp.json()["user"]["id"] == str(user["_id"])


def test_login_failures(client, make_user):
    blocked = make_user(is_blocked=True)
    resp = client.post("/api/auth/login", json={"identifier": blocked["email"], "password": "wrong-password"})
    assert resp.status_code == 401
    resp = client.post("/api/auth/login", json={"identifier": blocked["email"], "password": PASSWORD})
    assert resp.status_code == 403


def test_refresh_rotates_and_logout_revokes(client, user):
    login = client.post("/api/auth/login", json={"identifier": user["email"], "password": PASSWORD}).json()

    refreshed = client.post("/api/auth/refresh", json={"refresh_token": login["refresh_token"]})
    assert refreshed.status_code == 200
    new_refresh = refreshed.json()["refresh_token"]
    assert new_refresh != login["refresh_token"]

    # the old token was replaced
    assert client.post("/api/auth/refresh", json={"refresh_token": login["refresh_token"]}).status_code == 401

    assert client.post("/api/auth/logout", headers=auth_header(user)).status_code == 200
    assert client.post("/api/auth/refresh", json={"refresh_token": new_refresh}).status_code == 401


def test_refresh_token_is_not_an_access_token(client, user):
    token = generate_refresh_token(user["_id"])
    resp = client.get("/api/auth/profile", headers={"Authorization": f"Bearer {token}"})
    assert resp.status_code == 401


def test_protected_routes_need_a_valid_token(client, make_user):
    assert client.get("/api/auth/profile").status_code == 401
    assert client.get("/api/auth/profile", headers={"Authorization": "Bearer nonsense"}).status_code == 401

    blocked = make_user(is_blocked=True)
    assert client.get("/api/auth/profile", headers=auth_header(blocked)).status_code == 403


def test_phone_otp_creates_and_verifies_user(client, mailer, db):
    resp = client.post("/api/auth/send-otp", json={"type": "phone", "phone": "+91 98450 12345"})
    assert resp.status_code == 200
    assert "otp" not in resp.json()
    mobile, otp = mailer.calls("send_otp_sms")[0]
    assert mobile == "+919845012345"

    stored = db["users"].find_one({"mobile": mobile})
    assert stored["phone_otp"]["code"] != otp

    resp = client.post("/api/auth/verify-otp", json={
        "type": "phone", "phone": "+91 98450 12345", "otp": otp, "first_name": "Ravi",
    })
    assert resp.status_code == 200
    assert resp.json()["user"]["first_name"] == "Ravi"
    assert resp.json()["user"]["is_phone_verified"] is True
    assert "phone_otp" not in db["users"].find_one({"mobile": mobile})


def test_otp_is_single_use_and_limited(services, user, monkeypatch):
    monkeypatch.setattr(config, "EXPOSE_OTP_IN_RESPONSE", True)
    monkeypatch.setattr(config, "OTP_MAX_ATTEMPTS", 2)
    auth = services.auth_service

    otp = auth.send_otp("email", email=user["email"])["otp"]
    auth.verify_otp("email", otp, email=user["email"])
    with pytest.raises(ServiceError):
        auth.verify_otp("email", otp, email=user["email"])

    otp = auth.send_otp("email", email=user["email"])["otp"]
    for _ in range(2):
        with pytest.raises(ServiceError):
            auth.verify_otp("email", "000000", email=user["email"])
    # too many wrong guesses invalidate the code
    with pytest.raises(ServiceError):
        auth.verify_otp("email", otp, email=user["email"])


def test_expired_otp_is_rejected(services, user, db, monkeypatch):
    monkeypatch.setattr(config, "EXPOSE_OTP_IN_RESPONSE", True)
    otp = services.auth_service.send_otp("email", email=user["email"])["otp"]
    db["users"].update_one({"_id": user["_id"]}, {"$set": {"email_otp.expires_at": utc_now() - timedelta(minutes=1)}})
    with pytest.raises(ServiceError, match="Invalid or expired OTP"):
        services.auth_service.verify_otp("email", otp, email=user["email"])


def test_email_otp_requires_registration(client):
    resp = client.post("/api/auth/send-otp", json={"type": "email", "email": "nobody@example.com"})
    assert resp.status_code == 404


def test_google_auth_links_existing_account(client, user, monkeypatch):
    monkeypatch.setattr(config, "GOOGLE_CLIENT_ID", "client-id")
    monkeypatch.setattr("auth_service.google_id_token.verify_oauth2_token",
                        lambda token, request, audience: {"sub": "g-123", "email": user["email"], "given_name": "G"})
    resp = client.post("/api/auth/google-auth", json={"id_token": "tok"})
    assert resp.status_code == 200
    assert resp.json()["user"]["id"] == str(user["_id"])
    assert resp.json()["user"]["google_id"] == "g-123"


def test_google_auth_rejects_bad_token(client, monkeypatch):
    monkeypatch.setattr(config, "GOOGLE_CLIENT_ID", "client-id")

    def reject(token, request, audience):
        raise ValueError("Wrong audience")
    monkeypatch.setattr("auth_service.google_id_token.verify_oauth2_token", reject)
    assert client.post("/api/auth/google-auth", json={"id_token": "tok"}).status_code == 401


def test_password_reset_flow(client, user, mailer):
    resp = client.post("/api/auth/forgot-password", json={"email": user["email"]})
    assert resp.status_code == 200
    email, reset_url, _ = mailer.calls("send_password_reset")[0]
    token = reset_url.rsplit("/", 1)[-1]

    resp = client.post("/api/auth/reset-password", json={"token": token, "password": "brand-new-pass"})
    assert resp.status_code == 200
    assert client.post("/api/auth/reset-password", json={"token": token, "password": "again-new-pass"}).status_code == 400
    assert client.post("/api/auth/login", json={"identifier": email, "password": "brand-new-pass"}).status_code == 200


def test_forgot_password_does_not_reveal_accounts(client):
    resp = client.post("/api/auth/forgot-password", json={"email": "ghost@example.com"})
    assert resp.status_code == 200
    assert resp.json()["success"] is True


def test_address_book(client, user):
    headers = auth_header(user)
    first = client.post("/api/auth/address", headers=headers,
                        json={"action": "add", "address": {"line1": "1 Main St"}}).json()["addresses"]
    assert first[0]["is_default"] is True

    second = client.post("/api/auth/address", headers=headers,
                         json={"action": "add", "address": {"line1": "2 Side St"}}).json()["addresses"]
    second_id = second[1]["id"]
    assert second[1]["is_default"] is False

    addresses = client.post("/api/auth/address", headers=headers,
                            json={"action": "setDefault", "address": {"id": second_id}}).json()["addresses"]
    assert [a["is_default"] for a in addresses] == [False, True]

    addresses = client.post("/api/auth/address", headers=headers,
                            json={"action": "delete", "address": {"id": second_id}}).json()["addresses"]
    assert len(addresses) == 1 and addresses[0]["is_default"] is True

    resp = client.post("/api/auth/address", headers=headers, json={"action": "delete", "address": {"id": "missing"}})
    assert resp.status_code == 404


def test_device_tokens_are_capped_and_deduplicated(services, user, monkeypatch):
    monkeypatch.setattr(config, "MAX_DEVICE_TOKENS", 2)
    auth = services.auth_service
    auth.register_device_token(user["_id"], "a")
    auth.register_device_token(user["_id"], "b", "android")
    tokens = auth.register_device_token(user["_id"], "a")
    assert [t["token"] for t in tokens] == ["b", "a"]
    tokens = auth.register_device_token(user["_id"], "c", "ios")
    assert [t["token"] for t in tokens] == ["a", "c"]
    with pytest.raises(ServiceError):
        auth.register_device_token(user["_id"], "d", "blackberry")


def test_preferences_merge(client, user):
    resp = client.put("/api/auth/preferences", headers=auth_header(user),
                      json={"notifications": {"push": False}, "categories": ["Dairy"]})
    prefs = resp.json()["preferences"]
    assert prefs["notifications"] == {"push": False, "email": True, "sms": True}
    assert prefs["categories"] == ["Dairy"]
    assert prefs["language"] == "en"


def test_public_user_strips_secrets(user):
    data = public_user({**user, "refresh_token": "x", "phone_otp": {"code": "y"}})
    assert "password" not in data and "refresh_token" not in data and "phone_otp" not in data
    assert data["id"] == str(user["_id"])


def test_expired_access_token(client, user):
    token = jwt.encode({"user_id": str(user["_id"]), "type": "access", "exp": utc_now() - timedelta(hours=1)},
                       config.SECRET_KEY, algorithm="HS256")
    resp = client.get("/api/auth/profile", headers={"Authorization": f"Bearer {token}"})
    assert resp.status_code == 401
    assert resp.json()["detail"] == "Token expired"
