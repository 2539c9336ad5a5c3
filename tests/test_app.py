from conftest import auth_header
from helpers import day_bounds, normalize_mobile, paginate, pagination_info, serialize_doc, split_csv


def test_root_and_health(client, user):
    assert client.get("/").json()["docs"] == "/docs"
    for path in ("/health", "/api/health"):
        body = client.get(path).json()
        assert body["mongodb"] == "connected"
        assert body["total_users"] == 1
    assert client.get("/api/why-disconnected").json() == {"mongodb": "connected", "reason": None}


def test_profile(client, user):
    body = client.get("/api/auth/profile", headers=auth_header(user)).json()
    assert body["user"]["email"] == user["email"]
    assert "password" not in body["user"]


def test_service_errors_use_the_common_shape(client, user):
    resp = client.get("/api/orders/64b7f0c2a1b2c3d4e5f60718", headers=auth_header(user))
    assert resp.status_code == 404
    assert resp.json() == {"success": False, "msg": "Order not found"}


def test_location_update(client, user, db):
    resp = client.put("/api/auth/location", headers=auth_header(user),
                      json={"latitude": 12.9, "longitude": 77.6, "address": "MG Road"})
    assert resp.json()["location"]["address"] == "MG Road"
    assert db["users"].find_one({"_id": user["_id"]})["last_location"]["latitude"] == 12.9


def test_helpers():
    assert normalize_mobile(" 098450-12345 ") == "9845012345"
    assert normalize_mobile("+91 98450 12345") == "+919845012345"
    assert paginate("0", "abc") == (1, 20, 0)
    assert paginate(3, 10) == (3, 10, 20)
    assert pagination_info(21, 1, 10)["pages"] == 3
    assert split_csv(" a, ,b ") == ["a", "b"]
    start, end = day_bounds("2030-05-01T18:30:00Z")
    assert (start.day, end.day) == (1, 2)
    assert serialize_doc({"_id": 1, "nested": [{"_id": 2}]}) == {"id": "1", "nested": [{"id": "2"}]}
