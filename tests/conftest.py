from datetime import timedelta
from unittest.mock import MagicMock

import mongomock
import pytest
from fastapi.testclient import TestClient

import app as app_module
from auth_service import generate_access_token, hash_password
from helpers import utc_now
from notification_service import PushNotificationService
from upload_service import ImageUploadService

PASSWORD = "secret-pass-123"
PINCODE = "560001"


class RecordingMailer:
    """Stands in for MSG91Service and keeps every send_* call."""

    def __init__(self):
        self.sent = []

    def __getattr__(self, name):
        if not name.startswith("send_"):
            raise AttributeError(name)

        def record(*args, **kwargs):
            self.sent.append((name, args, kwargs))
            return {"success": True}
        return record

    def calls(self, name):
        return [args for sent, args, _ in self.sent if sent == name]


@pytest.fixture
def db():
    return mongomock.MongoClient()["quickcommerce_test"]


@pytest.fixture
def mailer():
    return RecordingMailer()


@pytest.fixture
def storage_client():
    return MagicMock()


@pytest.fixture
def services(db, mailer, storage_client):
    app_module.init_services(
        db,
        mailer=mailer,
        push=PushNotificationService(credentials_file=""),
        uploads=ImageUploadService(bucket_name="test-bucket", client=storage_client),
    )
    return app_module


@pytest.fixture
def client(services):
    return TestClient(app_module.app)


@pytest.fixture
def make_user(db):
    def _make(role="user", **fields):
        count = db["users"].count_documents({})
        doc = {
            "first_name": fields.pop("first_name", f"User{count}"),
            "last_name": "Test",
            "email": fields.pop("email", f"user{count}@example.com"),
            "mobile": fields.pop("mobile", f"98765{count:05d}"),
            "password": hash_password(PASSWORD),
            "role": role,
            "is_blocked": False,
            "addresses": [],
            "device_tokens": [],
            "preferences": {"language": "en", "notifications": {"push": True, "email": True, "sms": True},
                            "categories": []},
            "created_at": utc_now(),
            **fields,
        }
        doc["_id"] = db["users"].insert_one(doc).inserted_id
        return doc
    return _make


def auth_header(user):
    return {"Authorization": f"Bearer {generate_access_token(user['_id'], user.get('email'))}"}


@pytest.fixture
def user(make_user):
    return make_user()


@pytest.fixture
def admin(make_user):
    return make_user(role="admin")


@pytest.fixture
def rider(make_user):
    return make_user(role="delivery")


@pytest.fixture
def area(services):
    return services.delivery_service.create_area({
        "name": "Central",
        "city": "Bengaluru",
        "pincodes": [PINCODE],
        "delivery_charge": 25,
        "free_delivery_above": 500,
        "minimum_order_value": 50,
        "express_delivery_available": True,
        "coordinates": {"type": "Polygon", "coordinates": [[
            [77.50, 12.90], [77.70, 12.90], [77.70, 13.10], [77.50, 13.10], [77.50, 12.90],
        ]]},
    })


@pytest.fixture
def make_product(services):
    def _make(title="Milk 1L", price=60, quantity=20, **fields):
        return services.product_service.create_product({
            "title": title, "price": price, "category": fields.pop("category", "Dairy"),
            "quantity": quantity, **fields,
        })
    return _make


@pytest.fixture
def slot(services):
    return services.delivery_service.create_slot({
        "date": utc_now() + timedelta(days=1),
        "start_time": "10:00",
        "end_time": "12:00",
        "max_orders": 2,
        "pincodes": [PINCODE],
    })


def shipping(pincode=PINCODE):
    return {"first_name": "Asha", "last_name": "Rao", "address": "12 MG Road", "city": "Bengaluru",
            "pincode": pincode}
