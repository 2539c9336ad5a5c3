import hmac
import logging
import secrets
from datetime import timedelta
from typing import Any, Dict, List, Optional

from pymongo import ASCENDING, DESCENDING, ReturnDocument
from pymongo.errors import PyMongoError

import config
from errors import ConflictError, ForbiddenError, NotFoundError, ServiceError
from helpers import hash_secret, serialize_doc, to_object_id, utc_now

logger = logging.getLogger(__name__)

PENDING = "Pending"
PACKED = "Packed"
OUT_FOR_DELIVERY = "Out for Delivery"
DELIVERED = "Delivered"
CANCELLED = "Cancelled"
RETURNED = "Returned"

ORDER_STATUSES = (PENDING, PACKED, OUT_FOR_DELIVERY, DELIVERED, CANCELLED, RETURNED)

TRANSITIONS = {
    PENDING: (PACKED, OUT_FOR_DELIVERY, CANCELLED),
    PACKED: (OUT_FOR_DELIVERY, CANCELLED),
    OUT_FOR_DELIVERY: (DELIVERED, PACKED),
    DELIVERED: (RETURNED,),
    CANCELLED: (),
    RETURNED: (),
}

PAYMENT_METHODS = ("razorpay", "cod", "upi", "card", "wallet", "stripe")
SHIPPING_REQUIRED = ("first_name", "address", "city", "pincode")

STATUS_MESSAGES = {
    PACKED: "Your order has been packed and will be on its way soon.",
    OUT_FOR_DELIVERY: "Your order is out for delivery.",
    DELIVERED: "Your order has been delivered. Enjoy!",
    CANCELLED: "Your order has been cancelled.",
    RETURNED: "Your return request has been received.",
}


def can_transition(current: str, new: str) -> bool:
    return new in TRANSITIONS.get(current, ())


def payable_amount(order: dict) -> float:
    return round(order.get("total_price_after_discount", 0) + order.get("delivery_charge", 0), 2)


def order_view(order: dict) -> dict:
    data = serialize_doc(order)
    (data.get("tracking") or {}).pop("delivery_otp_hash", None)
    return data


class OrderService:
    def __init__(self, db_connection, delivery_service, notification_service=None, mailer=None):
        self.db = db_connection
        self.orders = self.db["orders"]
        self.products = self.db["products"]
        self.users = self.db[config.USERS_COLLECTION]
        self.delivery = delivery_service
        self.notifications = notification_service
        self.mailer = mailer

    def ensure_indexes(self):
        self.orders.create_index([("user_id", ASCENDING), ("created_at", DESCENDING)])
        self.orders.create_index([("delivery_person.id", ASCENDING), ("order_status", ASCENDING)])
        self.orders.create_index("payment_info.checkout_session_id", sparse=True)

    # ---------- lookups ----------
    def _find(self, order_id: Any, **conditions) -> Optional[dict]:
        return self.orders.find_one({"_id": to_object_id(order_id), **conditions})

    def get_order(self, user_id: Any, order_id: Any, is_admin: bool = False) -> dict:
        order = self._find(order_id) if is_admin else self._find(order_id, user_id=str(user_id))
        if not order:
            raise NotFoundError("Order not found")
        return order

    def list_orders(self, user_id: Any) -> list:
        return list(self.orders.find({"user_id": str(user_id)}).sort("created_at", DESCENDING))

    def _customer(self, order: dict) -> dict:
        return self.users.find_one({"_id": to_object_id(order["user_id"])}) or {}

    # ---------- stock ----------
    def _take_stock(self, items: List[dict]):
        taken = []
        for item in items:
            result = self.products.update_one(
                {"_id": to_object_id(item["product"]), "quantity": {"$gte": item["quantity"]}},
                {"$inc": {"quantity": -item["quantity"], "sold": item["quantity"]}},
            )
            if result.modified_count == 0:
                self._restock(taken)
                raise ConflictError(f"{item.get('title') or 'Product'} is out of stock")
            taken.append(item)

    def _restock(self, items: List[dict]):
        for item in items:
            self.products.update_one(
                {"_id": to_object_id(item["product"])},
                {"$inc": {"quantity": item["quantity"], "sold": -item["quantity"]}},
            )

    # ---------- create ----------
    def _priced_items(self, items: List[Dict[str, Any]]) -> List[dict]:
        if not items:
            raise ServiceError("Order must contain at least one item")
        priced = []
        for item in items:
            quantity = int(item.get("quantity") or 0)
            if quantity < 1:
                raise ServiceError("Quantity must be at least 1")
            product = self.products.find_one({"_id": to_object_id(item.get("product"))})
            if not product:
                raise NotFoundError("Product not found")
            priced.append({
                "product": str(product["_id"]),
                "title": product.get("title"),
                "color": item.get("color"),
                "quantity": quantity,
                "price": product.get("price", 0),
            })
        return priced

    def create_order(self, user: dict, items: List[Dict[str, Any]], shipping_info: Dict[str, Any],
                     payment_method: str = "cod", coupon: str = None, delivery_slot_id: str = None,
                     customer_notes: str = None) -> dict:
        shipping_info = dict(shipping_info or {})
        missing = [k for k in SHIPPING_REQUIRED if not shipping_info.get(k)]
        if missing:
            raise ServiceError(f"Missing shipping fields: {', '.join(missing)}")
        if payment_method not in PAYMENT_METHODS:
            raise ServiceError(f"Invalid payment method: {payment_method}")

        order_items = self._priced_items(items)
        total = round(sum(i["price"] * i["quantity"] for i in order_items), 2)

        pincode = str(shipping_info["pincode"])
        area = self.delivery.find_area(pincode)
        if not area:
            raise ServiceError("Delivery not available in this area")
        if total < area.get("minimum_order_value", 0):
            raise ServiceError(f"Minimum order value for this area is {area['minimum_order_value']}")
        if payment_method == "cod" and not area.get("cod_available", True):
            raise ServiceError("Cash on delivery is not available in this area")

        delivery_charge = 0 if total >= area.get("free_delivery_above", 500) else area.get("delivery_charge", 0)

        now = utc_now()
        order = {
            "user_id": str(user["_id"]),
            "shipping_info": shipping_info,
            "payment_info": {"method": payment_method, "status": "pending"},
            "order_items": order_items,
            "total_price": total,
            "total_price_after_discount": total,
            "delivery_charge": delivery_charge,
            "coupon": coupon,
            "order_status": PENDING,
            "status_history": [{"status": PENDING, "timestamp": now, "updated_by": str(user["_id"]),
                                "note": "Order placed"}],
            "tracking": {"location_history": []},
            "customer_notes": customer_notes,
            "created_at": now,
            "updated_at": now,
        }

        self._take_stock(order_items)
        slot = None
        try:
            if delivery_slot_id:
                slot = self.delivery.reserve_slot(delivery_slot_id, pincode)
                order["delivery_slot"] = str(slot["_id"])
                order["scheduled_delivery_date"] = slot["date"]
                order["scheduled_time_slot"] = {"start_time": slot["start_time"], "end_time": slot["end_time"]}
                order["delivery_charge"] += slot.get("delivery_charge", 0)
            order["_id"] = self.orders.insert_one(order).inserted_id
        except (ServiceError, PyMongoError):
            self._restock(order_items)
            if slot:
                self.delivery.release_slot(slot["_id"])
            raise

        logger.info(f"[ORDER] Created order {order['_id']} for user {order['user_id']} total={total}")

        if self.notifications:
            self.notifications.notify(order["user_id"], "Order placed",
                                      f"Your order #{order['_id']} has been placed successfully.",
                                      "order", data={"order_id": str(order["_id"])})
        if self.mailer and user.get("email"):
            self.mailer.send_order_confirmation(user["email"], order, user.get("first_name"))
        return order

    # ---------- transitions ----------
    def _transition(self, order: dict, status: str, updated_by: Any, note: str = "",
                    extra_set: Dict[str, Any] = None, extra_unset: Dict[str, Any] = None) -> dict:
        current = order["order_status"]
        if status not in ORDER_STATUSES:
            raise ServiceError(f"Invalid status: {status}")
        if not can_transition(current, status):
            raise ServiceError(f"Cannot change order status from {current} to {status}")

        now = utc_now()
        update = {
            "$set": {"order_status": status, "updated_at": now, **(extra_set or {})},
            "$push": {"status_history": {"status": status, "timestamp": now,
                                         "updated_by": str(updated_by), "note": note or ""}},
        }
        if extra_unset:
            update["$unset"] = extra_unset

        updated = self.orders.find_one_and_update(
            {"_id": order["_id"], "order_status": current},
            update,
            return_document=ReturnDocument.AFTER,
        )
        if not updated:
            raise ConflictError("Order was updated by someone else, please retry")
        logger.info(f"[ORDER] {order['_id']}: {current} -> {status}")
        return updated

    def _release_resources(self, order: dict):
        if order.get("delivery_slot"):
            self.delivery.release_slot(order["delivery_slot"])
        self._restock(order.get("order_items", []))

    def _notify_status(self, order: dict, status: str):
        message = STATUS_MESSAGES.get(status, f"Your order status is now {status}.")
        if self.notifications:
            self.notifications.notify(order["user_id"], f"Order {status}", message, "order",
                                      data={"order_id": str(order["_id"]), "status": status})
        if not self.mailer:
            return
        customer = self._customer(order)
        if customer.get("email"):
            self.mailer.send_order_status(customer["email"], order, status, customer.get("first_name"))
        if customer.get("mobile"):
            self.mailer.send_order_status_sms(customer["mobile"], status, str(order["_id"]))

    # ---------- tracking ----------
    def get_tracking(self, user_id: Any, order_id: Any) -> dict:
        order = self.get_order(user_id, order_id)
        person = order.get("delivery_person") or {}
        tracking = order.get("tracking") or {}
        return {
            "status": order["order_status"],
            "status_history": order.get("status_history", []),
            "delivery_person": {k: v for k, v in person.items() if k != "id"} or None,
            "estimated_delivery_time": tracking.get("estimated_delivery_time"),
            "actual_delivery_time": tracking.get("actual_delivery_time"),
            "scheduled_delivery_date": order.get("scheduled_delivery_date"),
            "scheduled_time_slot": order.get("scheduled_time_slot"),
            "current_location": person.get("current_location"),
        }

    def get_live_location(self, user_id: Any, order_id: Any) -> dict:
        order = self._find(order_id, user_id=str(user_id), order_status=OUT_FOR_DELIVERY)
        if not order:
            raise NotFoundError("Order not found or not out for delivery")
        person = order.get("delivery_person") or {}
        return {
            "delivery_person": {
                "name": person.get("name"),
                "phone": person.get("phone"),
                "location": person.get("current_location"),
            },
            "estimated_delivery_time": (order.get("tracking") or {}).get("estimated_delivery_time"),
        }

    def assign_delivery_person(self, admin_id: Any, order_id: Any, delivery_person_id: Any,
                               vehicle_number: str = None) -> tuple:
        order = self.get_order(admin_id, order_id, is_admin=True)
        person = self.users.find_one({"_id": to_object_id(delivery_person_id)})
        if not person or person.get("role") != "delivery":
            raise NotFoundError("Delivery person not found")

        otp = str(secrets.randbelow(9000) + 1000)
        name = f"{person.get('first_name', '')} {person.get('last_name', '')}".strip()
        updated = self._transition(
            order, OUT_FOR_DELIVERY, admin_id, f"Assigned to {person.get('first_name', '')}",
            extra_set={
                "delivery_person": {
                    "id": str(person["_id"]),
                    "name": name,
                    "phone": person.get("mobile"),
                    "vehicle_number": vehicle_number or "",
                },
                "tracking.delivery_otp_hash": hash_secret(otp),
                "tracking.otp_attempts": 0,
                "tracking.estimated_delivery_time": utc_now() + timedelta(minutes=config.DELIVERY_ETA_MINUTES),
            },
        )

        customer = self._customer(updated)
        if self.mailer and customer.get("mobile"):
            self.mailer.send_delivery_otp_sms(customer["mobile"], otp)
        self._notify_status(updated, OUT_FOR_DELIVERY)
        if self.notifications:
            self.notifications.notify(str(person["_id"]), "New delivery assigned",
                                      f"Order #{updated['_id']} is assigned to you.", "order",
                                      data={"order_id": str(updated["_id"])})
        return updated, otp

    def update_status(self, admin_id: Any, order_id: Any, status: str, note: str = None) -> dict:
        order = self.get_order(admin_id, order_id, is_admin=True)
        extra_set, extra_unset = {}, None
        if status == DELIVERED:
            extra_set["tracking.actual_delivery_time"] = utc_now()
            extra_unset = {"tracking.delivery_otp_hash": ""}
        elif status in (CANCELLED, RETURNED):
            if (order.get("payment_info") or {}).get("status") == "completed":
                extra_set["refund_status"] = "pending"
                extra_set["refund_amount"] = payable_amount(order)

        updated = self._transition(order, status, admin_id, note, extra_set, extra_unset)
        if status == CANCELLED:
            self._release_resources(updated)
        self._notify_status(updated, status)
        return updated

    def _assigned_order(self, person_id: Any, order_id: Any) -> dict:
        order = self._find(order_id, **{"delivery_person.id": str(person_id)})
        if not order:
            raise NotFoundError("Order not found or unauthorized")
        return order

    def update_delivery_location(self, person_id: Any, order_id: Any, latitude: float, longitude: float) -> dict:
        if not (-90 <= latitude <= 90) or not (-180 <= longitude <= 180):
            raise ServiceError("Invalid coordinates")
        order = self._assigned_order(person_id, order_id)
        now = utc_now()
        location = {"latitude": latitude, "longitude": longitude, "updated_at": now}
        self.orders.update_one(
            {"_id": order["_id"]},
            {
                "$set": {"delivery_person.current_location": location},
                "$push": {"tracking.location_history": {
                    "$each": [{"latitude": latitude, "longitude": longitude, "timestamp": now}],
                    "$slice": -config.LOCATION_HISTORY_LIMIT,
                }},
            },
        )
        return location

    def verify_delivery_otp(self, person_id: Any, order_id: Any, otp: str,
                            proof_images: List[str] = None, signature: str = None) -> dict:
        order = self._assigned_order(person_id, order_id)
        if order["order_status"] != OUT_FOR_DELIVERY:
            raise ServiceError("Order is not out for delivery")

        tracking = order.get("tracking") or {}
        stored = tracking.get("delivery_otp_hash")
        if not stored:
            raise ServiceError("No delivery OTP issued for this order")
        if tracking.get("otp_attempts", 0) >= config.OTP_MAX_ATTEMPTS:
            raise ForbiddenError("Too many invalid OTP attempts, please contact support")
        if not otp or not hmac.compare_digest(stored, hash_secret(otp)):
            self.orders.update_one({"_id": order["_id"]}, {"$inc": {"tracking.otp_attempts": 1}})
            raise ServiceError("Invalid OTP")

        updated = self._transition(
            order, DELIVERED, person_id, "Order delivered and verified with OTP",
            extra_set={
                "tracking.actual_delivery_time": utc_now(),
                "tracking.delivery_proof": {"images": proof_images or [], "signature": signature or ""},
            },
            extra_unset={"tracking.delivery_otp_hash": ""},
        )
        self._notify_status(updated, DELIVERED)
        return updated

    def delivery_person_orders(self, person_id: Any) -> list:
        return list(self.orders.find({
            "delivery_person.id": str(person_id),
            "order_status": {"$in": [OUT_FOR_DELIVERY, PACKED]},
        }).sort("tracking.estimated_delivery_time", ASCENDING))

    # ---------- customer actions ----------
    def cancel_order(self, user_id: Any, order_id: Any, reason: str = None) -> dict:
        order = self.get_order(user_id, order_id)
        status = order["order_status"]
        if status == DELIVERED:
            raise ServiceError("Cannot cancel delivered order")
        if status == OUT_FOR_DELIVERY:
            raise ServiceError("Cannot cancel order that is out for delivery. Please contact support.")

        extra_set = {"cancellation_reason": reason or ""}
        if (order.get("payment_info") or {}).get("status") == "completed":
            extra_set["refund_status"] = "pending"
            extra_set["refund_amount"] = payable_amount(order)

        updated = self._transition(order, CANCELLED, user_id, reason, extra_set)
        self._release_resources(updated)
        self._notify_status(updated, CANCELLED)
        return updated

    def request_return(self, user_id: Any, order_id: Any, reason: str = None) -> dict:
        order = self._find(order_id, user_id=str(user_id), order_status=DELIVERED)
        if not order:
            raise NotFoundError("Order not found or not eligible for return")

        delivered_at = (order.get("tracking") or {}).get("actual_delivery_time")
        if not delivered_at or utc_now() - delivered_at > timedelta(days=config.RETURN_WINDOW_DAYS):
            raise ServiceError("Return window has expired")

        updated = self._transition(order, RETURNED, user_id, reason, {
            "return_reason": reason or "",
            "refund_status": "pending",
            "refund_amount": payable_amount(order),
        })
        self._notify_status(updated, RETURNED)
        return updated
