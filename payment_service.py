import logging
from typing import Any, Dict, Optional

import stripe
from pymongo import DESCENDING

import config
from errors import ServiceError
from helpers import to_object_id, utc_now
from order_service import CANCELLED, RETURNED, payable_amount

logger = logging.getLogger(__name__)


def _to_minor_units(amount: float) -> int:
    return int(round(float(amount) * 100))


def _metadata_value(stripe_obj, key: str) -> Optional[str]:
    # StripeObject supports item access and `in`, not dict methods
    metadata = getattr(stripe_obj, "metadata", None)
    if metadata and key in metadata:
        return metadata[key]
    return None


class StripePaymentService:
    """
    Stripe Checkout payments for orders.

    A checkout session is opened per order; the webhook (or the success page
    calling confirm_payment) marks the payment and the order as paid.
    Refunds go back to the original payment intent.
    """

    def __init__(self, db_connection):
        """
        Args:
            db_connection: MongoDB database connection
        """
        self.db = db_connection
        self.orders_collection = self.db["orders"]
        self.payments_collection = self.db["payments"]
        stripe.api_key = config.STRIPE_SECRET_KEY

    def ensure_indexes(self):
        self.payments_collection.create_index("session_id", unique=True)
        self.payments_collection.create_index([("order_id", 1), ("created_at", DESCENDING)])

    def create_checkout_session(self, order: dict, user: dict) -> Dict[str, Any]:
        """
        Open a Stripe Checkout Session for the order's payable amount.

        Returns:
            {"success": True, "session_id", "payment_url", "expires_at"} or
            {"success": False, "error", "error_type"}
        """
        if order.get("order_status") == CANCELLED:
            raise ServiceError("Order is cancelled")
        if (order.get("payment_info") or {}).get("status") == "completed":
            raise ServiceError("Order is already paid")

        order_id = str(order["_id"])
        user_id = str(user["_id"])
        amount = payable_amount(order)
        currency = (config.CURRENCY or "inr").lower()
        logger.info(f"[STRIPE] Creating session for order {order_id}, amount: {amount} {currency}")

        try:
            session = stripe.checkout.Session.create(
                mode="payment",
                payment_method_types=["card"],
                line_items=[{
                    "price_data": {
                        "currency": currency,
                        "product_data": {"name": f"Order {order_id}"},
                        "unit_amount": _to_minor_units(amount),
                    },
                    "quantity": 1,
                }],
                success_url=f"{config.PAYMENT_SUCCESS_URL}?order_id={order_id}&session_id={{CHECKOUT_SESSION_ID}}",
                cancel_url=config.PAYMENT_CANCEL_URL,
                customer_email=user.get("email") or None,
                client_reference_id=user_id,
                metadata={"order_id": order_id, "user_id": user_id},
            )
        except stripe.StripeError as e:
            logger.error(f"[STRIPE] Session creation failed for order {order_id}: {e}")
            return {"success": False, "error": str(e), "error_type": "stripe_error"}

        now = utc_now()
        self.payments_collection.insert_one({
            "order_id": order_id,
            "user_id": user_id,
            "session_id": session.id,
            "amount": amount,
            "currency": currency,
            "status": "pending",
            "payment_method": "stripe",
            "created_at": now,
        })
        self.orders_collection.update_one(
            {"_id": order["_id"]},
            {"$set": {"payment_info.method": "stripe", "payment_info.checkout_session_id": session.id,
                      "updated_at": now}},
        )
        logger.info(f"[OK] Stripe session created: {session.id}")
        return {"success": True, "session_id": session.id, "payment_url": session.url,
                "expires_at": session.expires_at}

    def _mark_paid(self, session_id: str, payment_intent_id: Optional[str], order_id: Optional[str]) -> Optional[str]:
        payment = self.payments_collection.find_one({"session_id": session_id})
        order_id = order_id or (payment or {}).get("order_id")
        if not order_id:
            logger.warning(f"[STRIPE] No order for session {session_id}")
            return None

        now = utc_now()
        self.payments_collection.update_one(
            {"session_id": session_id, "status": {"$ne": "completed"}},
            {"$set": {"status": "completed", "payment_intent_id": payment_intent_id, "completed_at": now}},
        )
        order = self.orders_collection.find_one({"_id": to_object_id(order_id)})
        if not order:
            logger.warning(f"[STRIPE] Order {order_id} for session {session_id} not found")
            return None

        changes = {"payment_info.status": "completed", "payment_info.payment_intent_id": payment_intent_id,
                   "updated_at": now}
        if order.get("order_status") in (CANCELLED, RETURNED):
            # paid after the order was closed: queue the money to go back
            changes["refund_status"] = "pending"
            changes["refund_amount"] = payable_amount(order)
            logger.warning(f"[STRIPE] Order {order_id} paid while {order['order_status']}, refund queued")
        self.orders_collection.update_one(
            {"_id": order["_id"], "payment_info.status": {"$ne": "completed"}},
            {"$set": changes},
        )
        logger.info(f"[STRIPE] Order {order_id} paid (session {session_id})")
        return order_id

    def handle_webhook(self, payload: bytes, signature: str) -> Dict[str, Any]:
        if not config.STRIPE_WEBHOOK_SECRET:
            raise ServiceError("Webhook secret not configured", status_code=503)
        try:
            event = stripe.Webhook.construct_event(payload, signature, config.STRIPE_WEBHOOK_SECRET)
        except ValueError:
            raise ServiceError("Invalid payload")
        except stripe.SignatureVerificationError:
            logger.warning("[STRIPE] Webhook signature verification failed")
            raise ServiceError("Invalid signature")

        event_type = event.type
        session = event.data.object
        logger.info(f"[STRIPE] Webhook event {event_type}")

        if event_type == "checkout.session.completed" and session.payment_status == "paid":
            self._mark_paid(session.id, session.payment_intent, _metadata_value(session, "order_id"))
        elif event_type == "checkout.session.expired":
            self.payments_collection.update_one(
                {"session_id": session.id, "status": "pending"},
                {"$set": {"status": "expired", "updated_at": utc_now()}},
            )
        return {"success": True, "received": event_type}

    def confirm_payment(self, session_id: str) -> Dict[str, Any]:
        """Success-page confirmation, for when the webhook has not arrived yet."""
        try:
            session = stripe.checkout.Session.retrieve(session_id)
        except stripe.StripeError as e:
            return {"success": False, "error": str(e), "error_type": "stripe_error"}

        if session.payment_status != "paid":
            return {"success": False, "status": session.payment_status, "message": "Payment not completed"}

        order_id = self._mark_paid(session.id, session.payment_intent, _metadata_value(session, "order_id"))
        if not order_id:
            return {"success": False, "message": "Order ID not found in session metadata"}
        return {
            "success": True,
            "order_id": order_id,
            "payment_intent_id": session.payment_intent,
            "amount_total": session.amount_total / 100,
            "currency": session.currency,
        }

    def create_refund(self, order: dict, amount: Optional[float] = None,
                      reason: str = "requested_by_customer") -> Dict[str, Any]:
        payment_info = order.get("payment_info") or {}
        if payment_info.get("status") != "completed" or not payment_info.get("payment_intent_id"):
            raise ServiceError("Order has no completed online payment to refund")
        if order.get("refund_status") == "completed":
            raise ServiceError("Order is already refunded")

        params = {"payment_intent": payment_info["payment_intent_id"], "reason": reason}
        if amount:
            params["amount"] = _to_minor_units(amount)
        try:
            refund = stripe.Refund.create(**params)
        except stripe.StripeError as e:
            logger.error(f"[STRIPE] Refund failed for order {order['_id']}: {e}")
            return {"success": False, "error": str(e), "error_type": "stripe_error"}

        if refund.status == "failed":
            return {"success": False, "error": "Refund failed", "error_type": "stripe_error"}

        refund_status = "completed" if refund.status == "succeeded" else "processing"
        refunded_amount = refund.amount / 100 if refund.amount else payable_amount(order)
        now = utc_now()
        order_update = {"refund_status": refund_status, "refund_amount": refunded_amount, "updated_at": now}
        if refund_status == "completed":
            order_update["payment_info.status"] = "refunded"
        self.orders_collection.update_one({"_id": order["_id"]}, {"$set": order_update})
        self.payments_collection.update_one(
            {"payment_intent_id": payment_info["payment_intent_id"]},
            {"$set": {"status": "refunded", "refund_id": refund.id, "refund_status": refund.status,
                      "refunded_at": now}},
        )
        logger.info(f"[STRIPE] Refund {refund.id} ({refund.status}) for order {order['_id']}")
        return {"success": True, "refund_id": refund.id, "status": refund_status, "amount": refunded_amount}

    def get_payment_status(self, order_id: str) -> Dict[str, Any]:
        payment = self.payments_collection.find_one({"order_id": order_id}, sort=[("created_at", DESCENDING)])
        if not payment:
            return {"success": False, "message": "Payment not found"}
        return {
            "success": True,
            "order_id": order_id,
            "status": payment.get("status"),
            "amount": payment.get("amount"),
            "currency": payment.get("currency"),
            "payment_method": payment.get("payment_method"),
            "created_at": payment.get("created_at"),
            "completed_at": payment.get("completed_at"),
        }
