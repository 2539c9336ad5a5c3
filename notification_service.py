import logging
from typing import Any, Dict, List, Optional

import firebase_admin
import requests
from firebase_admin import credentials, exceptions as firebase_exceptions, messaging
from pymongo import DESCENDING, ReturnDocument

import config
import email_templates
from errors import NotFoundError, ServiceError
from helpers import as_naive_utc, paginate, pagination_info, serialize_doc, to_object_id, utc_now

logger = logging.getLogger(__name__)

NOTIFICATION_TYPES = ("order", "delivery", "offer", "promotion", "payment", "account", "general")
PRIORITIES = ("low", "medium", "high", "urgent")


class MSG91Service:
    """Transactional email and SMS through the MSG91 HTTP API."""

    EMAIL_URL = "https://control.msg91.com/api/v5/email/send"
    SMS_URL = "https://control.msg91.com/api/v5/flow"

    def __init__(self):
        self.auth_key = config.MSG91_AUTH_KEY
        self.domain = config.MSG91_DOMAIN
        self.sender_email = config.MSG91_SENDER_EMAIL
        self.sender_name = config.MSG91_SENDER_NAME

        logger.info(f"MSG91 Service initialized - Domain: {self.domain}, Sender: {self.sender_email}")

    def _headers(self) -> dict:
        return {"authkey": self.auth_key, "Content-Type": "application/json"}

    def send_email(self, to_email: str, subject: str, html: str, name: str = None) -> dict:
        """
        Send an HTML email through the MSG91 email template.

        The template is expected to render the `subject` and `body` variables.

        Returns:
            dict: {"success": bool, "data"/"msg": ...}
        """
        logger.info(f"[MSG91] Sending email '{subject}' to {to_email}")

        if not self.auth_key or not self.domain or not config.MSG91_EMAIL_TEMPLATE_ID:
            logger.warning("[MSG91] Email skipped: MSG91 credentials or template not configured")
            return {"success": False, "msg": "MSG91 not configured"}

        payload = {
            "recipients": [
                {
                    "to": [{"name": name or "User", "email": to_email}],
                    "variables": {"subject": subject, "body": html, "name": name or "User"},
                }
            ],
            "from": {"email": self.sender_email, "name": self.sender_name},
            "domain": self.domain,
            "template_id": config.MSG91_EMAIL_TEMPLATE_ID,
        }

        try:
            response = requests.post(self.EMAIL_URL, json=payload, headers=self._headers(), timeout=15)
            if response.status_code == 200:
                response_data = response.json()
                unique_id = response_data.get("data", {}).get("unique_id", "N/A")
                logger.info(f"[OK] MSG91: Email queued, unique_id {unique_id}")
                return {"success": True, "data": response_data}
            logger.error(f"[ERR] MSG91: Email failed with status {response.status_code}: {response.text[:200]}")
            return {"success": False, "msg": f"Failed to send email: {response.text}"}
        except requests.RequestException as e:
            logger.error(f"[ERR] MSG91: Email exception: {e}")
            return {"success": False, "msg": str(e)}

    def send_sms(self, mobile: str, message: str) -> dict:
        logger.info(f"[MSG91] Sending SMS to {mobile}")

        if not self.auth_key or not config.MSG91_SMS_TEMPLATE_ID:
            logger.warning(f"[MSG91] SMS skipped (not configured) for {mobile}")
            return {"success": False, "msg": "MSG91 SMS not configured"}

        payload = {
            "template_id": config.MSG91_SMS_TEMPLATE_ID,
            "short_url": "0",
            "recipients": [{"mobiles": mobile.lstrip("+"), "message": message}],
        }
        try:
            response = requests.post(self.SMS_URL, json=payload, headers=self._headers(), timeout=15)
            if response.status_code == 200:
                logger.info(f"[OK] MSG91: SMS accepted for {mobile}")
                return {"success": True, "data": response.json()}
            logger.error(f"[ERR] MSG91: SMS failed with status {response.status_code}: {response.text[:200]}")
            return {"success": False, "msg": f"Failed to send SMS: {response.text}"}
        except requests.RequestException as e:
            logger.error(f"[ERR] MSG91: SMS exception: {e}")
            return {"success": False, "msg": str(e)}

    def send_otp_sms(self, mobile: str, otp: str) -> dict:
        message = (
            f"Your verification code is: {otp}. Valid for {config.OTP_EXPIRE_MINUTES} minutes. "
            "Do not share with anyone."
        )
        return self.send_sms(mobile, message)

    def send_order_status_sms(self, mobile: str, status: str, order_id: str) -> dict:
        return self.send_sms(mobile, f"Your order #{order_id} is {status}. Track your order in the app.")

    def send_delivery_otp_sms(self, mobile: str, otp: str) -> dict:
        message = f"Your delivery OTP is: {otp}. Share this with delivery person to complete delivery."
        return self.send_sms(mobile, message)

    def send_otp_email(self, email: str, otp: str, name: str = None) -> dict:
        return self.send_email(email, "Your verification code", email_templates.otp_email(otp, name), name)

    def send_welcome_email(self, email: str, name: str = None) -> dict:
        return self.send_email(email, f"Welcome to {self.sender_name}", email_templates.welcome_email(name), name)

    def send_password_reset(self, email: str, reset_url: str, name: str = None) -> dict:
        html = email_templates.password_reset_email(reset_url, name)
        return self.send_email(email, "Reset your password", html, name)

    def send_order_confirmation(self, email: str, order: dict, name: str = None) -> dict:
        logger.info(f"[MSG91] Sending order confirmation for {order.get('_id')} to {email}")
        html = email_templates.order_confirmation_email(order, name)
        return self.send_email(email, f"Order #{order.get('_id')} confirmed", html, name)

    def send_order_status(self, email: str, order: dict, status: str, name: str = None) -> dict:
        html = email_templates.order_status_email(order, status, name)
        return self.send_email(email, f"Order {status}", html, name)


class PushNotificationService:
    """Firebase Cloud Messaging multicast. Without credentials pushes are only logged."""

    def __init__(self, credentials_file: str = None):
        self.app = None
        credentials_file = credentials_file if credentials_file is not None else config.FIREBASE_CREDENTIALS_FILE
        if credentials_file:
            try:
                cred = credentials.Certificate(credentials_file)
                self.app = firebase_admin.initialize_app(cred, name="push")
                logger.info("[PUSH] Firebase messaging initialized")
            except (ValueError, IOError) as e:
                logger.warning("[PUSH] Firebase init failed, pushes will be logged only: %s", e)

    def send(self, tokens: List[str], title: str, body: str, data: Optional[Dict[str, Any]] = None) -> dict:
        if not tokens:
            return {"success": False, "msg": "No tokens"}

        data = {k: str(v) for k, v in (data or {}).items() if v is not None}
        if self.app is None:
            logger.info(f"[PUSH] (not configured) '{title}' -> {len(tokens)} device(s)")
            return {"success": False, "msg": "Push not configured"}

        message = messaging.MulticastMessage(
            notification=messaging.Notification(title=title, body=body),
            data=data,
            tokens=tokens,
        )
        try:
            response = messaging.send_each_for_multicast(message, app=self.app)
        except (firebase_exceptions.FirebaseError, ValueError) as e:
            logger.error(f"[PUSH] Multicast failed: {e}")
            return {"success": False, "msg": str(e)}

        logger.info(f"[PUSH] Sent {response.success_count}, failed {response.failure_count}")
        return {
            "success": response.failure_count == 0,
            "success_count": response.success_count,
            "failure_count": response.failure_count,
        }


class NotificationService:
    """In-app notification log plus push dispatch."""

    def __init__(self, db_connection, push_service: PushNotificationService = None):
        self.db = db_connection
        self.notifications = self.db["notifications"]
        self.users = self.db[config.USERS_COLLECTION]
        self.push = push_service or PushNotificationService(credentials_file="")

    def ensure_indexes(self):
        self.notifications.create_index([("user", 1), ("created_at", -1)])
        self.notifications.create_index([("user", 1), ("is_read", 1)])
        self.notifications.create_index([("type", 1), ("created_at", -1)])

    # ---------- dispatch ----------
    def _push_to_user(self, user_id: str, title: str, message: str, data: Optional[dict] = None) -> dict:
        try:
            user = self.users.find_one({"_id": to_object_id(user_id)}, {"device_tokens": 1, "preferences": 1})
        except ServiceError:
            user = None
        if not user:
            return {"success": False, "msg": "User not found"}
        prefs = (user.get("preferences") or {}).get("notifications") or {}
        if prefs.get("push", True) is False:
            return {"success": False, "msg": "Push disabled by user"}
        tokens = [dt["token"] for dt in user.get("device_tokens", []) if dt.get("token")]
        return self.push.send(tokens, title, message, data)

    def _build(self, user_id: str, title: str, message: str, notif_type: str = None, data: Any = None,
               action_url: str = None, image_url: str = None, priority: str = None) -> dict:
        if not title or not message:
            raise ServiceError("Title and message are required")
        notif_type = notif_type or "general"
        priority = priority or "medium"
        if notif_type not in NOTIFICATION_TYPES:
            raise ServiceError(f"Invalid notification type: {notif_type}")
        if priority not in PRIORITIES:
            raise ServiceError(f"Invalid priority: {priority}")
        now = utc_now()
        return {
            "user": str(user_id),
            "title": title,
            "message": message,
            "type": notif_type,
            "data": data,
            "is_read": False,
            "read_at": None,
            "priority": priority,
            "action_url": action_url,
            "image_url": image_url,
            "sent_via": [],
            "scheduled_for": None,
            "sent_at": now,
            "expires_at": None,
            "created_at": now,
            "updated_at": now,
        }

    def notify(self, user_id: str, title: str, message: str, notif_type: str = "general",
               data: Any = None, push: bool = True, **extra) -> dict:
        """Record an in-app notification and push it to the user's devices."""
        doc = self._build(user_id, title, message, notif_type, data, **extra)
        if push:
            push_result = self._push_to_user(user_id, title, message, data if isinstance(data, dict) else None)
            if push_result.get("success"):
                doc["sent_via"].append("push")
        result = self.notifications.insert_one(doc)
        doc["_id"] = result.inserted_id
        return doc

    # ---------- user ----------
    def _visible(self) -> dict:
        now = utc_now()
        return {
            "$and": [
                {"$or": [{"scheduled_for": None}, {"scheduled_for": {"$lte": now}}]},
                {"$or": [{"expires_at": None}, {"expires_at": {"$gt": now}}]},
            ]
        }

    def user_notifications(self, user_id: str, page=1, limit=20, notif_type: str = None,
                           is_read: Optional[bool] = None) -> dict:
        page, limit, skip = paginate(page, limit)
        query = {"user": user_id, **self._visible()}
        if notif_type:
            query["type"] = notif_type
        if is_read is not None:
            query["is_read"] = is_read

        cursor = self.notifications.find(query).sort("created_at", DESCENDING).skip(skip).limit(limit)
        total = self.notifications.count_documents(query)
        unread = self.notifications.count_documents({"user": user_id, "is_read": False, **self._visible()})
        return {
            "success": True,
            "notifications": serialize_doc(list(cursor)),
            "unread_count": unread,
            "pagination": pagination_info(total, page, limit),
        }

    def mark_as_read(self, user_id: str, notification_id: str) -> dict:
        now = utc_now()
        doc = self.notifications.find_one_and_update(
            {"_id": to_object_id(notification_id), "user": user_id},
            {"$set": {"is_read": True, "read_at": now, "updated_at": now}},
            return_document=ReturnDocument.AFTER,
        )
        if not doc:
            raise NotFoundError("Notification not found")
        return doc

    def mark_all_as_read(self, user_id: str) -> int:
        now = utc_now()
        result = self.notifications.update_many(
            {"user": user_id, "is_read": False, **self._visible()},
            {"$set": {"is_read": True, "read_at": now, "updated_at": now}},
        )
        return result.modified_count

    def delete(self, user_id: str, notification_id: str):
        result = self.notifications.delete_one({"_id": to_object_id(notification_id), "user": user_id})
        if result.deleted_count == 0:
            raise NotFoundError("Notification not found")

    def delete_all_read(self, user_id: str) -> int:
        return self.notifications.delete_many({"user": user_id, "is_read": True}).deleted_count

    # ---------- admin ----------
    def create(self, user_id: str, title: str, message: str, notif_type: str = None, data: Any = None,
               action_url: str = None, image_url: str = None, priority: str = None) -> dict:
        if not self.users.find_one({"_id": to_object_id(user_id)}, {"_id": 1}):
            raise NotFoundError("User not found")
        return self.notify(user_id, title, message, notif_type or "general", data,
                           action_url=action_url, image_url=image_url, priority=priority)

    def send_bulk(self, user_ids: List[str], title: str, message: str, notif_type: str = None,
                  data: Any = None, action_url: str = None, image_url: str = None) -> int:
        if not user_ids:
            raise ServiceError("user_ids must be a non-empty list")
        docs = [self._build(uid, title, message, notif_type, data, action_url, image_url) for uid in user_ids]
        self.notifications.insert_many(docs)
        for uid in user_ids:
            self._push_to_user(uid, title, message, data if isinstance(data, dict) else None)
        logger.info(f"[NOTIFY] Bulk notification '{title}' -> {len(docs)} user(s)")
        return len(docs)

    def send_to_all(self, title: str, message: str, notif_type: str = None, data: Any = None,
                    action_url: str = None, image_url: str = None) -> int:
        user_ids = [str(u["_id"]) for u in self.users.find({"is_blocked": {"$ne": True}}, {"_id": 1})]
        if not user_ids:
            return 0
        docs = [self._build(uid, title, message, notif_type, data, action_url, image_url) for uid in user_ids]
        self.notifications.insert_many(docs)
        logger.info(f"[NOTIFY] Broadcast '{title}' -> {len(docs)} user(s)")
        return len(docs)

    def schedule(self, user_id: str, title: str, message: str, scheduled_for, notif_type: str = None,
                 data: Any = None, action_url: str = None, expires_at=None) -> dict:
        if scheduled_for is None:
            raise ServiceError("scheduled_for is required")
        scheduled_for = as_naive_utc(scheduled_for)
        if scheduled_for <= utc_now():
            raise ServiceError("scheduled_for must be in the future")
        if expires_at is not None:
            expires_at = as_naive_utc(expires_at)
            if expires_at <= scheduled_for:
                raise ServiceError("expires_at must be after scheduled_for")

        doc = self._build(user_id, title, message, notif_type, data, action_url)
        doc.update({"scheduled_for": scheduled_for, "expires_at": expires_at, "sent_at": None})
        result = self.notifications.insert_one(doc)
        doc["_id"] = result.inserted_id
        return doc
