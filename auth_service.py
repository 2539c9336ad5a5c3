import hmac
import logging
import secrets
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

import jwt
from bson import ObjectId
from google.auth.transport import requests as google_requests
from google.oauth2 import id_token as google_id_token
from passlib.context import CryptContext

import config
from errors import ForbiddenError, NotFoundError, ServiceError
from helpers import hash_secret, normalize_mobile, serialize_doc, to_object_id, utc_now

logger = logging.getLogger(__name__)

pwd_context = CryptContext(schemes=["pbkdf2_sha256"], deprecated="auto")

OTP_CHANNELS = ("phone", "email")
ADDRESS_ACTIONS = ("add", "update", "delete", "setDefault")
PLATFORMS = ("web", "android", "ios")
ROLES = ("user", "admin", "delivery")

# Never leave the service layer
PRIVATE_FIELDS = (
    "password", "phone_otp", "email_otp", "refresh_token",
    "password_reset_token", "password_reset_expires",
)


def hash_password(password: str) -> str:
    return pwd_context.hash(password)


def verify_password(plain_password: str, hashed_password: str) -> bool:
    if not hashed_password:
        return False
    try:
        return pwd_context.verify(plain_password, hashed_password)
    except (ValueError, TypeError):
        return False


def _encode(payload: Dict[str, Any], secret: str, hours: int) -> str:
    now = datetime.now(timezone.utc)
    payload = {**payload, "iat": now, "exp": now + timedelta(hours=hours)}
    token = jwt.encode(payload, secret, algorithm="HS256")
    return token.decode("utf-8") if isinstance(token, bytes) else token


def generate_access_token(user_id: str, email: Optional[str]) -> str:
    return _encode({"user_id": str(user_id), "email": email, "type": "access"},
                   config.SECRET_KEY, config.ACCESS_TOKEN_EXPIRE_HOURS)


def generate_refresh_token(user_id: str) -> str:
    # jti keeps two refresh tokens minted in the same second distinct
    return _encode({"user_id": str(user_id), "type": "refresh", "jti": secrets.token_hex(8)},
                   config.REFRESH_SECRET_KEY, config.REFRESH_TOKEN_EXPIRE_HOURS)


def decode_access_token(token: str) -> Dict[str, Any]:
    payload = jwt.decode(token, config.SECRET_KEY, algorithms=["HS256"])
    if payload.get("type") != "access":
        raise jwt.InvalidTokenError("Not an access token")
    return payload


def public_user(user: dict) -> dict:
    data = {k: v for k, v in user.items() if k not in PRIVATE_FIELDS}
    return serialize_doc(data)


class AuthService:
    def __init__(self, db_connection, mailer=None):
        self.db = db_connection
        self.users = self.db[config.USERS_COLLECTION]
        self.mailer = mailer

    def ensure_indexes(self):
        self.users.create_index("email", unique=True, sparse=True)
        self.users.create_index("mobile", unique=True, sparse=True)
        self.users.create_index("google_id", unique=True, sparse=True)

    # ---------- helpers ----------
    def get_user(self, user_id: Any) -> dict:
        user = self.users.find_one({"_id": to_object_id(user_id)})
        if not user:
            raise NotFoundError("User not found")
        return user

    def _find_by_email(self, email: str) -> Optional[dict]:
        return self.users.find_one({"email": email.strip().lower()})

    def _new_user(self, first_name: str, last_name: str, auth_provider: str, **fields) -> dict:
        now = utc_now()
        doc = {
            "first_name": first_name,
            "last_name": last_name or "",
            "auth_provider": auth_provider,
            "is_phone_verified": False,
            "is_email_verified": False,
            "role": "user",
            "is_blocked": False,
            "addresses": [],
            "device_tokens": [],
            "preferences": {
                "language": "en",
                "notifications": {"push": True, "email": True, "sms": True},
                "categories": [],
            },
            "wishlist": [],
            "created_at": now,
            "updated_at": now,
        }
        # email/mobile/google_id are sparse-unique: absent rather than null
        doc.update({k: v for k, v in fields.items() if v is not None})
        return doc

    def _issue_tokens(self, user: dict) -> dict:
        refresh_token = generate_refresh_token(user["_id"])
        self.users.update_one(
            {"_id": user["_id"]},
            {"$set": {"refresh_token": refresh_token, "last_login_at": utc_now()}},
        )
        return {
            "user": public_user(user),
            "token": generate_access_token(user["_id"], user.get("email")),
            "refresh_token": refresh_token,
        }

    # ---------- password auth ----------
    def register(self, first_name: str, last_name: str, password: str,
                 email: str = None, mobile: str = None) -> dict:
        first_name = (first_name or "").strip()
        email = (email or "").strip().lower() or None
        mobile = normalize_mobile(mobile or "") or None

        if not first_name or not password:
            raise ServiceError("First name and password are required")
        if not email and not mobile:
            raise ServiceError("Email or mobile is required")
        if len(password) < 8:
            raise ServiceError("Password must be at least 8 characters")
        if email and self._find_by_email(email):
            raise ServiceError("An account with this email is already registered")
        if mobile and self.users.find_one({"mobile": mobile}):
            raise ServiceError("An account with this mobile is already registered")

        doc = self._new_user(
            first_name, (last_name or "").strip(), "email" if email else "phone",
            email=email, mobile=mobile, password=hash_password(password),
        )
        doc["_id"] = self.users.insert_one(doc).inserted_id
        logger.info(f"[AUTH] Registered user {doc['_id']}")

        if self.mailer and email:
            result = self.mailer.send_welcome_email(email, first_name)
            if not result.get("success"):
                logger.warning(f"[AUTH] Welcome email not sent: {result.get('msg')}")

        return self._issue_tokens(doc)

    def login(self, identifier: str, password: str) -> dict:
        identifier = (identifier or "").strip()
        if not identifier or not password:
            raise ServiceError("Email/mobile and password are required")

        if "@" in identifier:
            user = self._find_by_email(identifier)
        else:
            user = self.users.find_one({"mobile": normalize_mobile(identifier)})

        if not user or not verify_password(password, user.get("password")):
            raise ServiceError("Invalid credentials", status_code=401)
        if user.get("is_blocked"):
            raise ForbiddenError("Account is blocked")
        return self._issue_tokens(user)

    def refresh(self, refresh_token: str) -> dict:
        try:
            payload = jwt.decode(refresh_token, config.REFRESH_SECRET_KEY, algorithms=["HS256"])
        except jwt.ExpiredSignatureError:
            raise ServiceError("Refresh token expired", status_code=401)
        except jwt.InvalidTokenError:
            raise ServiceError("Invalid refresh token", status_code=401)

        if payload.get("type") != "refresh":
            raise ServiceError("Invalid refresh token", status_code=401)

        user = self.users.find_one({"_id": to_object_id(payload.get("user_id"))})
        stored = (user or {}).get("refresh_token") or ""
        if not user or not hmac.compare_digest(stored, refresh_token):
            raise ServiceError("Refresh token revoked", status_code=401)
        if user.get("is_blocked"):
            raise ForbiddenError("Account is blocked")
        return self._issue_tokens(user)

    def logout(self, user_id: ObjectId):
        self.users.update_one({"_id": user_id}, {"$unset": {"refresh_token": ""}})

    # ---------- OTP ----------
    def _otp_field(self, channel: str) -> str:
        if channel not in OTP_CHANNELS:
            raise ServiceError("type must be 'phone' or 'email'")
        return "phone_otp" if channel == "phone" else "email_otp"

    def _find_for_otp(self, channel: str, phone: str = None, email: str = None) -> Optional[dict]:
        if channel == "phone":
            if not phone:
                raise ServiceError("Phone is required")
            return self.users.find_one({"mobile": normalize_mobile(phone)})
        if not email:
            raise ServiceError("Email is required")
        return self._find_by_email(email)

    def send_otp(self, channel: str, phone: str = None, email: str = None) -> dict:
        field = self._otp_field(channel)
        user = self._find_for_otp(channel, phone, email)

        if not user and channel == "email":
            raise NotFoundError("Please register first")
        if not user:
            mobile = normalize_mobile(phone)
            # Provisional profile, names are set on verification
            user = self._new_user("User", mobile[-4:], "phone", mobile=mobile)
            user["_id"] = self.users.insert_one(user).inserted_id
            logger.info(f"[AUTH] Created provisional phone user {user['_id']}")
        if user.get("is_blocked"):
            raise ForbiddenError("Account is blocked")

        otp = str(secrets.randbelow(900000) + 100000)
        expires_at = utc_now() + timedelta(minutes=config.OTP_EXPIRE_MINUTES)
        self.users.update_one(
            {"_id": user["_id"]},
            {"$set": {field: {"code": hash_secret(otp), "expires_at": expires_at, "attempts": 0}}},
        )

        if self.mailer:
            if channel == "phone":
                self.mailer.send_otp_sms(user["mobile"], otp)
            else:
                self.mailer.send_otp_email(user["email"], otp, user.get("first_name"))

        response = {"success": True, "message": f"OTP sent to your {channel}"}
        if config.EXPOSE_OTP_IN_RESPONSE:
            response["otp"] = otp
        return response

    def verify_otp(self, channel: str, otp: str, phone: str = None, email: str = None,
                   first_name: str = None, last_name: str = None) -> dict:
        field = self._otp_field(channel)
        user = self._find_for_otp(channel, phone, email)
        if not user:
            raise NotFoundError("User not found")

        otp_data = user.get(field) or {}
        if not otp_data.get("code") or not otp:
            raise ServiceError("Invalid or expired OTP")
        if otp_data["expires_at"] < utc_now():
            self.users.update_one({"_id": user["_id"]}, {"$unset": {field: ""}})
            raise ServiceError("Invalid or expired OTP")

        if not hmac.compare_digest(otp_data["code"], hash_secret(otp)):
            attempts = otp_data.get("attempts", 0) + 1
            if attempts >= config.OTP_MAX_ATTEMPTS:
                self.users.update_one({"_id": user["_id"]}, {"$unset": {field: ""}})
                logger.warning(f"[AUTH] OTP invalidated after {attempts} attempts for {user['_id']}")
            else:
                self.users.update_one({"_id": user["_id"]}, {"$set": {f"{field}.attempts": attempts}})
            raise ServiceError("Invalid or expired OTP")

        updates = {"updated_at": utc_now()}
        if channel == "phone":
            updates["is_phone_verified"] = True
            if first_name:
                updates["first_name"] = first_name.strip()
            if last_name:
                updates["last_name"] = last_name.strip()
        else:
            updates["is_email_verified"] = True

        self.users.update_one({"_id": user["_id"]}, {"$set": updates, "$unset": {field: ""}})
        user.update(updates)
        user.pop(field, None)
        return self._issue_tokens(user)

    # ---------- Google ----------
    def google_auth(self, token: str) -> dict:
        if not token:
            raise ServiceError("Google ID token is required")
        if not config.GOOGLE_CLIENT_ID:
            raise ServiceError("Google sign-in is not configured", status_code=503)
        try:
            info = google_id_token.verify_oauth2_token(token, google_requests.Request(), config.GOOGLE_CLIENT_ID)
        except ValueError as e:
            logger.warning(f"[AUTH] Google token rejected: {e}")
            raise ServiceError("Invalid Google token", status_code=401)

        google_id = info.get("sub")
        email = (info.get("email") or "").lower() or None
        if not google_id or not email:
            raise ServiceError("Google ID and email are required")

        user = self.users.find_one({"google_id": google_id})
        if not user:
            user = self._find_by_email(email)
            if user:
                link = {"google_id": google_id, "auth_provider": "google",
                        "is_email_verified": True, "updated_at": utc_now()}
                self.users.update_one({"_id": user["_id"]}, {"$set": link})
                user.update(link)
                logger.info(f"[AUTH] Linked Google account to user {user['_id']}")
            else:
                user = self._new_user(
                    info.get("given_name") or "User", info.get("family_name") or "", "google",
                    email=email, google_id=google_id,
                )
                user["is_email_verified"] = True
                user["_id"] = self.users.insert_one(user).inserted_id
                logger.info(f"[AUTH] Created Google user {user['_id']}")

        if user.get("is_blocked"):
            raise ForbiddenError("Account is blocked")
        return self._issue_tokens(user)

    # ---------- password reset ----------
    def forgot_password(self, email: str) -> dict:
        user = self._find_by_email(email or "")
        generic = {"success": True, "message": "If your email is registered, a reset link has been sent."}
        if not user:
            return generic

        token = secrets.token_hex(32)
        self.users.update_one(
            {"_id": user["_id"]},
            {"$set": {
                "password_reset_token": hash_secret(token),
                "password_reset_expires": utc_now() + timedelta(minutes=config.PASSWORD_RESET_EXPIRE_MINUTES),
            }},
        )
        if self.mailer:
            reset_url = f"{config.FRONTEND_URL}/reset-password/{token}"
            self.mailer.send_password_reset(user["email"], reset_url, user.get("first_name"))
        if config.EXPOSE_OTP_IN_RESPONSE:
            generic["token"] = token
        return generic

    def reset_password(self, token: str, new_password: str) -> dict:
        if not token or not new_password:
            raise ServiceError("Token and new password are required")
        if len(new_password) < 8:
            raise ServiceError("Password must be at least 8 characters")

        user = self.users.find_one({
            "password_reset_token": hash_secret(token),
            "password_reset_expires": {"$gt": utc_now()},
        })
        if not user:
            raise ServiceError("Token expired or invalid, please try again")

        self.users.update_one(
            {"_id": user["_id"]},
            {
                "$set": {"password": hash_password(new_password), "password_changed_at": utc_now()},
                "$unset": {"password_reset_token": "", "password_reset_expires": "", "refresh_token": ""},
            },
        )
        return {"success": True, "message": "Password reset successfully. Please login."}

    # ---------- profile ----------
    def update_location(self, user_id: ObjectId, latitude: float, longitude: float,
                        address: str = None) -> dict:
        location = {"latitude": latitude, "longitude": longitude, "address": address, "updated_at": utc_now()}
        self.users.update_one({"_id": user_id}, {"$set": {"last_location": location}})
        return location

    def manage_address(self, user_id: ObjectId, action: str, address: Dict[str, Any]) -> list:
        if action not in ADDRESS_ACTIONS:
            raise ServiceError(f"Invalid action: {action}")
        address = dict(address or {})
        user = self.get_user(user_id)
        addresses = list(user.get("addresses", []))

        if action == "add":
            address.pop("id", None)
            address["id"] = str(ObjectId())
            address["is_default"] = bool(address.get("is_default")) or not addresses
            if address["is_default"]:
                for addr in addresses:
                    addr["is_default"] = False
            addresses.append(address)
        else:
            address_id = address.get("id")
            if not any(a.get("id") == address_id for a in addresses):
                raise NotFoundError("Address not found")

            if action == "update":
                for idx, addr in enumerate(addresses):
                    if addr.get("id") == address_id:
                        addresses[idx] = {**addr, **address}
                if address.get("is_default"):
                    for addr in addresses:
                        addr["is_default"] = addr.get("id") == address_id
            elif action == "delete":
                addresses = [a for a in addresses if a.get("id") != address_id]
                if addresses and not any(a.get("is_default") for a in addresses):
                    addresses[0]["is_default"] = True
            else:
                for addr in addresses:
                    addr["is_default"] = addr.get("id") == address_id

        self.users.update_one({"_id": user["_id"]}, {"$set": {"addresses": addresses, "updated_at": utc_now()}})
        return addresses

    def register_device_token(self, user_id: ObjectId, token: str, platform: str = None):
        if not token:
            raise ServiceError("Token is required")
        platform = platform or "web"
        if platform not in PLATFORMS:
            raise ServiceError(f"Invalid platform: {platform}")

        user = self.get_user(user_id)
        tokens = [dt for dt in user.get("device_tokens", []) if dt.get("token") != token]
        tokens.append({"token": token, "platform": platform, "created_at": utc_now()})
        tokens = tokens[-config.MAX_DEVICE_TOKENS:]
        self.users.update_one({"_id": user["_id"]}, {"$set": {"device_tokens": tokens}})
        return tokens

    def update_preferences(self, user_id: ObjectId, preferences: Dict[str, Any]) -> dict:
        user = self.get_user(user_id)
        merged = dict(user.get("preferences") or {})
        for key, value in (preferences or {}).items():
            if key == "notifications" and isinstance(value, dict):
                merged["notifications"] = {**merged.get("notifications", {}), **value}
            else:
                merged[key] = value
        self.users.update_one({"_id": user["_id"]}, {"$set": {"preferences": merged, "updated_at": utc_now()}})
        return merged
