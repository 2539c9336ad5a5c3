import os
from pathlib import Path

from dotenv import load_dotenv

# Project .env wins over the process environment; cwd .env is only a fallback
_env_file = Path(__file__).resolve().parent / ".env"
load_dotenv(dotenv_path=_env_file, override=True)
load_dotenv(override=False)


def _bool(name: str, default: bool = False) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


# ---------- DATABASE ----------
MONGO_URI = os.getenv("MONGO_URI", "")
DATABASE_NAME = os.getenv("DATABASE_NAME", "quickcommerce")
USERS_COLLECTION = os.getenv("USERS_COLLECTION", "users")

# ---------- SERVER ----------
HOST = os.getenv("HOST", "0.0.0.0")
PORT = int(os.getenv("PORT", 5000))
FRONTEND_URL = os.getenv("FRONTEND_URL", "http://localhost:3000")
ADMIN_URL = os.getenv("ADMIN_URL", "http://localhost:5173")

# ---------- AUTH ----------
SECRET_KEY = os.getenv("SECRET_KEY", "dev-secret-key-change-me")
REFRESH_SECRET_KEY = os.getenv("REFRESH_SECRET_KEY", SECRET_KEY + "-refresh")
ACCESS_TOKEN_EXPIRE_HOURS = int(os.getenv("ACCESS_TOKEN_EXPIRE_HOURS", 24))
REFRESH_TOKEN_EXPIRE_HOURS = int(os.getenv("REFRESH_TOKEN_EXPIRE_HOURS", 72))
OTP_EXPIRE_MINUTES = int(os.getenv("OTP_EXPIRE_MINUTES", 10))
OTP_MAX_ATTEMPTS = int(os.getenv("OTP_MAX_ATTEMPTS", 5))
PASSWORD_RESET_EXPIRE_MINUTES = int(os.getenv("PASSWORD_RESET_EXPIRE_MINUTES", 30))
# Development only: echo generated OTPs back in the API response
EXPOSE_OTP_IN_RESPONSE = _bool("EXPOSE_OTP_IN_RESPONSE")
GOOGLE_CLIENT_ID = os.getenv("GOOGLE_CLIENT_ID", "")
MAX_DEVICE_TOKENS = int(os.getenv("MAX_DEVICE_TOKENS", 5))

# ---------- ORDERS / DELIVERY ----------
RETURN_WINDOW_DAYS = int(os.getenv("RETURN_WINDOW_DAYS", 7))
DELIVERY_ETA_MINUTES = int(os.getenv("DELIVERY_ETA_MINUTES", 30))
LOCATION_HISTORY_LIMIT = int(os.getenv("LOCATION_HISTORY_LIMIT", 100))
DEFAULT_SLOT_CAPACITY = int(os.getenv("DEFAULT_SLOT_CAPACITY", 50))

# ---------- STRIPE ----------
STRIPE_SECRET_KEY = os.getenv("STRIPE_SECRET_KEY", "")
STRIPE_WEBHOOK_SECRET = os.getenv("STRIPE_WEBHOOK_SECRET", "")
CURRENCY = os.getenv("CURRENCY", "inr")
PAYMENT_SUCCESS_URL = os.getenv("PAYMENT_SUCCESS_URL", FRONTEND_URL + "/payment/success")
PAYMENT_CANCEL_URL = os.getenv("PAYMENT_CANCEL_URL", FRONTEND_URL + "/payment/cancel")

# ---------- MSG91 (email + sms) ----------
MSG91_AUTH_KEY = os.getenv("MSG91_AUTH_KEY", "")
MSG91_DOMAIN = os.getenv("MSG91_DOMAIN", "")
MSG91_SENDER_EMAIL = os.getenv("MSG91_SENDER_EMAIL", "")
MSG91_SENDER_NAME = os.getenv("MSG91_SENDER_NAME", "QuickCart")
MSG91_EMAIL_TEMPLATE_ID = os.getenv("MSG91_EMAIL_TEMPLATE_ID", "")
MSG91_SMS_TEMPLATE_ID = os.getenv("MSG91_SMS_TEMPLATE_ID", "")

# ---------- STORAGE ----------
GCS_BUCKET_NAME = os.getenv("GCS_BUCKET_NAME", "")
GCS_CREDENTIALS_FILE = os.getenv(
    "GCS_CREDENTIALS_FILE",
    str(Path(__file__).resolve().parent / "gcs-service-account.json"),
)
MAX_UPLOAD_BYTES = int(os.getenv("MAX_UPLOAD_BYTES", 10_000_000))

# ---------- PUSH ----------
FIREBASE_CREDENTIALS_FILE = os.getenv("FIREBASE_CREDENTIALS_FILE", "")
