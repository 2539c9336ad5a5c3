import hashlib
import math
import re
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

from bson import ObjectId

from errors import ServiceError


def utc_now() -> datetime:
    """Naive UTC timestamp, the form pymongo hands back from the database."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def as_naive_utc(value: datetime) -> datetime:
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def to_object_id(id_str: Any) -> ObjectId:
    if isinstance(id_str, ObjectId):
        return id_str
    try:
        return ObjectId(str(id_str))
    except Exception:
        raise ServiceError("Invalid id")


def serialize_doc(doc: Any) -> Any:
    """Make a Mongo document JSON friendly: _id -> id, ObjectId -> str, datetime -> ISO."""
    if isinstance(doc, list):
        return [serialize_doc(v) for v in doc]
    if isinstance(doc, ObjectId):
        return str(doc)
    if isinstance(doc, datetime):
        return doc.isoformat()
    if not isinstance(doc, dict):
        return doc
    out = {}
    for k, v in doc.items():
        if k == "_id":
            out["id"] = str(v)
            continue
        out[k] = serialize_doc(v)
    return out


def hash_secret(value: str) -> str:
    return hashlib.sha256(str(value).encode("utf-8")).hexdigest()


def normalize_mobile(number: str) -> str:
    """Strip spaces, dashes and a leading trunk zero; keep a leading + when 10+ digits."""
    if not number or not number.strip():
        return ""
    digits = re.sub(r"\D", "", number)
    if not digits:
        return number.strip()
    if digits.startswith("0"):
        digits = digits[1:]
    return "+" + digits if number.strip().startswith("+") else digits


def contains_pattern(text: str) -> Dict[str, str]:
    """Case-insensitive substring match for user supplied text."""
    return {"$regex": re.escape(text), "$options": "i"}


def paginate(page: Any, limit: Any, default_limit: int = 20) -> tuple:
    try:
        page = max(int(page or 1), 1)
    except (TypeError, ValueError):
        page = 1
    try:
        limit = max(int(limit or default_limit), 1)
    except (TypeError, ValueError):
        limit = default_limit
    return page, limit, (page - 1) * limit


def pagination_info(total: int, page: int, limit: int) -> Dict[str, int]:
    return {
        "total": total,
        "page": page,
        "pages": math.ceil(total / limit) if limit else 0,
        "limit": limit,
    }


def split_csv(value: Optional[str]) -> list:
    if not value:
        return []
    return [v.strip() for v in value.split(",") if v.strip()]


def day_bounds(day: Any) -> tuple:
    """Midnight-to-midnight UTC window for a date, datetime or ISO date string."""
    if isinstance(day, str):
        try:
            day = datetime.fromisoformat(day.replace("Z", "+00:00"))
        except ValueError:
            raise ServiceError("Invalid date")
    if isinstance(day, datetime):
        day = as_naive_utc(day)
        start = day.replace(hour=0, minute=0, second=0, microsecond=0)
    else:
        start = datetime(day.year, day.month, day.day)
    return start, start + timedelta(days=1)
