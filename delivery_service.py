import logging
import re
from datetime import timedelta
from typing import Any, Dict, List, Optional

from pymongo import ASCENDING, DESCENDING, ReturnDocument

import config
from errors import ConflictError, NotFoundError, ServiceError
from helpers import day_bounds, serialize_doc, to_object_id, utc_now

logger = logging.getLogger(__name__)

TIME_RE = re.compile(r"^([01]\d|2[0-3]):[0-5]\d$")

SLOT_FIELDS = (
    "start_time", "end_time", "max_orders", "area", "pincodes", "is_active",
    "delivery_charge", "express_delivery", "priority",
)
AREA_FIELDS = (
    "name", "city", "state", "pincodes", "coordinates", "is_active", "delivery_charge",
    "free_delivery_above", "minimum_order_value", "average_delivery_time",
    "express_delivery_available", "express_delivery_charge", "cod_available", "priority",
)
AREA_DEFAULTS = {
    "is_active": True,
    "delivery_charge": 0,
    "free_delivery_above": 500,
    "minimum_order_value": 0,
    "average_delivery_time": 60,
    "express_delivery_available": False,
    "express_delivery_charge": 50,
    "cod_available": True,
    "priority": 0,
}


def slot_view(slot: dict) -> dict:
    data = serialize_doc(slot)
    data["is_available"] = bool(slot.get("is_active")) and slot.get("current_orders", 0) < slot.get("max_orders", 0)
    return data


def point_in_ring(lng: float, lat: float, ring: List[List[float]]) -> bool:
    """Ray casting over a closed ring of [lng, lat] pairs."""
    inside = False
    j = len(ring) - 1
    for i in range(len(ring)):
        xi, yi = ring[i][0], ring[i][1]
        xj, yj = ring[j][0], ring[j][1]
        if (yi > lat) != (yj > lat):
            cross = (xj - xi) * (lat - yi) / (yj - yi) + xi
            if lng < cross:
                inside = not inside
        j = i
    return inside


def point_in_polygon(lng: float, lat: float, polygon: Dict[str, Any]) -> bool:
    """GeoJSON Polygon: inside the exterior ring and outside every hole."""
    rings = (polygon or {}).get("coordinates") or []
    if not rings or not point_in_ring(lng, lat, rings[0]):
        return False
    return not any(point_in_ring(lng, lat, hole) for hole in rings[1:])


class DeliveryService:
    def __init__(self, db_connection):
        self.db = db_connection
        self.slots = self.db["delivery_slots"]
        self.areas = self.db["service_areas"]

    def ensure_indexes(self):
        self.slots.create_index([("date", ASCENDING), ("area", ASCENDING)])
        self.slots.create_index([("date", ASCENDING), ("pincodes", ASCENDING)])
        self.areas.create_index("pincodes")
        self.areas.create_index([("coordinates", "2dsphere")])

    # ---------- slots ----------
    def _clean_slot(self, data: Dict[str, Any], partial: bool = False) -> dict:
        doc = {k: data[k] for k in SLOT_FIELDS if k in data and data[k] is not None}
        if "date" in data and data["date"] is not None:
            doc["date"] = day_bounds(data["date"])[0]
        elif not partial:
            raise ServiceError("date is required")

        for key in ("start_time", "end_time"):
            if key in doc and not TIME_RE.match(str(doc[key])):
                raise ServiceError(f"{key} must be HH:MM")
            if key not in doc and not partial:
                raise ServiceError(f"{key} is required")
        if "start_time" in doc and "end_time" in doc and doc["start_time"] >= doc["end_time"]:
            raise ServiceError("start_time must be before end_time")
        if "max_orders" in doc:
            doc["max_orders"] = int(doc["max_orders"])
            if doc["max_orders"] < 1:
                raise ServiceError("max_orders must be at least 1")
        if isinstance(doc.get("pincodes"), str):
            doc["pincodes"] = [doc["pincodes"]]
        return doc

    def get_slot(self, slot_id: Any) -> dict:
        slot = self.slots.find_one({"_id": to_object_id(slot_id)})
        if not slot:
            raise NotFoundError("Delivery slot not found")
        return slot

    def available_slots(self, pincode: str, date: Any) -> list:
        if not pincode or not date:
            raise ServiceError("Pincode and date are required")
        start, end = day_bounds(date)
        cursor = self.slots.find({
            "pincodes": pincode,
            "date": {"$gte": start, "$lt": end},
            "is_active": True,
        }).sort([("priority", ASCENDING), ("start_time", ASCENDING)])
        return [s for s in cursor if s.get("current_orders", 0) < s.get("max_orders", 0)]

    def weekly_slots(self, pincode: str) -> Dict[str, list]:
        if not pincode:
            raise ServiceError("Pincode is required")
        today = day_bounds(utc_now())[0]
        cursor = self.slots.find({
            "pincodes": pincode,
            "date": {"$gte": today, "$lt": today + timedelta(days=7)},
            "is_active": True,
        }).sort([("date", ASCENDING), ("start_time", ASCENDING)])

        by_date = {}
        for slot in cursor:
            bucket = by_date.setdefault(slot["date"].strftime("%Y-%m-%d"), [])
            if slot.get("current_orders", 0) < slot.get("max_orders", 0):
                bucket.append(slot)
        return by_date

    def create_slot(self, data: Dict[str, Any]) -> dict:
        doc = self._clean_slot(data)
        doc.setdefault("max_orders", config.DEFAULT_SLOT_CAPACITY)
        doc.setdefault("is_active", True)
        doc.setdefault("pincodes", [])
        doc.setdefault("priority", 0)
        doc.setdefault("delivery_charge", 0)
        doc.setdefault("express_delivery", False)
        now = utc_now()
        doc.update({"current_orders": 0, "created_at": now, "updated_at": now})
        doc["_id"] = self.slots.insert_one(doc).inserted_id
        logger.info(f"[SLOT] Created slot {doc['_id']} {doc['date']:%Y-%m-%d} {doc['start_time']}-{doc['end_time']}")
        return doc

    def create_bulk_slots(self, dates: List[Any], time_slots: List[Dict[str, str]], area: str = None,
                          pincode: Any = None, max_orders: int = None) -> list:
        if not dates or not time_slots:
            raise ServiceError("dates and time_slots are required")
        pincodes = [pincode] if isinstance(pincode, str) else list(pincode or [])
        docs = []
        for day in dates:
            for window in time_slots:
                docs.append(self._clean_slot({
                    "date": day,
                    "start_time": window.get("start_time"),
                    "end_time": window.get("end_time"),
                    "area": area,
                    "pincodes": pincodes,
                    "max_orders": max_orders or config.DEFAULT_SLOT_CAPACITY,
                    "is_active": True,
                }))
        now = utc_now()
        for doc in docs:
            doc.update({"current_orders": 0, "priority": 0, "delivery_charge": 0,
                        "express_delivery": False, "created_at": now, "updated_at": now})
        result = self.slots.insert_many(docs)
        for doc, oid in zip(docs, result.inserted_ids):
            doc["_id"] = oid
        logger.info(f"[SLOT] Bulk created {len(docs)} slots")
        return docs

    def update_slot(self, slot_id: Any, data: Dict[str, Any]) -> dict:
        slot = self.get_slot(slot_id)
        updates = self._clean_slot(data, partial=True)
        start = updates.get("start_time", slot["start_time"])
        end = updates.get("end_time", slot["end_time"])
        if start >= end:
            raise ServiceError("start_time must be before end_time")
        if not updates:
            return slot

        updates["updated_at"] = utc_now()
        query = {"_id": slot["_id"]}
        if "max_orders" in updates:
            # Capacity can't drop under what is already booked
            query["current_orders"] = {"$lte": updates["max_orders"]}
        updated = self.slots.find_one_and_update(query, {"$set": updates}, return_document=ReturnDocument.AFTER)
        if not updated:
            raise ConflictError("max_orders cannot be lower than current orders")
        return updated

    def delete_slot(self, slot_id: Any):
        slot = self.get_slot(slot_id)
        result = self.slots.delete_one({"_id": slot["_id"], "current_orders": 0})
        if result.deleted_count == 0:
            raise ConflictError("Slot has booked orders and cannot be deleted")
        logger.info(f"[SLOT] Deleted slot {slot['_id']}")

    def all_slots(self, date: Any = None, area: str = None) -> list:
        query = {}
        if date:
            start, end = day_bounds(date)
            query["date"] = {"$gte": start, "$lt": end}
        if area:
            query["area"] = area
        return list(self.slots.find(query).sort([("date", ASCENDING), ("start_time", ASCENDING)]))

    def reserve_slot(self, slot_id: Any, pincode: str = None) -> dict:
        slot = self.get_slot(slot_id)
        if pincode and slot.get("pincodes") and pincode not in slot["pincodes"]:
            raise ServiceError("Delivery slot does not serve this pincode")
        reserved = self.slots.find_one_and_update(
            {"_id": slot["_id"], "is_active": True, "current_orders": {"$lt": slot["max_orders"]}},
            {"$inc": {"current_orders": 1}},
            return_document=ReturnDocument.AFTER,
        )
        if not reserved:
            raise ConflictError("Delivery slot is full or unavailable")
        # max_orders may have been lowered between the read and the increment
        if reserved["current_orders"] > reserved["max_orders"]:
            self.release_slot(slot["_id"])
            raise ConflictError("Delivery slot is full or unavailable")
        return reserved

    def release_slot(self, slot_id: Any) -> bool:
        result = self.slots.update_one(
            {"_id": to_object_id(slot_id), "current_orders": {"$gt": 0}},
            {"$inc": {"current_orders": -1}},
        )
        if result.modified_count == 0:
            logger.warning(f"[SLOT] Nothing to release on slot {slot_id}")
        return result.modified_count == 1

    # ---------- service areas ----------
    def _clean_area(self, data: Dict[str, Any], partial: bool = False) -> dict:
        doc = {k: data[k] for k in AREA_FIELDS if k in data and data[k] is not None}
        if not partial:
            for key in ("name", "city"):
                if not doc.get(key):
                    raise ServiceError(f"{key} is required")
        if "coordinates" in doc:
            polygon = doc["coordinates"]
            if isinstance(polygon, list):
                polygon = {"type": "Polygon", "coordinates": polygon}
            rings = polygon.get("coordinates") if isinstance(polygon, dict) else None
            if polygon.get("type") != "Polygon" or not rings or len(rings[0]) < 4:
                raise ServiceError("coordinates must be a GeoJSON Polygon")
            doc["coordinates"] = polygon
        return doc

    def get_area(self, area_id: Any) -> dict:
        area = self.areas.find_one({"_id": to_object_id(area_id)})
        if not area:
            raise NotFoundError("Service area not found")
        return area

    def find_area(self, pincode: str) -> Optional[dict]:
        return self.areas.find_one({"pincodes": pincode, "is_active": True},
                                   sort=[("priority", DESCENDING)])

    @staticmethod
    def _serviceable(area: dict) -> dict:
        return {
            "serviceable": True,
            "area": serialize_doc(area),
            "delivery_charge": area.get("delivery_charge", 0),
            "free_delivery_above": area.get("free_delivery_above"),
            "minimum_order_value": area.get("minimum_order_value", 0),
            "average_delivery_time": area.get("average_delivery_time"),
            "cod_available": area.get("cod_available", True),
        }

    def check_serviceability(self, pincode: str) -> dict:
        area = self.find_area(pincode)
        if not area:
            return {"serviceable": False, "message": "Sorry, we don't deliver to this area yet"}
        return self._serviceable(area)

    def check_serviceability_by_location(self, latitude: float, longitude: float) -> dict:
        if latitude is None or longitude is None:
            raise ServiceError("latitude and longitude are required")
        for area in self.areas.find({"is_active": True}).sort("priority", DESCENDING):
            if area.get("coordinates") and point_in_polygon(longitude, latitude, area["coordinates"]):
                return self._serviceable(area)
        return {"serviceable": False, "message": "Sorry, we don't deliver to this location yet"}

    def list_areas(self) -> list:
        projection = {"name": 1, "city": 1, "state": 1, "pincodes": 1,
                      "delivery_charge": 1, "free_delivery_above": 1}
        return list(self.areas.find({"is_active": True}, projection).sort("name", ASCENDING))

    def create_area(self, data: Dict[str, Any]) -> dict:
        doc = {**AREA_DEFAULTS, **self._clean_area(data)}
        doc.setdefault("pincodes", [])
        now = utc_now()
        doc.update({"created_at": now, "updated_at": now})
        doc["_id"] = self.areas.insert_one(doc).inserted_id
        logger.info(f"[AREA] Created service area {doc['name']}")
        return doc

    def update_area(self, area_id: Any, data: Dict[str, Any]) -> dict:
        area = self.get_area(area_id)
        updates = self._clean_area(data, partial=True)
        updates["updated_at"] = utc_now()
        return self.areas.find_one_and_update({"_id": area["_id"]}, {"$set": updates},
                                              return_document=ReturnDocument.AFTER)

    def delete_area(self, area_id: Any):
        result = self.areas.delete_one({"_id": to_object_id(area_id)})
        if result.deleted_count == 0:
            raise NotFoundError("Service area not found")

    def delivery_estimate(self, pincode: str, order_value: float, express: bool = False) -> dict:
        area = self.find_area(pincode)
        if not area:
            raise ServiceError("Delivery not available in this area")

        charge = area.get("delivery_charge", 0)
        if order_value >= area.get("free_delivery_above", AREA_DEFAULTS["free_delivery_above"]):
            charge = 0
        minutes = area.get("average_delivery_time", AREA_DEFAULTS["average_delivery_time"])
        if express:
            if not area.get("express_delivery_available"):
                raise ServiceError("Express delivery not available in this area")
            charge += area.get("express_delivery_charge", AREA_DEFAULTS["express_delivery_charge"])
            minutes = min(minutes, config.DELIVERY_ETA_MINUTES)

        return {
            "success": True,
            "delivery_charge": charge,
            "estimated_delivery_time": (utc_now() + timedelta(minutes=minutes)).isoformat(),
            "free_delivery_above": area.get("free_delivery_above"),
            "minimum_order_value": area.get("minimum_order_value", 0),
            "express_delivery_available": area.get("express_delivery_available", False),
            "express_delivery_charge": area.get("express_delivery_charge"),
        }
