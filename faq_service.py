from typing import Any, Dict, List

from pymongo import ASCENDING, DESCENDING, ReturnDocument, UpdateOne

from errors import NotFoundError, ServiceError
from helpers import contains_pattern, to_object_id, utc_now

FAQ_CATEGORIES = ("orders", "delivery", "payment", "returns", "account", "products", "general")
FAQ_FIELDS = ("question", "answer", "category", "tags", "is_active", "order")


class FAQService:
    def __init__(self, db_connection):
        self.db = db_connection
        self.faqs = self.db["faqs"]

    def ensure_indexes(self):
        self.faqs.create_index([("category", ASCENDING), ("order", ASCENDING)])
        self.faqs.create_index([("is_active", ASCENDING), ("view_count", DESCENDING)])

    def _clean(self, data: Dict[str, Any], partial: bool = False) -> dict:
        doc = {k: data[k] for k in FAQ_FIELDS if k in data and data[k] is not None}
        if not partial and (not doc.get("question") or not doc.get("answer")):
            raise ServiceError("Question and answer are required")
        if "category" in doc and doc["category"] not in FAQ_CATEGORIES:
            raise ServiceError(f"Invalid category: {doc['category']}")
        return doc

    def list_active(self, category: str = None) -> tuple:
        query = {"is_active": True}
        if category:
            query["category"] = category
        faqs = list(self.faqs.find(query).sort([("order", ASCENDING), ("created_at", DESCENDING)]))
        grouped = {}
        for faq in faqs:
            grouped.setdefault(faq["category"], []).append(faq)
        return faqs, grouped

    def get(self, faq_id: Any) -> dict:
        faq = self.faqs.find_one_and_update({"_id": to_object_id(faq_id)}, {"$inc": {"view_count": 1}},
                                            return_document=ReturnDocument.AFTER)
        if not faq:
            raise NotFoundError("FAQ not found")
        return faq

    def search(self, q: str) -> list:
        if not q or len(q) < 2:
            return []
        pattern = contains_pattern(q)
        return list(self.faqs.find({
            "$or": [{"question": pattern}, {"answer": pattern}, {"tags": pattern}],
            "is_active": True,
        }).sort("view_count", DESCENDING))

    def mark_helpful(self, faq_id: Any, helpful: bool) -> dict:
        field = "helpful" if helpful else "not_helpful"
        faq = self.faqs.find_one_and_update({"_id": to_object_id(faq_id)}, {"$inc": {field: 1}},
                                            return_document=ReturnDocument.AFTER)
        if not faq:
            raise NotFoundError("FAQ not found")
        return {"helpful": faq.get("helpful", 0), "not_helpful": faq.get("not_helpful", 0)}

    def popular(self, limit: int = 5) -> list:
        return list(self.faqs.find({"is_active": True})
                    .sort([("view_count", DESCENDING), ("helpful", DESCENDING)]).limit(limit))

    # ---------- admin ----------
    def create(self, data: Dict[str, Any]) -> dict:
        doc = {"category": "general", "tags": [], "is_active": True, "order": 0, **self._clean(data)}
        now = utc_now()
        doc.update({"view_count": 0, "helpful": 0, "not_helpful": 0, "created_at": now, "updated_at": now})
        doc["_id"] = self.faqs.insert_one(doc).inserted_id
        return doc

    def update(self, faq_id: Any, data: Dict[str, Any]) -> dict:
        changes = self._clean(data, partial=True)
        changes["updated_at"] = utc_now()
        faq = self.faqs.find_one_and_update({"_id": to_object_id(faq_id)}, {"$set": changes},
                                            return_document=ReturnDocument.AFTER)
        if not faq:
            raise NotFoundError("FAQ not found")
        return faq

    def delete(self, faq_id: Any):
        if self.faqs.delete_one({"_id": to_object_id(faq_id)}).deleted_count == 0:
            raise NotFoundError("FAQ not found")

    def list_all(self) -> list:
        return list(self.faqs.find().sort([("category", ASCENDING), ("order", ASCENDING)]))

    def reorder(self, faq_ids: List[str]) -> int:
        if not faq_ids:
            raise ServiceError("faq_ids is required")
        ops = [UpdateOne({"_id": to_object_id(fid)}, {"$set": {"order": idx}}) for idx, fid in enumerate(faq_ids)]
        return self.faqs.bulk_write(ops).modified_count
