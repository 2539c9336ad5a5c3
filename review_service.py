import logging
from typing import Any, Dict, List

from pymongo import ASCENDING, DESCENDING, ReturnDocument
from pymongo.errors import DuplicateKeyError

from errors import ConflictError, NotFoundError, ServiceError
from helpers import paginate, pagination_info, to_object_id, utc_now

logger = logging.getLogger(__name__)

REVIEW_STATUSES = ("pending", "approved", "rejected")
REVIEW_SORTS = {
    "recent": [("created_at", DESCENDING)],
    "helpful": [("helpful_count", DESCENDING), ("created_at", DESCENDING)],
    "rating_high": [("rating", DESCENDING)],
    "rating_low": [("rating", ASCENDING)],
}


def _validate_content(rating: Any = None, title: str = None, comment: str = None, images: List[str] = None):
    if rating is not None and (not isinstance(rating, int) or not 1 <= rating <= 5):
        raise ServiceError("Rating must be an integer between 1 and 5")
    if title is not None and len(title) > 100:
        raise ServiceError("Title cannot exceed 100 characters")
    if comment is not None and len(comment) > 1000:
        raise ServiceError("Comment cannot exceed 1000 characters")
    if images is not None and not isinstance(images, list):
        raise ServiceError("Images must be a list")


class ReviewService:
    def __init__(self, db_connection):
        self.db = db_connection
        self.reviews = self.db["reviews"]
        self.products = self.db["products"]
        self.orders = self.db["orders"]

    def ensure_indexes(self):
        self.reviews.create_index([("product", ASCENDING), ("user", ASCENDING)], unique=True)
        self.reviews.create_index([("product", ASCENDING), ("status", ASCENDING), ("created_at", DESCENDING)])

    def update_product_rating(self, product_id: str) -> float:
        """Average of approved reviews, one decimal, 0 when there are none."""
        rows = list(self.reviews.aggregate([
            {"$match": {"product": product_id, "status": "approved"}},
            {"$group": {"_id": None, "avg": {"$avg": "$rating"}}},
        ]))
        average = round(rows[0]["avg"], 1) if rows and rows[0]["avg"] is not None else 0
        self.products.update_one({"_id": to_object_id(product_id)}, {"$set": {"total_rating": average}})
        return average

    def create_review(self, user_id: Any, product_id: str, order_id: str, rating: int,
                      title: str = None, comment: str = None, images: List[str] = None) -> dict:
        if rating is None:
            raise ServiceError("Rating is required")
        _validate_content(rating, title, comment, images)
        product_id = str(to_object_id(product_id))

        order = self.orders.find_one({
            "_id": to_object_id(order_id),
            "user_id": str(user_id),
            "order_items.product": product_id,
        })
        if not order:
            raise ServiceError("You can only review products you have purchased")
        if self.reviews.find_one({"product": product_id, "user": str(user_id)}):
            raise ConflictError("You have already reviewed this product")

        now = utc_now()
        doc = {
            "product": product_id,
            "user": str(user_id),
            "order": str(order["_id"]),
            "rating": rating,
            "title": title,
            "comment": comment,
            "images": images or [],
            "helpful": [],
            "not_helpful": [],
            "helpful_count": 0,
            "is_verified_purchase": True,
            "status": "pending",
            "admin_response": None,
            "created_at": now,
            "updated_at": now,
        }
        try:
            doc["_id"] = self.reviews.insert_one(doc).inserted_id
        except DuplicateKeyError:
            raise ConflictError("You have already reviewed this product")
        self.update_product_rating(product_id)
        return doc

    def product_reviews(self, product_id: str, page: Any = 1, limit: Any = 10, sort: str = None,
                        rating: Any = None) -> dict:
        product_id = str(to_object_id(product_id))
        query = {"product": product_id, "status": "approved"}
        if rating not in (None, ""):
            try:
                query["rating"] = int(rating)
            except (TypeError, ValueError):
                raise ServiceError("Invalid rating")

        page, limit, skip = paginate(page, limit, default_limit=10)
        order_by = REVIEW_SORTS.get(sort or "recent", REVIEW_SORTS["recent"])
        reviews = list(self.reviews.find(query).sort(order_by).skip(skip).limit(limit))
        total = self.reviews.count_documents(query)

        distribution = {str(star): 0 for star in range(1, 6)}
        for row in self.reviews.aggregate([
            {"$match": {"product": product_id, "status": "approved"}},
            {"$group": {"_id": "$rating", "count": {"$sum": 1}}},
        ]):
            distribution[str(row["_id"])] = row["count"]

        return {"reviews": reviews, "pagination": pagination_info(total, page, limit),
                "rating_distribution": distribution}

    def mark_helpful(self, user_id: Any, review_id: Any, helpful: bool) -> dict:
        review = self.reviews.find_one({"_id": to_object_id(review_id)})
        if not review:
            raise NotFoundError("Review not found")
        uid = str(user_id)
        add_to, pull_from = ("helpful", "not_helpful") if helpful else ("not_helpful", "helpful")
        self.reviews.update_one({"_id": review["_id"]},
                                {"$addToSet": {add_to: uid}, "$pull": {pull_from: uid}})
        updated = self.reviews.find_one({"_id": review["_id"]})
        self.reviews.update_one({"_id": review["_id"]},
                                {"$set": {"helpful_count": len(updated.get("helpful", []))}})
        return {"helpful_count": len(updated.get("helpful", [])),
                "not_helpful_count": len(updated.get("not_helpful", []))}

    def _own_review(self, user_id: Any, review_id: Any) -> dict:
        review = self.reviews.find_one({"_id": to_object_id(review_id), "user": str(user_id)})
        if not review:
            raise NotFoundError("Review not found or unauthorized")
        return review

    def update_review(self, user_id: Any, review_id: Any, rating: int = None, title: str = None,
                      comment: str = None, images: List[str] = None) -> dict:
        review = self._own_review(user_id, review_id)
        _validate_content(rating, title, comment, images)
        changes = {k: v for k, v in (("rating", rating), ("title", title), ("comment", comment),
                                     ("images", images)) if v is not None}
        # Edited reviews go back through moderation
        changes.update({"status": "pending", "updated_at": utc_now()})
        updated = self.reviews.find_one_and_update({"_id": review["_id"]}, {"$set": changes},
                                                   return_document=ReturnDocument.AFTER)
        self.update_product_rating(review["product"])
        return updated

    def delete_review(self, user_id: Any, review_id: Any):
        review = self._own_review(user_id, review_id)
        self.reviews.delete_one({"_id": review["_id"]})
        self.update_product_rating(review["product"])

    def moderate_review(self, admin_id: Any, review_id: Any, status: str, admin_response: str = None) -> dict:
        if status not in REVIEW_STATUSES:
            raise ServiceError(f"Invalid status: {status}")
        changes: Dict[str, Any] = {"status": status, "updated_at": utc_now()}
        if admin_response:
            changes["admin_response"] = {"comment": admin_response, "responded_at": utc_now(),
                                         "responded_by": str(admin_id)}
        review = self.reviews.find_one_and_update({"_id": to_object_id(review_id)}, {"$set": changes},
                                                  return_document=ReturnDocument.AFTER)
        if not review:
            raise NotFoundError("Review not found")
        self.update_product_rating(review["product"])
        logger.info(f"[REVIEW] {review['_id']} moderated as {status}")
        return review

    def all_reviews(self, status: str = None, page: Any = 1, limit: Any = 20) -> dict:
        query = {"status": status} if status else {}
        page, limit, skip = paginate(page, limit)
        reviews = list(self.reviews.find(query).sort("created_at", DESCENDING).skip(skip).limit(limit))
        return {"reviews": reviews, "pagination": pagination_info(self.reviews.count_documents(query), page, limit)}
