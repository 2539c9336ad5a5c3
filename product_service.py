import logging
import re
from datetime import timedelta
from typing import Any, Dict, List, Optional

from pymongo import ASCENDING, DESCENDING, ReturnDocument

import config
from errors import ConflictError, NotFoundError, ServiceError
from helpers import contains_pattern, paginate, pagination_info, split_csv, to_object_id, utc_now

logger = logging.getLogger(__name__)

SORT_OPTIONS = {
    "price_asc": [("price", ASCENDING)],
    "price_desc": [("price", DESCENDING)],
    "rating": [("total_rating", DESCENDING)],
    "popular": [("sold", DESCENDING)],
    "newest": [("created_at", DESCENDING)],
}
DEAL_TAGS = ["deal", "offer", "sale", "discount"]
PRODUCT_FIELDS = ("title", "slug", "description", "price", "category", "brand", "color",
                  "tags", "quantity", "images")


def sort_fields(sort: Optional[str]) -> list:
    return SORT_OPTIONS.get(sort or "newest", SORT_OPTIONS["newest"])


def slugify(text: str) -> str:
    return re.sub(r"[^a-z0-9]+", "-", text.lower()).strip("-")


def price_range(min_price: Any = None, max_price: Any = None) -> Optional[dict]:
    if min_price in (None, "") and max_price in (None, ""):
        return None
    bounds = {}
    try:
        if min_price not in (None, ""):
            bounds["$gte"] = float(min_price)
        if max_price not in (None, ""):
            bounds["$lte"] = float(max_price)
    except (TypeError, ValueError):
        raise ServiceError("Invalid price range")
    return bounds


class ProductService:
    """Catalog browsing, search and recommendations."""

    def __init__(self, db_connection):
        self.db = db_connection
        self.products = self.db["products"]
        self.categories = self.db["categories"]
        self.orders = self.db["orders"]
        self.users = self.db[config.USERS_COLLECTION]

    def ensure_indexes(self):
        self.products.create_index("slug", unique=True)
        self.products.create_index([("category", ASCENDING), ("sold", DESCENDING)])
        self.products.create_index([("created_at", DESCENDING)])
        self.categories.create_index("title", unique=True)

    # ---------- catalog ----------
    def get_product(self, product_id: Any) -> dict:
        product = self.products.find_one({"_id": to_object_id(product_id)})
        if not product:
            raise NotFoundError("Product not found")
        return product

    def _clean_product(self, data: Dict[str, Any], partial: bool = False) -> dict:
        doc = {k: data[k] for k in PRODUCT_FIELDS if k in data and data[k] is not None}
        if not partial:
            for key in ("title", "price", "category"):
                if doc.get(key) in (None, ""):
                    raise ServiceError(f"{key} is required")
        if "price" in doc and float(doc["price"]) < 0:
            raise ServiceError("Price cannot be negative")
        if "quantity" in doc and int(doc["quantity"]) < 0:
            raise ServiceError("Quantity cannot be negative")
        if doc.get("title") and not doc.get("slug"):
            doc["slug"] = slugify(doc["title"])
        return doc

    def create_product(self, data: Dict[str, Any]) -> dict:
        doc = self._clean_product(data)
        if self.products.find_one({"slug": doc["slug"]}):
            raise ConflictError("A product with this slug already exists")
        now = utc_now()
        doc.setdefault("quantity", 0)
        doc.setdefault("color", [])
        doc.setdefault("tags", [])
        doc.setdefault("images", [])
        doc.update({"sold": 0, "total_rating": 0, "created_at": now, "updated_at": now})
        doc["_id"] = self.products.insert_one(doc).inserted_id
        logger.info(f"[CATALOG] Created product {doc['_id']} ({doc['slug']})")
        return doc

    def update_product(self, product_id: Any, data: Dict[str, Any]) -> dict:
        product = self.get_product(product_id)
        updates = self._clean_product(data, partial=True)
        if "slug" in updates and self.products.find_one({"slug": updates["slug"], "_id": {"$ne": product["_id"]}}):
            raise ConflictError("A product with this slug already exists")
        updates["updated_at"] = utc_now()
        return self.products.find_one_and_update({"_id": product["_id"]}, {"$set": updates},
                                                 return_document=ReturnDocument.AFTER)

    def list_categories(self) -> list:
        return list(self.categories.find().sort("title", ASCENDING))

    def create_category(self, title: str) -> dict:
        title = (title or "").strip()
        if not title:
            raise ServiceError("Title is required")
        if self.categories.find_one({"title": {"$regex": f"^{re.escape(title)}$", "$options": "i"}}):
            raise ConflictError("Category already exists")
        doc = {"title": title, "created_at": utc_now()}
        doc["_id"] = self.categories.insert_one(doc).inserted_id
        return doc

    # ---------- search ----------
    def search(self, q: str = None, category: str = None, min_price: Any = None, max_price: Any = None,
               brand: str = None, sort: str = None, limit: Any = 20) -> list:
        query = {}
        if q:
            pattern = contains_pattern(q)
            query["$or"] = [{"title": pattern}, {"description": pattern}, {"tags": pattern}]
        if category:
            query["category"] = category
        if brand:
            query["brand"] = brand
        price = price_range(min_price, max_price)
        if price:
            query["price"] = price
        _, limit, _ = paginate(1, limit)
        return list(self.products.find(query).sort(sort_fields(sort)).limit(limit))

    def suggestions(self, q: str) -> dict:
        if not q or len(q) < 2:
            return {"products": [], "categories": [], "popular": []}
        pattern = contains_pattern(q)
        products = self.products.find({"$or": [{"title": pattern}, {"tags": pattern}]},
                                      {"title": 1, "slug": 1, "images": 1}).limit(5)
        categories = self.categories.find({"title": pattern}, {"title": 1}).limit(3)
        return {
            "products": [
                {"type": "product", "title": p["title"], "slug": p.get("slug"),
                 "image": ((p.get("images") or [{}])[0] or {}).get("url")}
                for p in products
            ],
            "categories": [{"type": "category", "title": c["title"]} for c in categories],
            "popular": self.trending_searches()[:5],
        }

    def trending_searches(self) -> List[str]:
        return [p["title"] for p in self.products.find({}, {"title": 1}).sort("sold", DESCENDING).limit(10)]

    def filter(self, categories: str = None, brands: str = None, colors: str = None,
               min_price: Any = None, max_price: Any = None, rating: Any = None, in_stock: bool = False,
               tags: str = None, sort: str = None, page: Any = 1, limit: Any = 20) -> dict:
        query = {}
        for field, value in (("category", categories), ("brand", brands), ("color", colors), ("tags", tags)):
            values = split_csv(value)
            if values:
                query[field] = {"$in": values}
        price = price_range(min_price, max_price)
        if price:
            query["price"] = price
        if rating not in (None, ""):
            try:
                query["total_rating"] = {"$gte": float(rating)}
            except (TypeError, ValueError):
                raise ServiceError("Invalid rating")
        if in_stock:
            query["quantity"] = {"$gt": 0}

        page, limit, skip = paginate(page, limit)
        products = list(self.products.find(query).sort(sort_fields(sort)).skip(skip).limit(limit))
        total = self.products.count_documents(query)
        return {"products": products, "pagination": pagination_info(total, page, limit)}

    # ---------- recommendations ----------
    def best_sellers(self, category: str = None, limit: Any = 10) -> list:
        _, limit, _ = paginate(1, limit, default_limit=10)
        query = {"category": category} if category else {}
        return list(self.products.find(query).sort("sold", DESCENDING).limit(limit))

    def new_arrivals(self, category: str = None, limit: Any = 10) -> list:
        _, limit, _ = paginate(1, limit, default_limit=10)
        query = {"category": category} if category else {}
        return list(self.products.find(query).sort("created_at", DESCENDING).limit(limit))

    def deals(self, limit: Any = 10) -> list:
        _, limit, _ = paginate(1, limit, default_limit=10)
        return list(self.products.find({"tags": {"$in": DEAL_TAGS}}).sort("created_at", DESCENDING).limit(limit))

    def _products_in_order(self, ranked_ids: List[str]) -> list:
        by_id = {str(p["_id"]): p for p in self.products.find({"_id": {"$in": [to_object_id(i) for i in ranked_ids]}})}
        return [by_id[i] for i in ranked_ids if i in by_id]

    def trending(self, limit: Any = 10, days: int = 30) -> list:
        _, limit, _ = paginate(1, limit, default_limit=10)
        since = utc_now() - timedelta(days=days)
        pipeline = [
            {"$match": {"created_at": {"$gte": since}, "order_status": {"$ne": "Cancelled"}}},
            {"$unwind": "$order_items"},
            {"$group": {"_id": "$order_items.product", "count": {"$sum": "$order_items.quantity"}}},
            {"$sort": {"count": -1}},
            {"$limit": limit},
        ]
        return self._products_in_order([row["_id"] for row in self.orders.aggregate(pipeline)])

    def similar(self, product_id: Any, limit: int = 8) -> list:
        product = self.get_product(product_id)
        clauses = [{"category": product.get("category")}]
        if product.get("brand"):
            clauses.append({"brand": product["brand"]})
        if product.get("tags"):
            clauses.append({"tags": {"$in": product["tags"]}})
        return list(self.products.find({"_id": {"$ne": product["_id"]}, "$or": clauses})
                    .sort("total_rating", DESCENDING).limit(limit))

    def frequently_bought_together(self, product_id: Any, limit: int = 4) -> list:
        product_id = str(to_object_id(product_id))
        pipeline = [
            {"$match": {"order_items.product": product_id}},
            {"$unwind": "$order_items"},
            {"$match": {"order_items.product": {"$ne": product_id}}},
            {"$group": {"_id": "$order_items.product", "count": {"$sum": 1}}},
            {"$sort": {"count": -1}},
            {"$limit": limit},
        ]
        return self._products_in_order([row["_id"] for row in self.orders.aggregate(pipeline)])

    def personalized(self, user_id: Any, limit: int = 12) -> list:
        user = self.users.find_one({"_id": to_object_id(user_id)}) or {}
        orders = self.orders.find({"user_id": str(user_id)}).sort("created_at", DESCENDING).limit(10)

        purchased = set()
        for order in orders:
            purchased.update(item["product"] for item in order.get("order_items", []))

        categories, brands = set(), set()
        for product in self._products_in_order(list(purchased)):
            if product.get("category"):
                categories.add(product["category"])
            if product.get("brand"):
                brands.add(product["brand"])
        categories.update((user.get("preferences") or {}).get("categories") or [])

        if not categories and not brands:
            return self.best_sellers(limit=limit)

        query = {
            "_id": {"$nin": [to_object_id(p) for p in purchased]},
            "$or": [{"category": {"$in": list(categories)}}, {"brand": {"$in": list(brands)}}],
        }
        return list(self.products.find(query).sort([("total_rating", DESCENDING), ("sold", DESCENDING)]).limit(limit))
