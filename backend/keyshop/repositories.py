from datetime import datetime
from typing import Dict, List, Optional, Tuple

from pymongo import ASCENDING, DESCENDING, ReturnDocument

from .schemas import CATEGORY_TYPES, normalize_object_id

HOMEPAGE_LATEST_LIMIT = 4
HOMEPAGE_TOP_RATED_LIMIT = 8
HOMEPAGE_PER_CATEGORY_LIMIT = 4
RELATED_PRODUCTS_LIMIT = 4


def _by_id(identifier) -> Dict[str, object]:
    return {"_id": normalize_object_id(identifier)}


class UserRepository:
    def __init__(self, db):
        self.collection = db.users

    def ensure_indexes(self):
        self.collection.create_index("email", unique=True)

    def find_one(self, query: Dict[str, object]):
        return self.collection.find_one(query)

    def find_by_id(self, user_id):
        object_id = normalize_object_id(user_id)
        if not object_id:
            return None
        return self.collection.find_one({"_id": object_id})

    def find(self, query: Dict[str, object]) -> List[Dict]:
        return list(self.collection.find(query).sort("created_at", DESCENDING))

    def create(self, document: Dict[str, object]) -> Dict[str, object]:
        insert_result = self.collection.insert_one(document)
        document["_id"] = insert_result.inserted_id
        return document

    def update_one(self, query: Dict[str, object], fields: Dict[str, object]):
        return self.collection.update_one(
            query, {"$set": {**fields, "updated_at": datetime.utcnow()}}
        )


class ProductRepository:
    """Products plus the license collection that references them."""

    def __init__(self, db):
        self.collection = db.products
        self.licenses = db.licenses

    def ensure_indexes(self):
        self.collection.create_index([("category", ASCENDING)])
        self.licenses.create_index([("product_sku", ASCENDING), ("is_sold", ASCENDING)])

    # --- Products ---

    def create(self, document: Dict[str, object]) -> Dict[str, object]:
        insert_result = self.collection.insert_one(document)
        document["_id"] = insert_result.inserted_id
        return document

    def find_one(self, query: Dict[str, object]):
        return self.collection.find_one(query)

    def find_by_id(self, product_id):
        object_id = normalize_object_id(product_id)
        if not object_id:
            return None
        return self.collection.find_one({"_id": object_id})

    def find(
        self, criteria: Dict[str, object], options: Dict[str, object]
    ) -> Tuple[int, List[Dict]]:
        total = self.collection.count_documents(criteria)
        cursor = self.collection.find(criteria)
        if options.get("sort"):
            cursor = cursor.sort(options["sort"])
        if options.get("skip"):
            cursor = cursor.skip(int(options["skip"]))
        if options.get("limit"):
            cursor = cursor.limit(int(options["limit"]))
        return total, list(cursor)

    def find_related(self, category: str, exclude_id, limit: int = RELATED_PRODUCTS_LIMIT) -> List[Dict]:
        cursor = (
            self.collection.find(
                {"category": category, "_id": {"$ne": normalize_object_id(exclude_id)}}
            )
            .sort("avg_rating", DESCENDING)
            .limit(limit)
        )
        return list(cursor)

    def find_grouped_for_homepage(self) -> Dict[str, object]:
        latest = list(
            self.collection.find().sort("created_at", DESCENDING).limit(HOMEPAGE_LATEST_LIMIT)
        )
        top_rated = list(
            self.collection.find()
            .sort("avg_rating", DESCENDING)
            .limit(HOMEPAGE_TOP_RATED_LIMIT)
        )
        by_category: Dict[str, List[Dict]] = {}
        for category in CATEGORY_TYPES:
            by_category[category] = list(
                self.collection.find({"category": category})
                .sort("avg_rating", DESCENDING)
                .limit(HOMEPAGE_PER_CATEGORY_LIMIT)
            )
        return {
            "latest_products": latest,
            "top_rated_products": top_rated,
            "products_by_category": by_category,
        }

    def find_one_and_update(self, query: Dict[str, object], update: Dict[str, object]):
        update = dict(update)
        update.setdefault("$set", {})
        update["$set"] = {**update["$set"], "updated_at": datetime.utcnow()}
        return self.collection.find_one_and_update(
            query, update, return_document=ReturnDocument.AFTER
        )

    def update_fields(self, product_id, fields: Dict[str, object]):
        return self.find_one_and_update(_by_id(product_id), {"$set": fields})

    def delete(self, product_id):
        return self.collection.find_one_and_delete(_by_id(product_id))

    def push_skus(self, product_id, skus: List[Dict[str, object]]):
        return self.find_one_and_update(
            _by_id(product_id), {"$push": {"sku_details": {"$each": skus}}}
        )

    def update_sku(self, product_id, sku_id, fields: Dict[str, object]):
        positional = {f"sku_details.$.{key}": value for key, value in fields.items()}
        return self.find_one_and_update(
            {
                "_id": normalize_object_id(product_id),
                "sku_details._id": normalize_object_id(sku_id),
            },
            {"$set": positional},
        )

    def delete_sku(self, product_id, sku_id):
        return self.find_one_and_update(
            _by_id(product_id),
            {"$pull": {"sku_details": {"_id": normalize_object_id(sku_id)}}},
        )

    def push_feedback(self, product_id, feedback: Dict[str, object], avg_rating: float):
        return self.find_one_and_update(
            _by_id(product_id),
            {"$set": {"avg_rating": avg_rating}, "$push": {"feedback_details": feedback}},
        )

    def pull_feedback(self, product_id, feedback_id, avg_rating: float):
        return self.find_one_and_update(
            _by_id(product_id),
            {
                "$set": {"avg_rating": avg_rating},
                "$pull": {"feedback_details": {"_id": normalize_object_id(feedback_id)}},
            },
        )

    # --- Licenses ---

    def create_license(self, document: Dict[str, object]) -> Dict[str, object]:
        insert_result = self.licenses.insert_one(document)
        document["_id"] = insert_result.inserted_id
        return document

    def find_licenses(self, query: Dict[str, object], limit: Optional[int] = None) -> List[Dict]:
        cursor = self.licenses.find(query).sort("created_at", ASCENDING)
        if limit:
            cursor = cursor.limit(int(limit))
        return list(cursor)

    def count_licenses(self, query: Dict[str, object]) -> int:
        return self.licenses.count_documents(query)

    def find_license_by_id(self, license_id):
        object_id = normalize_object_id(license_id)
        if not object_id:
            return None
        return self.licenses.find_one({"_id": object_id})

    def update_license(self, license_id, sku_id, fields: Dict[str, object]):
        # Sold keys are already delivered and stay as issued.
        return self.licenses.find_one_and_update(
            {
                "_id": normalize_object_id(license_id),
                "product_sku": normalize_object_id(sku_id),
                "is_sold": False,
            },
            {"$set": {**fields, "updated_at": datetime.utcnow()}},
            return_document=ReturnDocument.AFTER,
        )

    def mark_license_sold(self, license_id, order_id: str) -> bool:
        # The is_sold filter makes the sale a single conditional write.
        update_result = self.licenses.update_one(
            {"_id": normalize_object_id(license_id), "is_sold": False},
            {"$set": {"is_sold": True, "order_id": order_id, "updated_at": datetime.utcnow()}},
        )
        return update_result.modified_count == 1

    def remove_license(self, license_id):
        return self.licenses.find_one_and_delete(_by_id(license_id))

    def delete_licenses(self, query: Dict[str, object]) -> int:
        return self.licenses.delete_many(query).deleted_count


class OrderRepository:
    def __init__(self, db):
        self.collection = db.orders

    def ensure_indexes(self):
        self.collection.create_index("checkout_session_id", unique=True)
        self.collection.create_index([("user_id", ASCENDING), ("order_date", DESCENDING)])

    def find_one(self, query: Dict[str, object]):
        return self.collection.find_one(query)

    def find_by_id(self, order_id):
        object_id = normalize_object_id(order_id)
        if not object_id:
            return None
        return self.collection.find_one({"_id": object_id})

    def find(self, query: Dict[str, object]) -> List[Dict]:
        return list(
            self.collection.find(query).sort([("order_date", DESCENDING), ("_id", DESCENDING)])
        )

    def create(self, document: Dict[str, object]) -> Dict[str, object]:
        insert_result = self.collection.insert_one(document)
        document["_id"] = insert_result.inserted_id
        return document

    def find_one_and_update(self, query: Dict[str, object], fields: Dict[str, object]):
        return self.collection.find_one_and_update(
            query, {"$set": fields}, return_document=ReturnDocument.AFTER
        )
