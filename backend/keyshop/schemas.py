"""
Persisted document shapes for the Key Shop collections.

Each collection stores plain dictionaries; the helpers below build new
documents with their defaults and turn stored documents into JSON-safe
payloads.
"""
from datetime import datetime
from typing import Dict, Optional

from bson import ObjectId
from bson.errors import InvalidId

USER_TYPE_ADMIN = "admin"
USER_TYPE_CUSTOMER = "customer"
USER_TYPES = {USER_TYPE_ADMIN, USER_TYPE_CUSTOMER}

CATEGORY_TYPES = ("Operating System", "Application Software")
PLATFORM_TYPES = ("Windows", "Mac", "Linux", "Android", "iOS")
BASE_TYPES = ("Computer", "Mobile")

DEFAULT_PRODUCT_IMAGE = (
    "https://st4.depositphotos.com/14953852/24787/v/450/"
    "depositphotos_247872612-stock-illustration-no-image-available-icon-vector.jpg"
)

ORDER_STATUS_PENDING = "pending"
ORDER_STATUS_COMPLETED = "completed"
ORDER_STATUSES = {ORDER_STATUS_PENDING, ORDER_STATUS_COMPLETED}

PAYMENT_STATUS_PAID = "paid"

# Never leave the users collection.
PRIVATE_USER_FIELDS = ("password", "otp", "otp_expiry_time")


def normalize_object_id(value) -> Optional[ObjectId]:
    if isinstance(value, ObjectId):
        return value
    try:
        return ObjectId(str(value))
    except (InvalidId, TypeError):
        return None


def new_user_document(
    email: str,
    name: str,
    password_hash: str,
    user_type: str,
    is_verified: bool,
    otp: Optional[str] = None,
    otp_expiry_time: Optional[datetime] = None,
) -> Dict[str, object]:
    timestamp = datetime.utcnow()
    return {
        "email": email,
        "name": name,
        "password": password_hash,
        "type": user_type,
        "is_verified": is_verified,
        "otp": otp,
        "otp_expiry_time": otp_expiry_time,
        "created_at": timestamp,
        "updated_at": timestamp,
    }


def new_product_document(payload: Dict[str, object]) -> Dict[str, object]:
    timestamp = datetime.utcnow()
    document = {
        "product_name": payload.get("product_name"),
        "description": payload.get("description"),
        "image": payload.get("image") or DEFAULT_PRODUCT_IMAGE,
        "image_details": payload.get("image_details") or {},
        "category": payload.get("category"),
        "platform_type": payload.get("platform_type"),
        "base_type": payload.get("base_type"),
        "product_url": payload.get("product_url"),
        "download_url": payload.get("download_url"),
        "requirement_specification": payload.get("requirement_specification") or [],
        "highlights": payload.get("highlights") or [],
        "avg_rating": 0,
        "feedback_details": [],
        "sku_details": [],
        "stripe_product_id": payload.get("stripe_product_id"),
        "created_at": timestamp,
        "updated_at": timestamp,
    }
    return document


def new_sku_document(payload: Dict[str, object], sku_code: Optional[str]) -> Dict[str, object]:
    return {
        "_id": ObjectId(),
        "sku_name": payload.get("sku_name"),
        "price": payload.get("price"),
        "validity": payload.get("validity"),
        "lifetime": bool(payload.get("lifetime")),
        "stripe_price_id": payload.get("stripe_price_id"),
        "sku_code": sku_code,
    }


def new_license_document(product_id, sku_id, license_key: str) -> Dict[str, object]:
    timestamp = datetime.utcnow()
    return {
        "product": normalize_object_id(product_id),
        "product_sku": normalize_object_id(sku_id),
        "license_key": license_key,
        "is_sold": False,
        "order_id": None,
        "created_at": timestamp,
        "updated_at": timestamp,
    }


def serialize_document(value):
    """Recursively convert ObjectIds and datetimes; `_id` becomes `id`."""
    if isinstance(value, dict):
        serialized = {}
        for key, item in value.items():
            serialized["id" if key == "_id" else key] = serialize_document(item)
        return serialized
    if isinstance(value, (list, tuple)):
        return [serialize_document(item) for item in value]
    if isinstance(value, ObjectId):
        return str(value)
    if isinstance(value, datetime):
        return (
            value.isoformat()
            if value.tzinfo is not None
            else f"{value.isoformat()}Z"
        )
    return value


def public_user_projection(user_document) -> Dict[str, str]:
    if not user_document:
        return {}
    return {
        "id": str(user_document.get("_id")),
        "name": user_document.get("name", "") or "",
        "email": user_document.get("email", "") or "",
        "type": user_document.get("type", USER_TYPE_CUSTOMER),
    }


def strip_private_user_fields(user_document) -> Dict[str, object]:
    return {
        key: value
        for key, value in (user_document or {}).items()
        if key not in PRIVATE_USER_FIELDS
    }
