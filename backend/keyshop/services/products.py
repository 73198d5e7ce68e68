import logging
import secrets
import string
import time
from datetime import datetime
from typing import Dict, List, Mapping, Optional, Tuple

from bson import ObjectId

from ..errors import ConflictError, ForbiddenError, NotFoundError, ValidationError
from ..querying import build_pagination_links, parse_product_query
from ..schemas import (
    ORDER_STATUS_COMPLETED,
    USER_TYPE_ADMIN,
    new_license_document,
    new_product_document,
    new_sku_document,
    normalize_object_id,
)
from ..uploads import remove_local_file

logger = logging.getLogger(__name__)


def to_minor_units(amount) -> int:
    return int(round(float(amount) * 100))


def average_rating(ratings: List[float]) -> float:
    if not ratings:
        return 0
    return round(sum(float(rating) for rating in ratings) / len(ratings), 2)


def generate_sku_code() -> str:
    alphabet = string.ascii_lowercase + string.digits
    prefix = "".join(secrets.choice(alphabet) for _ in range(3))
    return f"{prefix}{int(time.time() * 1000)}"


def _truthy_flag(value) -> bool:
    return str(value or "").strip().lower() in {"1", "true", "yes", "on"}


class ProductsService:
    def __init__(self, products, orders, payments, assets, currency: str = "inr"):
        self.products = products
        self.orders = orders
        self.payments = payments
        self.assets = assets
        self.currency = currency

    # --- Lookups ---

    def _get_product(self, product_id):
        product_document = self.products.find_by_id(product_id)
        if not product_document:
            raise NotFoundError("Product does not exist")
        return product_document

    def _get_product_and_sku(self, product_id, sku_id) -> Tuple[Dict, Dict]:
        product_document = self._get_product(product_id)
        for sku in product_document.get("sku_details") or []:
            if str(sku.get("_id")) == str(sku_id):
                return product_document, sku
        raise NotFoundError("Sku does not exist")

    def _price_metadata(self, product_document, sku_code: str, lifetime, price) -> Dict[str, object]:
        return {
            "sku_code": sku_code,
            "lifetime": str(bool(lifetime)).lower(),
            "product_id": str(product_document["_id"]),
            "price": price,
            "product_name": product_document.get("product_name", ""),
            "product_image": product_document.get("image", ""),
        }

    # --- Catalog ---

    def create(self, payload: Dict[str, object]) -> Dict[str, object]:
        payload = dict(payload)
        skus = payload.pop("sku_details", None) or []
        if not payload.get("stripe_product_id"):
            stripe_product = self.payments.create_product(
                name=payload["product_name"], description=payload["description"]
            )
            payload["stripe_product_id"] = stripe_product["id"]

        product_document = self.products.create(new_product_document(payload))
        if skus:
            product_document = self.products.push_skus(
                product_document["_id"], self._build_skus(product_document, skus)
            )
        logger.info("Created product %s", product_document["_id"])
        return {
            "success": True,
            "message": "Product created successfully",
            "result": product_document,
        }

    def list(self, args: Mapping[str, str], base_path: str = "/") -> Dict[str, object]:
        if _truthy_flag(args.get("homepage")):
            grouped = self.products.find_grouped_for_homepage()
            found_any = any(
                grouped.get(key) for key in ("latest_products", "top_rated_products")
            )
            return {
                "success": True,
                "message": "Products fetched successfully" if found_any else "No products found",
                "result": grouped,
            }

        criteria, options = parse_product_query(args)
        total, product_documents = self.products.find(criteria, options)
        skip, limit = options["skip"], options["limit"]
        return {
            "success": True,
            "message": "Products fetched successfully" if product_documents else "No products found",
            "result": {
                "metadata": {
                    "skip": skip,
                    "limit": limit,
                    "total": total,
                    "pages": -(-total // limit) if limit else 1,
                    "links": build_pagination_links(base_path, args, skip, limit, total),
                },
                "products": product_documents,
            },
        }

    def get_one(self, product_id) -> Dict[str, object]:
        product_document = self._get_product(product_id)
        related_products = self.products.find_related(
            product_document.get("category"), product_document["_id"]
        )
        return {
            "success": True,
            "message": "Product fetched successfully",
            "result": {"product": product_document, "related_products": related_products},
        }

    def update(self, product_id, payload: Dict[str, object]) -> Dict[str, object]:
        existing = self._get_product(product_id)
        updated = self.products.update_fields(existing["_id"], payload)

        if not payload.get("stripe_product_id") and existing.get("stripe_product_id"):
            remote_fields = {
                "name": payload.get("product_name"),
                "description": payload.get("description"),
            }
            remote_fields = {key: value for key, value in remote_fields.items() if value}
            if remote_fields:
                self.payments.update_product(existing["stripe_product_id"], **remote_fields)

        return {"success": True, "message": "Product updated successfully", "result": updated}

    def delete(self, product_id) -> Dict[str, object]:
        existing = self._get_product(product_id)
        self.products.delete(existing["_id"])
        if existing.get("stripe_product_id"):
            self.payments.delete_product(existing["stripe_product_id"])
        logger.info("Deleted product %s", existing["_id"])
        return {"success": True, "message": "Product deleted successfully", "result": None}

    def upload_image(self, product_id, file_path: str) -> Dict[str, object]:
        try:
            product_document = self._get_product(product_id)
            previous_public_id = (product_document.get("image_details") or {}).get("public_id")
            if previous_public_id:
                self.assets.destroy(previous_public_id)
            upload_result = self.assets.upload(file_path)
        finally:
            remove_local_file(file_path)

        image_url = upload_result.get("secure_url")
        self.products.update_fields(
            product_document["_id"], {"image_details": upload_result, "image": image_url}
        )
        if product_document.get("stripe_product_id"):
            self.payments.update_product(
                product_document["stripe_product_id"], images=[image_url]
            )
        return {"success": True, "message": "Image uploaded successfully", "result": image_url}

    # --- SKUs ---

    def _build_skus(self, product_document, skus: List[Dict[str, object]]) -> List[Dict[str, object]]:
        """One shared sku code per batch; a Stripe price for every sku lacking one."""
        sku_code = generate_sku_code()
        sku_documents = []
        for sku in skus:
            sku = dict(sku)
            if not sku.get("stripe_price_id"):
                stripe_price = self.payments.create_price(
                    unit_amount=to_minor_units(sku["price"]),
                    currency=self.currency,
                    product_id=product_document.get("stripe_product_id"),
                    metadata=self._price_metadata(
                        product_document, sku_code, sku.get("lifetime"), sku["price"]
                    ),
                )
                sku["stripe_price_id"] = stripe_price["id"]
            sku_documents.append(new_sku_document(sku, sku_code))
        return sku_documents

    def add_skus(self, product_id, skus: List[Dict[str, object]]) -> Dict[str, object]:
        product_document = self._get_product(product_id)
        updated = self.products.push_skus(
            product_document["_id"], self._build_skus(product_document, skus)
        )
        return {"success": True, "message": "Product sku updated successfully", "result": updated}

    def update_sku(self, product_id, sku_id, data: Dict[str, object]) -> Dict[str, object]:
        product_document, sku = self._get_product_and_sku(product_id, sku_id)
        data = dict(data)

        if "price" in data and data["price"] != sku.get("price"):
            # Stripe prices are immutable, so a price change mints a new one.
            stripe_price = self.payments.create_price(
                unit_amount=to_minor_units(data["price"]),
                currency=self.currency,
                product_id=product_document.get("stripe_product_id"),
                metadata=self._price_metadata(
                    product_document,
                    sku.get("sku_code"),
                    data.get("lifetime", sku.get("lifetime")),
                    data["price"],
                ),
            )
            data["stripe_price_id"] = stripe_price["id"]

        updated = self.products.update_sku(product_document["_id"], sku["_id"], data)
        return {"success": True, "message": "Product sku updated successfully", "result": updated}

    def delete_sku(self, product_id, sku_id) -> Dict[str, object]:
        product_document, sku = self._get_product_and_sku(product_id, sku_id)
        if sku.get("stripe_price_id"):
            self.payments.deactivate_price(sku["stripe_price_id"])

        self.products.delete_sku(product_document["_id"], sku["_id"])
        removed_count = self.products.delete_licenses({"product_sku": sku["_id"]})
        logger.info(
            "Deleted sku %s of product %s with %s licenses",
            sku["_id"],
            product_document["_id"],
            removed_count,
        )
        return {
            "success": True,
            "message": "Product sku details deleted successfully",
            "result": {"id": str(product_document["_id"]), "sku_id": str(sku["_id"])},
        }

    # --- Licenses ---

    def add_license(self, product_id, sku_id, license_key: str) -> Dict[str, object]:
        product_document, sku = self._get_product_and_sku(product_id, sku_id)
        license_document = self.products.create_license(
            new_license_document(product_document["_id"], sku["_id"], license_key)
        )
        return {"success": True, "message": "License key added successfully", "result": license_document}

    def remove_license(self, license_id) -> Dict[str, object]:
        removed = self.products.remove_license(license_id)
        if not removed:
            raise NotFoundError("License does not exist")
        return {"success": True, "message": "License key removed successfully", "result": removed}

    def list_licenses(self, product_id, sku_id) -> Dict[str, object]:
        product_document, sku = self._get_product_and_sku(product_id, sku_id)
        licenses = self.products.find_licenses(
            {"product": product_document["_id"], "product_sku": sku["_id"]}
        )
        return {"success": True, "message": "Licenses fetched successfully", "result": licenses}

    def update_license(self, product_id, sku_id, license_id, license_key: str) -> Dict[str, object]:
        _, sku = self._get_product_and_sku(product_id, sku_id)
        updated = self.products.update_license(license_id, sku["_id"], {"license_key": license_key})
        if not updated:
            raise NotFoundError("License does not exist")
        return {"success": True, "message": "License key updated", "result": updated}

    # --- Reviews ---

    def add_review(self, product_id, rating: float, review: str, user) -> Dict[str, object]:
        product_document = self._get_product(product_id)
        customer_id = str(user["_id"])
        feedback_details = product_document.get("feedback_details") or []

        if any(str(entry.get("customer_id")) == customer_id for entry in feedback_details):
            raise ConflictError("You have already reviewed this product")

        purchase = self.orders.find_one(
            {
                "user_id": customer_id,
                "ordered_items.product_id": str(product_document["_id"]),
                "order_status": ORDER_STATUS_COMPLETED,
            }
        )
        if not purchase:
            raise ValidationError("You have not purchased this product")

        ratings = [entry.get("rating", 0) for entry in feedback_details] + [rating]
        feedback = {
            "_id": ObjectId(),
            "customer_id": customer_id,
            "customer_name": user.get("name", ""),
            "rating": rating,
            "feedback_message": review,
            "created_at": datetime.utcnow(),
        }
        updated = self.products.push_feedback(
            product_document["_id"], feedback, average_rating(ratings)
        )
        return {"success": True, "message": "Product review added successfully", "result": updated}

    def remove_review(self, product_id, review_id, user: Optional[Dict] = None) -> Dict[str, object]:
        product_document = self._get_product(product_id)
        feedback_details = product_document.get("feedback_details") or []

        review = next(
            (entry for entry in feedback_details if str(entry.get("_id")) == str(review_id)),
            None,
        )
        if not review:
            raise NotFoundError("Review does not exist")
        if (
            user
            and user.get("type") != USER_TYPE_ADMIN
            and str(review.get("customer_id")) != str(user["_id"])
        ):
            raise ForbiddenError("You can only remove your own review")

        remaining = [
            entry.get("rating", 0)
            for entry in feedback_details
            if str(entry.get("_id")) != str(review_id)
        ]
        updated = self.products.pull_feedback(
            product_document["_id"], normalize_object_id(review_id), average_rating(remaining)
        )
        return {"success": True, "message": "Product review removed successfully", "result": updated}
