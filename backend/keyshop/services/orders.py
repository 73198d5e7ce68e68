import logging
import secrets
import time
from datetime import datetime
from typing import Dict, List, Optional

from pymongo.errors import DuplicateKeyError

from ..errors import NotFoundError, ValidationError
from ..mailer import TEMPLATE_ORDER_SUCCESS, OutboundEmail
from ..payments import SignatureVerificationError, construct_event
from ..schemas import (
    ORDER_STATUS_COMPLETED,
    ORDER_STATUS_PENDING,
    PAYMENT_STATUS_PAID,
    USER_TYPE_CUSTOMER,
    normalize_object_id,
)

logger = logging.getLogger(__name__)

CHECKOUT_COMPLETED_EVENT = "checkout.session.completed"
MIN_ADJUSTABLE_QUANTITY = 1
MAX_ADJUSTABLE_QUANTITY = 5


def generate_order_id() -> str:
    return f"{int(time.time() * 1000)}{secrets.randbelow(10000):04d}"


def _as_bool(value) -> bool:
    if isinstance(value, bool):
        return value
    return str(value or "").strip().lower() in {"1", "true", "yes"}


def _as_number(value, default=0):
    try:
        return float(value)
    except (TypeError, ValueError):
        return default


def ordered_item_from_line_item(line_item: Dict) -> Dict[str, object]:
    """Snapshot of one purchased SKU, read from its Stripe price metadata."""
    metadata = ((line_item.get("price") or {}).get("metadata")) or {}
    return {
        "sku_code": metadata.get("sku_code"),
        "product_id": metadata.get("product_id"),
        "product_name": metadata.get("product_name"),
        "product_image": metadata.get("product_image"),
        "price": _as_number(metadata.get("price")),
        "lifetime": _as_bool(metadata.get("lifetime")),
        "quantity": int(line_item.get("quantity") or 0),
        "licenses": [],
    }


class OrdersService:
    def __init__(
        self,
        orders,
        products,
        payments,
        mailer,
        webhook_secret: str,
        success_url: str,
        cancel_url: str,
        order_success_url: str,
    ):
        self.orders = orders
        self.products = products
        self.payments = payments
        self.mailer = mailer
        self.webhook_secret = webhook_secret
        self.success_url = success_url
        self.cancel_url = cancel_url
        self.order_success_url = order_success_url

    def create(self, order_data: Dict[str, object]) -> Dict[str, object]:
        existing = self.orders.find_one(
            {"checkout_session_id": order_data["checkout_session_id"]}
        )
        if existing:
            return existing
        try:
            return self.orders.create(dict(order_data))
        except DuplicateKeyError:
            # A concurrent delivery of the same session inserted first.
            logger.info("Order for session %s already recorded", order_data["checkout_session_id"])
            return self.orders.find_one(
                {"checkout_session_id": order_data["checkout_session_id"]}
            )

    def list(self, status: Optional[str], user: Dict) -> Dict[str, object]:
        query: Dict[str, object] = {}
        if user.get("type", USER_TYPE_CUSTOMER) == USER_TYPE_CUSTOMER:
            query["user_id"] = str(user["_id"])
        if status:
            query["order_status"] = status
        return {
            "success": True,
            "message": "Orders fetched successfully",
            "result": self.orders.find(query),
        }

    def get_one(self, order_id) -> Dict[str, object]:
        order_document = self.orders.find_by_id(order_id)
        if not order_document:
            raise NotFoundError("Order does not exist")
        return {"success": True, "message": "Order fetched successfully", "result": order_document}

    def checkout(self, cart_items: List[Dict], user: Dict) -> Dict[str, object]:
        line_items = []
        for item in cart_items:
            quantity = int(item["quantity"])
            in_stock = self.products.count_licenses(
                {"product_sku": normalize_object_id(item["sku_id"]), "is_sold": False}
            )
            if in_stock < quantity:
                logger.info(
                    "Dropped sku %s from checkout: %s requested, %s in stock",
                    item["sku_id"],
                    quantity,
                    in_stock,
                )
                continue
            line_items.append(
                {
                    "price": item["sku_price_id"],
                    "quantity": quantity,
                    "adjustable_quantity": {
                        "enabled": True,
                        "minimum": MIN_ADJUSTABLE_QUANTITY,
                        "maximum": MAX_ADJUSTABLE_QUANTITY,
                    },
                }
            )

        if not line_items:
            raise ValidationError("These products are not available right now")

        session = self.payments.create_checkout_session(
            {
                "line_items": line_items,
                "metadata": {"user_id": str(user["_id"])},
                "mode": "payment",
                "billing_address_collection": "required",
                "phone_number_collection": {"enabled": True},
                "customer_email": user.get("email"),
                "success_url": self.success_url,
                "cancel_url": self.cancel_url,
            }
        )
        return {
            "success": True,
            "message": "Payment checkout session successfully created",
            "result": session.get("url"),
        }

    def build_order_object(self, session: Dict) -> Dict[str, object]:
        line_items = self.payments.list_line_items(session["id"])
        customer_details = session.get("customer_details") or {}
        payment_method_types = session.get("payment_method_types") or []
        now = datetime.utcnow()
        return {
            "order_id": generate_order_id(),
            "user_id": str((session.get("metadata") or {}).get("user_id") or ""),
            "user_name": customer_details.get("name"),
            "customer_email": session.get("customer_email") or customer_details.get("email"),
            "customer_phone_number": customer_details.get("phone"),
            "customer_address": customer_details.get("address"),
            "payment_info": {
                "payment_method": payment_method_types[0] if payment_method_types else None,
                "payment_intent_id": session.get("payment_intent"),
                "payment_date": now,
                "payment_amount": (session.get("amount_total") or 0) / 100,
                "payment_status": session.get("payment_status"),
            },
            "ordered_items": [ordered_item_from_line_item(entry) for entry in line_items],
            "order_date": now,
            "checkout_session_id": session["id"],
            "order_status": ORDER_STATUS_PENDING,
            "is_order_delivered": False,
        }

    def allocate_licenses(self, order_id: str, item: Dict) -> List[str]:
        """Sell up to `quantity` unsold licenses of the item's SKU to an order."""
        product_document = self.products.find_by_id(item.get("product_id"))
        sku = None
        if product_document:
            sku = next(
                (
                    entry
                    for entry in product_document.get("sku_details") or []
                    if entry.get("sku_code") == item.get("sku_code")
                ),
                None,
            )
        if not sku:
            logger.error(
                "Cannot allocate licenses for order %s: sku %s of product %s not found",
                order_id,
                item.get("sku_code"),
                item.get("product_id"),
            )
            return []

        quantity = int(item.get("quantity") or 0)
        candidates = self.products.find_licenses(
            {"product_sku": sku["_id"], "is_sold": False}, limit=quantity
        )
        license_keys = [
            license_document["license_key"]
            for license_document in candidates
            if self.products.mark_license_sold(license_document["_id"], order_id)
        ]
        if len(license_keys) < quantity:
            logger.warning(
                "Order %s received %s of %s licenses for sku %s",
                order_id,
                len(license_keys),
                quantity,
                sku["_id"],
            )
        return license_keys

    def _send_order_email(self, order_document: Dict):
        self.mailer.send(
            OutboundEmail(
                to=order_document.get("customer_email"),
                template=TEMPLATE_ORDER_SUCCESS,
                subject="Order Success - Your Orders",
                context={
                    "order_id": order_document.get("order_id"),
                    "order_link": f"{self.order_success_url}{order_document['_id']}",
                },
            )
        )

    def fulfill(self, session: Dict) -> Dict[str, object]:
        order_data = self.build_order_object(session)
        order_document = self.create(order_data)

        if session.get("payment_status") != PAYMENT_STATUS_PAID:
            logger.info("Checkout session %s is not paid yet", session["id"])
            return order_document
        if order_document.get("order_status") == ORDER_STATUS_COMPLETED:
            logger.info("Order %s is already completed", order_document.get("order_id"))
            return order_document

        ordered_items = []
        for item in order_document.get("ordered_items") or []:
            item = dict(item)
            item["licenses"] = self.allocate_licenses(order_document["order_id"], item)
            ordered_items.append(item)

        completed = self.orders.find_one_and_update(
            {"checkout_session_id": session["id"]},
            {
                "ordered_items": ordered_items,
                "payment_info": order_data["payment_info"],
                "order_status": ORDER_STATUS_COMPLETED,
                "is_order_delivered": True,
            },
        )
        logger.info("Order %s completed", completed.get("order_id"))
        self._send_order_email(completed)
        return completed

    def webhook(self, raw_body: bytes, signature: Optional[str]) -> Dict[str, object]:
        try:
            event = construct_event(raw_body, signature, self.webhook_secret)
        except SignatureVerificationError as exc:
            logger.warning("Rejected webhook: %s", exc)
            raise ValidationError("Webhook signature invalid")

        event_type = event.get("type")
        if event_type != CHECKOUT_COMPLETED_EVENT:
            logger.info("Unhandled event type %s", event_type)
            return {"success": True, "message": "Event ignored", "result": None}

        session = (event.get("data") or {}).get("object") or {}
        order_document = self.fulfill(session)
        return {
            "success": True,
            "message": "Webhook processed",
            "result": {"order_id": order_document.get("order_id")},
        }
