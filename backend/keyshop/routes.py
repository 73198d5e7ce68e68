"""
HTTP surface of the shop.

Every endpoint is one `Route` entry: the URL rule, its methods, the handler,
an optional validator that turns the request into a payload, and an optional
role predicate. A route with no predicate is public; a route with one loads
the signed-in user before calling the predicate.
"""
import re
from typing import Callable, Dict, List, NamedTuple, Optional, Tuple

from flask import Flask, Response, current_app, jsonify, request
from flask_jwt_extended import (
    get_jwt_identity,
    set_access_cookies,
    unset_jwt_cookies,
    verify_jwt_in_request,
)

from .errors import ForbiddenError, UnauthorizedError, ValidationError
from .schemas import (
    BASE_TYPES,
    CATEGORY_TYPES,
    ORDER_STATUSES,
    PLATFORM_TYPES,
    USER_TYPE_ADMIN,
    USER_TYPE_CUSTOMER,
    USER_TYPES,
    serialize_document,
)
from .uploads import save_uploaded_image

EMAIL_PATTERN = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
MIN_PASSWORD_LENGTH = 6
MIN_RATING = 1
MAX_RATING = 5

PRODUCT_TEXT_FIELDS = ("product_name", "description", "product_url", "download_url")
PRODUCT_UPDATABLE_FIELDS = PRODUCT_TEXT_FIELDS + (
    "category",
    "platform_type",
    "base_type",
    "requirement_specification",
    "highlights",
    "stripe_product_id",
    "image",
)


class RequestContext(NamedTuple):
    user: Optional[Dict]
    payload: Dict
    params: Dict[str, str]


class Route(NamedTuple):
    rule: str
    methods: Tuple[str, ...]
    endpoint: str
    handler: Callable[[RequestContext], object]
    validator: Optional[Callable[[], Dict]] = None
    allows: Optional[Callable[[Dict], bool]] = None
    status: int = 200


# --- Role predicates ---


def authenticated(user: Dict) -> bool:
    return bool(user)


def admin_only(user: Dict) -> bool:
    return bool(user) and user.get("type") == USER_TYPE_ADMIN


def customer_only(user: Dict) -> bool:
    return bool(user) and user.get("type") == USER_TYPE_CUSTOMER


# --- Validators ---


def normalize_email(value: Optional[str]) -> str:
    return str(value or "").strip().lower()


def _json_body() -> Dict:
    body = request.get_json(silent=True)
    if body is None:
        return {}
    if not isinstance(body, dict):
        raise ValidationError("Request body must be a JSON object")
    return body


def _require_text(body: Dict, *fields: str) -> Dict[str, str]:
    values = {}
    for field in fields:
        value = str(body.get(field) or "").strip()
        if not value:
            raise ValidationError(f"{field} is required")
        values[field] = value
    return values


def _check_choice(body: Dict, field: str, choices) -> None:
    if field in body and body[field] not in choices:
        raise ValidationError(f"{field} must be one of: {', '.join(sorted(choices))}")


def _check_list(body: Dict, field: str) -> None:
    if field in body and not isinstance(body[field], list):
        raise ValidationError(f"{field} must be a list")


def _positive_number(value, field: str) -> float:
    if isinstance(value, bool):
        raise ValidationError(f"{field} must be a number")
    try:
        number = float(value)
    except (TypeError, ValueError):
        raise ValidationError(f"{field} must be a number")
    if number <= 0:
        raise ValidationError(f"{field} must be greater than 0")
    return number


def validate_register() -> Dict:
    body = _json_body()
    values = _require_text(body, "name", "email", "password")
    email = normalize_email(values["email"])
    if not EMAIL_PATTERN.match(email):
        raise ValidationError("Please provide a valid email address")
    if len(values["password"]) < MIN_PASSWORD_LENGTH:
        raise ValidationError(
            f"Password must be at least {MIN_PASSWORD_LENGTH} characters long"
        )
    user_type = str(body.get("type") or USER_TYPE_CUSTOMER).strip().lower()
    if user_type not in USER_TYPES:
        raise ValidationError("type must be admin or customer")
    return {
        "name": values["name"],
        "email": email,
        "password": values["password"],
        "type": user_type,
        "secret_token": body.get("secret_token"),
    }


def validate_login() -> Dict:
    body = _json_body()
    values = _require_text(body, "email", "password")
    return {"email": normalize_email(values["email"]), "password": values["password"]}


def validate_profile_update() -> Dict:
    body = _json_body()
    new_password = str(body.get("new_password") or "")
    if new_password and len(new_password) < MIN_PASSWORD_LENGTH:
        raise ValidationError(
            f"Password must be at least {MIN_PASSWORD_LENGTH} characters long"
        )
    return {
        "name": str(body.get("name") or "").strip() or None,
        "old_password": body.get("old_password"),
        "new_password": new_password or None,
    }


def validate_product_create() -> Dict:
    body = _json_body()
    payload = dict(_require_text(body, *PRODUCT_TEXT_FIELDS))
    for field, choices in (
        ("category", CATEGORY_TYPES),
        ("platform_type", PLATFORM_TYPES),
        ("base_type", BASE_TYPES),
    ):
        if field not in body:
            raise ValidationError(f"{field} is required")
        _check_choice(body, field, choices)
        payload[field] = body[field]
    for field in ("requirement_specification", "highlights"):
        _check_list(body, field)
        if field in body:
            payload[field] = body[field]
    _check_list(body, "sku_details")
    if body.get("sku_details"):
        payload["sku_details"] = [_clean_sku(entry) for entry in body["sku_details"]]
    for field in ("stripe_product_id", "image"):
        if body.get(field):
            payload[field] = body[field]
    return payload


def validate_product_update() -> Dict:
    body = _json_body()
    payload = {field: body[field] for field in PRODUCT_UPDATABLE_FIELDS if field in body}
    if not payload:
        raise ValidationError("Nothing to update")
    _check_choice(payload, "category", CATEGORY_TYPES)
    _check_choice(payload, "platform_type", PLATFORM_TYPES)
    _check_choice(payload, "base_type", BASE_TYPES)
    _check_list(payload, "requirement_specification")
    _check_list(payload, "highlights")
    for field in PRODUCT_TEXT_FIELDS:
        if field in payload and not str(payload[field] or "").strip():
            raise ValidationError(f"{field} cannot be empty")
    return payload


def _clean_sku(entry: Dict, partial: bool = False) -> Dict:
    if not isinstance(entry, dict):
        raise ValidationError("Each sku must be an object")
    sku: Dict[str, object] = {}
    if not partial or "sku_name" in entry:
        sku["sku_name"] = _require_text(entry, "sku_name")["sku_name"]
    if not partial or "price" in entry:
        sku["price"] = _positive_number(entry.get("price"), "price")
    if "validity" in entry:
        try:
            sku["validity"] = int(entry["validity"])
        except (TypeError, ValueError):
            raise ValidationError("validity must be a number of days")
    if "lifetime" in entry:
        sku["lifetime"] = bool(entry["lifetime"])
    if entry.get("stripe_price_id"):
        sku["stripe_price_id"] = str(entry["stripe_price_id"])
    if not partial and not sku.get("lifetime") and "validity" not in sku:
        raise ValidationError("validity is required unless the sku is lifetime")
    return sku


def validate_sku_create() -> Dict:
    body = _json_body()
    entries = body.get("sku_details")
    if not isinstance(entries, list) or not entries:
        raise ValidationError("sku_details must be a non-empty list")
    return {"sku_details": [_clean_sku(entry) for entry in entries]}


def validate_sku_update() -> Dict:
    sku = _clean_sku(_json_body(), partial=True)
    if not sku:
        raise ValidationError("Nothing to update")
    return sku


def validate_license_key() -> Dict:
    return _require_text(_json_body(), "license_key")


def validate_review() -> Dict:
    body = _json_body()
    rating = body.get("rating")
    if isinstance(rating, bool) or not isinstance(rating, (int, float)):
        raise ValidationError("rating must be a number")
    if not MIN_RATING <= rating <= MAX_RATING:
        raise ValidationError(f"rating must be between {MIN_RATING} and {MAX_RATING}")
    return {"rating": rating, "review": _require_text(body, "review")["review"]}


def validate_checkout() -> Dict:
    body = _json_body()
    entries = body.get("checkout_details")
    if not isinstance(entries, list) or not entries:
        raise ValidationError("checkout_details must be a non-empty list")
    cart_items: List[Dict] = []
    for entry in entries:
        if not isinstance(entry, dict):
            raise ValidationError("Each checkout item must be an object")
        values = _require_text(entry, "sku_id", "sku_price_id")
        quantity = entry.get("quantity")
        if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity < 1:
            raise ValidationError("quantity must be a positive whole number")
        cart_items.append({**values, "quantity": quantity})
    return {"cart_items": cart_items}


def validate_image_upload() -> Dict:
    saved_path, error_message = save_uploaded_image(
        request.files.get("product_image"),
        current_app.config["PRODUCT_UPLOAD_FOLDER"],
        current_app.config["PRODUCT_ALLOWED_EXTENSIONS"],
    )
    if error_message:
        raise ValidationError(error_message)
    return {"file_path": saved_path}


def validate_webhook() -> Dict:
    return {
        "raw_body": request.get_data(),
        "signature": request.headers.get("Stripe-Signature"),
    }


# --- Route table ---


def build_route_table(services) -> List[Route]:
    users = services.users
    products = services.products
    orders = services.orders

    def login(ctx: RequestContext):
        outcome = users.login(ctx.payload["email"], ctx.payload["password"])
        response = jsonify(serialize_document(outcome))
        set_access_cookies(response, outcome["result"]["token"])
        return response

    def logout(ctx: RequestContext):
        response = jsonify({"success": True, "message": "Logout successfully", "result": None})
        unset_jwt_cookies(response)
        return response

    def list_users(ctx: RequestContext):
        requested_type = request.args.get("type")
        if requested_type and requested_type not in USER_TYPES:
            raise ValidationError("type must be admin or customer")
        return users.list_users(requested_type)

    def list_orders(ctx: RequestContext):
        status = request.args.get("status")
        if status and status not in ORDER_STATUSES:
            raise ValidationError("status must be pending or completed")
        return orders.list(status, ctx.user)

    return [
        # --- Users ---
        Route("/users", ("POST",), "register_user",
              lambda ctx: users.register(ctx.payload), validate_register, status=201),
        Route("/users/login", ("POST",), "login_user", login, validate_login),
        Route("/users/logout", ("GET",), "logout_user", logout),
        Route("/users/verify-email/<otp>/<email>", ("GET",), "verify_user_email",
              lambda ctx: users.verify_email(ctx.params["otp"], normalize_email(ctx.params["email"]))),
        Route("/users/send-otp-email/<email>", ("GET",), "send_otp_email",
              lambda ctx: users.resend_otp(normalize_email(ctx.params["email"]))),
        Route("/users/forgot-password/<email>", ("GET",), "forgot_password",
              lambda ctx: users.forgot_password(normalize_email(ctx.params["email"]))),
        Route("/users", ("GET",), "list_users", list_users, allows=admin_only),
        Route("/users/update-name-password", ("PATCH",), "update_profile",
              lambda ctx: users.update_profile(ctx.user["_id"], **ctx.payload),
              validate_profile_update, authenticated),
        # --- Products ---
        Route("/products", ("POST",), "create_product",
              lambda ctx: products.create(ctx.payload), validate_product_create, admin_only, 201),
        Route("/products", ("GET",), "list_products",
              lambda ctx: products.list(request.args, request.path)),
        Route("/products/<product_id>", ("GET",), "get_product",
              lambda ctx: products.get_one(ctx.params["product_id"])),
        Route("/products/<product_id>", ("PATCH",), "update_product",
              lambda ctx: products.update(ctx.params["product_id"], ctx.payload),
              validate_product_update, admin_only),
        Route("/products/<product_id>", ("DELETE",), "delete_product",
              lambda ctx: products.delete(ctx.params["product_id"]), allows=admin_only),
        Route("/products/<product_id>/image", ("POST",), "upload_product_image",
              lambda ctx: products.upload_image(ctx.params["product_id"], ctx.payload["file_path"]),
              validate_image_upload, admin_only),
        Route("/products/<product_id>/skus", ("POST",), "add_product_skus",
              lambda ctx: products.add_skus(ctx.params["product_id"], ctx.payload["sku_details"]),
              validate_sku_create, admin_only, 201),
        Route("/products/<product_id>/skus/<sku_id>", ("PUT",), "update_product_sku",
              lambda ctx: products.update_sku(ctx.params["product_id"], ctx.params["sku_id"], ctx.payload),
              validate_sku_update, admin_only),
        Route("/products/<product_id>/skus/<sku_id>", ("DELETE",), "delete_product_sku",
              lambda ctx: products.delete_sku(ctx.params["product_id"], ctx.params["sku_id"]),
              allows=admin_only),
        Route("/products/<product_id>/skus/<sku_id>/licenses", ("POST",), "add_license",
              lambda ctx: products.add_license(
                  ctx.params["product_id"], ctx.params["sku_id"], ctx.payload["license_key"]),
              validate_license_key, admin_only, 201),
        Route("/products/<product_id>/skus/<sku_id>/licenses", ("GET",), "list_licenses",
              lambda ctx: products.list_licenses(ctx.params["product_id"], ctx.params["sku_id"]),
              allows=admin_only),
        Route("/products/<product_id>/skus/<sku_id>/licenses/<license_id>", ("PUT",), "update_license",
              lambda ctx: products.update_license(
                  ctx.params["product_id"], ctx.params["sku_id"],
                  ctx.params["license_id"], ctx.payload["license_key"]),
              validate_license_key, admin_only),
        Route("/products/licenses/<license_id>", ("DELETE",), "remove_license",
              lambda ctx: products.remove_license(ctx.params["license_id"]), allows=admin_only),
        Route("/products/<product_id>/reviews", ("POST",), "add_review",
              lambda ctx: products.add_review(
                  ctx.params["product_id"], ctx.payload["rating"], ctx.payload["review"], ctx.user),
              validate_review, customer_only, 201),
        Route("/products/<product_id>/reviews/<review_id>", ("DELETE",), "remove_review",
              lambda ctx: products.remove_review(
                  ctx.params["product_id"], ctx.params["review_id"], ctx.user),
              allows=authenticated),
        # --- Orders ---
        Route("/orders", ("GET",), "list_orders", list_orders, allows=authenticated),
        Route("/orders/checkout", ("POST",), "checkout",
              lambda ctx: orders.checkout(ctx.payload["cart_items"], ctx.user),
              validate_checkout, authenticated),
        Route("/orders/webhook", ("POST",), "stripe_webhook",
              lambda ctx: orders.webhook(ctx.payload["raw_body"], ctx.payload["signature"]),
              validate_webhook),
        Route("/orders/<order_id>", ("GET",), "get_order",
              lambda ctx: orders.get_one(ctx.params["order_id"])),
    ]


def load_current_user(user_repository) -> Dict:
    verify_jwt_in_request()
    user_document = user_repository.find_by_id(get_jwt_identity())
    if not user_document:
        raise UnauthorizedError("User no longer exists")
    return user_document


def _make_view(route: Route, user_repository):
    def view(**params):
        current_user = None
        if route.allows is not None:
            current_user = load_current_user(user_repository)
            if not route.allows(current_user):
                raise ForbiddenError("You do not have permission to perform this action")

        payload = route.validator() if route.validator else {}
        outcome = route.handler(RequestContext(current_user, payload, params))
        if isinstance(outcome, Response):
            return outcome
        return jsonify(serialize_document(outcome)), route.status

    view.__name__ = route.endpoint
    return view


def register_routes(app: Flask, services) -> None:
    prefix = app.config["APP_PREFIX"].rstrip("/")
    for route in build_route_table(services):
        app.add_url_rule(
            f"{prefix}{route.rule}",
            endpoint=route.endpoint,
            view_func=_make_view(route, services.user_repository),
            methods=list(route.methods),
        )
