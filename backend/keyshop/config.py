import os
from datetime import timedelta
from typing import Dict

from dotenv import load_dotenv

load_dotenv()

DEFAULT_JWT_SECRET_KEY = "change-me-in-production"


def _env(name: str, default: str = "") -> str:
    return (os.getenv(name) or default).strip()


def _env_int(name: str, default: int) -> int:
    raw_value = _env(name)
    try:
        return int(raw_value) if raw_value else default
    except (TypeError, ValueError):
        return default


def load_settings() -> Dict[str, object]:
    """Read the environment into Flask config keys."""
    max_upload_mb = _env_int("MAX_UPLOAD_SIZE_MB", 16)

    cors_origins = [
        origin.strip()
        for origin in _env("CORS_ALLOWED_ORIGINS").split(",")
        if origin.strip()
    ]

    return {
        "APP_PREFIX": _env("APP_PREFIX", "/api/v1"),
        "MONGO_URI": _env("MONGO_URI", "mongodb://localhost:27017/e-commerce"),
        "MAX_CONTENT_LENGTH": max_upload_mb * 1024 * 1024,
        "CORS_ALLOWED_ORIGINS": cors_origins,
        "TRUSTED_PROXY_HOPS": max(0, _env_int("TRUSTED_PROXY_HOPS", 1)),
        # --- Auth ---
        "JWT_SECRET_KEY": _env("JWT_SECRET_KEY", DEFAULT_JWT_SECRET_KEY),
        "JWT_ACCESS_TOKEN_EXPIRES": timedelta(days=30),
        "JWT_TOKEN_LOCATION": ["headers", "cookies"],
        "JWT_ACCESS_COOKIE_NAME": "auth_token",
        "JWT_COOKIE_CSRF_PROTECT": _env("JWT_COOKIE_CSRF_PROTECT", "false").lower()
        in {"1", "true", "yes", "on"},
        "JWT_COOKIE_SECURE": _env("JWT_COOKIE_SECURE", "false").lower()
        in {"1", "true", "yes", "on"},
        "ADMIN_SECRET_TOKEN": _env("ADMIN_SECRET_TOKEN"),
        "OTP_EXPIRATION_MINUTES": _env_int("OTP_EXPIRATION_MINUTES", 10),
        "LOGIN_LINK": _env("LOGIN_LINK", "http://localhost:3000/login"),
        # --- Stripe ---
        "STRIPE_SECRET_KEY": _env("STRIPE_SECRET_KEY"),
        "STRIPE_WEBHOOK_SECRET": _env("STRIPE_WEBHOOK_SECRET"),
        "STRIPE_CURRENCY": _env("STRIPE_CURRENCY", "inr").lower(),
        "STRIPE_SUCCESS_URL": _env(
            "STRIPE_SUCCESS_URL", "http://localhost:3000/order-success"
        ),
        "STRIPE_CANCEL_URL": _env(
            "STRIPE_CANCEL_URL", "http://localhost:3000/order-cancel"
        ),
        # --- Cloudinary ---
        "CLOUDINARY_CLOUD_NAME": _env("CLOUDINARY_CLOUD_NAME"),
        "CLOUDINARY_API_KEY": _env("CLOUDINARY_API_KEY"),
        "CLOUDINARY_API_SECRET": _env("CLOUDINARY_API_SECRET"),
        "CLOUDINARY_FOLDER_PATH": _env("CLOUDINARY_FOLDER_PATH", "keyshop/products"),
        "CLOUDINARY_PUBLIC_ID_PREFIX": _env(
            "CLOUDINARY_PUBLIC_ID_PREFIX", "keyshop_product_"
        ),
        "CLOUDINARY_BIG_SIZE": _env("CLOUDINARY_BIG_SIZE", "400X420"),
        # --- Email ---
        "RESEND_API_KEY": _env("RESEND_API_KEY"),
        "MAIL_SENDER": _env("MAIL_SENDER", "Key Shop <orders@keyshop.store>"),
        "ORDER_SUCCESS_URL": _env(
            "ORDER_SUCCESS_URL", "http://localhost:3000/my-account/orders/"
        ),
    }
