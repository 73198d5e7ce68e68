import os
from typing import Dict, NamedTuple, Optional

from flask import Flask, jsonify
from flask_cors import CORS
from flask_jwt_extended import JWTManager
from flask_pymongo import PyMongo
from werkzeug.middleware.proxy_fix import ProxyFix

from .assets import CloudinaryStorage
from .config import DEFAULT_JWT_SECRET_KEY, load_settings
from .errors import register_error_handlers
from .mailer import ResendMailer
from .payments import StripeGateway
from .repositories import OrderRepository, ProductRepository, UserRepository
from .routes import register_routes
from .services import OrdersService, ProductsService, UsersService
from .uploads import ALLOWED_IMAGE_EXTENSIONS


class AppServices(NamedTuple):
    users: UsersService
    products: ProductsService
    orders: OrdersService
    user_repository: UserRepository


def _auth_error(message: str):
    return jsonify({"success": False, "message": message, "result": None}), 401


def _register_jwt_callbacks(jwt: JWTManager) -> None:
    @jwt.unauthorized_loader
    def missing_token(reason: str):
        return _auth_error("Authentication required")

    @jwt.invalid_token_loader
    def invalid_token(reason: str):
        return _auth_error("Invalid authentication token")

    @jwt.expired_token_loader
    def expired_token(jwt_header, jwt_payload):
        return _auth_error("Authentication token expired")


def create_app(
    overrides: Optional[Dict[str, object]] = None,
    database=None,
    payments=None,
    assets=None,
    mailer=None,
) -> Flask:
    """Create and configure the Flask application.

    Collaborators that talk to the outside world (database, Stripe,
    Cloudinary, Resend) can be handed in; anything left out is built from
    configuration.
    """
    app = Flask(__name__)
    app.config.update(load_settings())
    if overrides:
        app.config.update(overrides)
    if app.config["JWT_SECRET_KEY"] == DEFAULT_JWT_SECRET_KEY:
        app.logger.warning(
            "JWT_SECRET_KEY is not set; tokens are signed with the built-in default"
        )

    # Honor proxy headers so generated links keep the public HTTPS origin.
    trusted_proxy_hops = app.config["TRUSTED_PROXY_HOPS"]
    if trusted_proxy_hops:
        app.wsgi_app = ProxyFix(
            app.wsgi_app,
            x_for=trusted_proxy_hops,
            x_proto=trusted_proxy_hops,
            x_host=trusted_proxy_hops,
            x_port=trusted_proxy_hops,
        )

    app.config.setdefault("PRODUCT_UPLOAD_FOLDER", os.path.join(app.root_path, "uploads"))
    app.config.setdefault("PRODUCT_ALLOWED_EXTENSIONS", ALLOWED_IMAGE_EXTENSIONS)
    os.makedirs(app.config["PRODUCT_UPLOAD_FOLDER"], exist_ok=True)

    # --- Initialize extensions ---
    CORS(
        app,
        supports_credentials=True,
        origins=app.config["CORS_ALLOWED_ORIGINS"] or "*",
    )
    _register_jwt_callbacks(JWTManager(app))

    if database is None:
        database = PyMongo(app).db

    user_repository = UserRepository(database)
    product_repository = ProductRepository(database)
    order_repository = OrderRepository(database)
    for repository in (user_repository, product_repository, order_repository):
        repository.ensure_indexes()

    payments = payments or StripeGateway(app.config["STRIPE_SECRET_KEY"])
    assets = assets or CloudinaryStorage(
        cloud_name=app.config["CLOUDINARY_CLOUD_NAME"],
        api_key=app.config["CLOUDINARY_API_KEY"],
        api_secret=app.config["CLOUDINARY_API_SECRET"],
        folder=app.config["CLOUDINARY_FOLDER_PATH"],
        public_id_prefix=app.config["CLOUDINARY_PUBLIC_ID_PREFIX"],
        big_size=app.config["CLOUDINARY_BIG_SIZE"],
    )
    mailer = mailer or ResendMailer(app.config["RESEND_API_KEY"], app.config["MAIL_SENDER"])

    services = AppServices(
        users=UsersService(
            user_repository,
            mailer,
            admin_secret_token=app.config["ADMIN_SECRET_TOKEN"],
            otp_expiration_minutes=app.config["OTP_EXPIRATION_MINUTES"],
            login_link=app.config["LOGIN_LINK"],
        ),
        products=ProductsService(
            product_repository,
            order_repository,
            payments,
            assets,
            currency=app.config["STRIPE_CURRENCY"],
        ),
        orders=OrdersService(
            order_repository,
            product_repository,
            payments,
            mailer,
            webhook_secret=app.config["STRIPE_WEBHOOK_SECRET"],
            success_url=app.config["STRIPE_SUCCESS_URL"],
            cancel_url=app.config["STRIPE_CANCEL_URL"],
            order_success_url=app.config["ORDER_SUCCESS_URL"],
        ),
        user_repository=user_repository,
    )
    app.extensions["keyshop"] = services

    register_error_handlers(app)
    register_routes(app, services)
    app.logger.info("Registered API under %s", app.config["APP_PREFIX"])
    return app
