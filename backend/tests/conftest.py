import itertools
from datetime import datetime
from unittest import mock

import mongomock
import pytest
from flask_jwt_extended import create_access_token

from keyshop import create_app
from keyshop.repositories import OrderRepository, ProductRepository, UserRepository
from keyshop.schemas import (
    ORDER_STATUS_COMPLETED,
    new_license_document,
    new_product_document,
    new_sku_document,
    new_user_document,
)
from keyshop.security import hash_password

ADMIN_SECRET = "admin-secret-token"
WEBHOOK_SECRET = "whsec_test_secret"
JWT_SECRET = "test-jwt-secret-key-that-is-long-enough-for-hs256"


@pytest.fixture
def db():
    return mongomock.MongoClient().keyshop_test


@pytest.fixture
def user_repository(db):
    repository = UserRepository(db)
    repository.ensure_indexes()
    return repository


@pytest.fixture
def product_repository(db):
    repository = ProductRepository(db)
    repository.ensure_indexes()
    return repository


@pytest.fixture
def order_repository(db):
    repository = OrderRepository(db)
    repository.ensure_indexes()
    return repository


@pytest.fixture
def payments():
    gateway = mock.MagicMock()
    price_ids = itertools.count(1)
    gateway.create_product.return_value = {"id": "prod_test"}
    gateway.create_price.side_effect = lambda **kwargs: {"id": f"price_{next(price_ids)}"}
    gateway.create_checkout_session.return_value = {
        "id": "cs_test_1",
        "url": "https://checkout.stripe.test/cs_test_1",
    }
    gateway.list_line_items.return_value = []
    return gateway


@pytest.fixture
def assets():
    storage = mock.MagicMock()
    storage.upload.return_value = {
        "public_id": "keyshop_product_1",
        "secure_url": "https://res.cloudinary.test/keyshop_product_1.png",
    }
    return storage


@pytest.fixture
def mailer():
    outbox = mock.MagicMock()
    outbox.send.return_value = (True, None)
    return outbox


@pytest.fixture
def make_user(user_repository):
    def factory(email="buyer@example.com", user_type="customer", password="secret123", verified=True, name="Buyer"):
        return user_repository.create(
            new_user_document(
                email=email,
                name=name,
                password_hash=hash_password(password),
                user_type=user_type,
                is_verified=verified,
            )
        )

    return factory


@pytest.fixture
def make_product(product_repository):
    def factory(product_name="Windows 11 Pro", category="Operating System", skus=None):
        document = new_product_document(
            {
                "product_name": product_name,
                "description": "Genuine retail key",
                "category": category,
                "platform_type": "Windows",
                "base_type": "Computer",
                "product_url": "https://example.com/product",
                "download_url": "https://example.com/download",
                "stripe_product_id": "prod_existing",
            }
        )
        for sku in skus if skus is not None else [{"sku_name": "1 PC", "price": 199.99, "lifetime": True}]:
            document["sku_details"].append(
                new_sku_document(dict({"stripe_price_id": "price_existing"}, **sku), sku.get("sku_code", "abc123"))
            )
        return product_repository.create(document)

    return factory


@pytest.fixture
def add_licenses(product_repository):
    def factory(product_document, count, sku_index=0):
        sku = product_document["sku_details"][sku_index]
        return [
            product_repository.create_license(
                new_license_document(product_document["_id"], sku["_id"], f"KEY-{sku_index}-{number}")
            )
            for number in range(count)
        ]

    return factory


@pytest.fixture
def completed_order(order_repository):
    def factory(user_document, product_document):
        return order_repository.create(
            {
                "order_id": "1000",
                "user_id": str(user_document["_id"]),
                "ordered_items": [{"product_id": str(product_document["_id"]), "quantity": 1}],
                "order_date": datetime.utcnow(),
                "checkout_session_id": f"cs_done_{user_document['_id']}",
                "order_status": ORDER_STATUS_COMPLETED,
                "is_order_delivered": True,
            }
        )

    return factory


@pytest.fixture
def app(db, payments, assets, mailer, tmp_path):
    return create_app(
        overrides={
            "TESTING": True,
            "JWT_SECRET_KEY": JWT_SECRET,
            "ADMIN_SECRET_TOKEN": ADMIN_SECRET,
            "STRIPE_WEBHOOK_SECRET": WEBHOOK_SECRET,
            "PRODUCT_UPLOAD_FOLDER": str(tmp_path / "uploads"),
            "TRUSTED_PROXY_HOPS": 0,
        },
        database=db,
        payments=payments,
        assets=assets,
        mailer=mailer,
    )


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def auth_headers(app):
    def factory(user_document):
        with app.app_context():
            token = create_access_token(identity=str(user_document["_id"]))
        return {"Authorization": f"Bearer {token}"}

    return factory
