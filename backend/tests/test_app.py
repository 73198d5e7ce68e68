import logging

from keyshop import create_app
from keyshop.config import DEFAULT_JWT_SECRET_KEY

from .conftest import JWT_SECRET

JWT_WARNING = "JWT_SECRET_KEY is not set"


def build_app(db, payments, assets, mailer, tmp_path, jwt_secret):
    return create_app(
        overrides={
            "TESTING": True,
            "JWT_SECRET_KEY": jwt_secret,
            "PRODUCT_UPLOAD_FOLDER": str(tmp_path / "uploads"),
            "TRUSTED_PROXY_HOPS": 0,
        },
        database=db,
        payments=payments,
        assets=assets,
        mailer=mailer,
    )


def test_default_jwt_secret_is_reported(db, payments, assets, mailer, tmp_path, caplog):
    with caplog.at_level(logging.WARNING):
        build_app(db, payments, assets, mailer, tmp_path, DEFAULT_JWT_SECRET_KEY)

    assert any(JWT_WARNING in record.getMessage() for record in caplog.records)


def test_configured_jwt_secret_is_quiet(db, payments, assets, mailer, tmp_path, caplog):
    with caplog.at_level(logging.WARNING):
        build_app(db, payments, assets, mailer, tmp_path, JWT_SECRET)

    assert not any(JWT_WARNING in record.getMessage() for record in caplog.records)
