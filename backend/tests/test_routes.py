import io

from bson import ObjectId

API = "/api/v1"


def product_body(**overrides):
    body = {
        "product_name": "Windows 11 Pro",
        "description": "Retail key",
        "category": "Operating System",
        "platform_type": "Windows",
        "base_type": "Computer",
        "product_url": "https://example.com/win",
        "download_url": "https://example.com/win/download",
        "requirement_specification": [{"ram": "4GB"}],
        "highlights": ["Genuine"],
    }
    body.update(overrides)
    return body


def set_cookie_headers(response):
    return response.headers.getlist("Set-Cookie")


def test_register_verify_login_and_use_cookie(client, db, mailer):
    response = client.post(
        f"{API}/users",
        json={"name": "New", "email": "New@Example.com", "password": "secret123"},
    )
    assert response.status_code == 201
    assert response.get_json()["result"] == {"email": "new@example.com"}
    mailer.send.assert_called_once()

    otp = db.users.find_one({"email": "new@example.com"})["otp"]
    response = client.get(f"{API}/users/verify-email/{otp}/new@example.com")
    assert response.status_code == 200

    response = client.post(f"{API}/users/login", json={"email": "new@example.com", "password": "secret123"})
    body = response.get_json()
    assert response.status_code == 200
    assert body["success"] is True
    assert body["result"]["token"]
    assert body["result"]["user"]["email"] == "new@example.com"
    assert "password" not in body["result"]["user"]
    assert any(header.startswith("auth_token=") for header in set_cookie_headers(response))

    response = client.get(f"{API}/orders")
    assert response.status_code == 200
    assert response.get_json()["result"] == []


def test_login_with_bad_password(client, make_user):
    make_user(email="known@example.com", password="secret123")

    response = client.post(f"{API}/users/login", json={"email": "known@example.com", "password": "nope"})

    assert response.status_code == 401
    assert response.get_json() == {"success": False, "message": "Invalid email or password", "result": None}


def test_logout_clears_cookie(client):
    response = client.get(f"{API}/users/logout")

    assert response.status_code == 200
    assert any(header.startswith("auth_token=;") for header in set_cookie_headers(response))


def test_register_validation_error(client):
    response = client.post(f"{API}/users", json={"name": "New", "email": "not-an-email", "password": "secret123"})

    assert response.status_code == 400
    assert response.get_json()["success"] is False


def test_admin_only_listing(client, make_user, auth_headers):
    customer = make_user(email="c@example.com")
    admin = make_user(email="a@example.com", user_type="admin")

    anonymous = client.get(f"{API}/users")
    assert anonymous.status_code == 401
    assert anonymous.get_json()["success"] is False

    assert client.get(f"{API}/users", headers=auth_headers(customer)).status_code == 403

    response = client.get(f"{API}/users?type=customer", headers=auth_headers(admin))
    assert response.status_code == 200
    users = response.get_json()["result"]
    assert [user["email"] for user in users] == ["c@example.com"]
    assert "password" not in users[0]


def test_garbage_token_is_rejected(client):
    response = client.get(f"{API}/orders", headers={"Authorization": "Bearer not-a-token"})

    assert response.status_code == 401
    assert response.get_json()["result"] is None


def test_product_crud_through_api(client, make_user, auth_headers, payments):
    admin = auth_headers(make_user(email="a@example.com", user_type="admin"))

    missing_fields = client.post(f"{API}/products", json={}, headers=admin)
    assert missing_fields.status_code == 400
    assert missing_fields.get_json()["message"] == "product_name is required"

    bad_enum = client.post(f"{API}/products", json=product_body(platform_type="Amiga"), headers=admin)
    assert bad_enum.status_code == 400

    created = client.post(f"{API}/products", json=product_body(), headers=admin)
    assert created.status_code == 201
    product = created.get_json()["result"]
    assert isinstance(product["id"], str)
    assert product["stripe_product_id"] == "prod_test"
    assert product["created_at"].endswith("Z")

    fetched = client.get(f"{API}/products/{product['id']}")
    assert fetched.status_code == 200
    assert fetched.get_json()["result"]["product"]["product_name"] == "Windows 11 Pro"

    listed = client.get(f"{API}/products?category=Operating%20System")
    assert listed.get_json()["result"]["metadata"]["total"] == 1

    patched = client.patch(f"{API}/products/{product['id']}", json={"description": "OEM key"}, headers=admin)
    assert patched.get_json()["result"]["description"] == "OEM key"

    skus = client.post(
        f"{API}/products/{product['id']}/skus",
        json={"sku_details": [{"sku_name": "1 PC", "price": 10, "lifetime": True}]},
        headers=admin,
    )
    assert skus.status_code == 201
    sku_id = skus.get_json()["result"]["sku_details"][0]["id"]

    license_response = client.post(
        f"{API}/products/{product['id']}/skus/{sku_id}/licenses",
        json={"license_key": "AAAA-1111"},
        headers=admin,
    )
    assert license_response.status_code == 201
    licenses = client.get(f"{API}/products/{product['id']}/skus/{sku_id}/licenses", headers=admin)
    assert [entry["license_key"] for entry in licenses.get_json()["result"]] == ["AAAA-1111"]

    deleted = client.delete(f"{API}/products/{product['id']}", headers=admin)
    assert deleted.status_code == 200
    assert client.get(f"{API}/products/{product['id']}").status_code == 404


def test_unknown_product_uses_error_envelope(client):
    response = client.get(f"{API}/products/{ObjectId()}")

    assert response.status_code == 404
    assert response.get_json() == {"success": False, "message": "Product does not exist", "result": None}


def test_customer_cannot_manage_products(client, make_user, auth_headers):
    customer = auth_headers(make_user())

    response = client.post(f"{API}/products", json=product_body(), headers=customer)

    assert response.status_code == 403


def test_image_upload_rejects_unsupported_files(client, make_user, make_product, auth_headers, assets):
    admin = auth_headers(make_user(email="a@example.com", user_type="admin"))
    product = make_product()

    response = client.post(
        f"{API}/products/{product['_id']}/image",
        data={"product_image": (io.BytesIO(b"plain text"), "notes.txt")},
        headers=admin,
        content_type="multipart/form-data",
    )

    assert response.status_code == 400
    assets.upload.assert_not_called()


def test_image_upload_stores_cdn_url(client, make_user, make_product, auth_headers, assets):
    admin = auth_headers(make_user(email="a@example.com", user_type="admin"))
    product = make_product()

    response = client.post(
        f"{API}/products/{product['_id']}/image",
        data={"product_image": (io.BytesIO(b"\x89PNG"), "cover.png")},
        headers=admin,
        content_type="multipart/form-data",
    )

    assert response.status_code == 200
    assert response.get_json()["result"] == "https://res.cloudinary.test/keyshop_product_1.png"
    assets.upload.assert_called_once()


def test_reviews_are_for_customers(client, make_user, make_product, auth_headers, completed_order):
    product = make_product()
    admin = auth_headers(make_user(email="a@example.com", user_type="admin"))
    customer_document = make_user()
    completed_order(customer_document, product)

    forbidden = client.post(f"{API}/products/{product['_id']}/reviews", json={"rating": 5, "review": "Nice"}, headers=admin)
    assert forbidden.status_code == 403

    out_of_range = client.post(
        f"{API}/products/{product['_id']}/reviews",
        json={"rating": 9, "review": "Nice"},
        headers=auth_headers(customer_document),
    )
    assert out_of_range.status_code == 400

    created = client.post(
        f"{API}/products/{product['_id']}/reviews",
        json={"rating": 4, "review": "Nice"},
        headers=auth_headers(customer_document),
    )
    assert created.status_code == 201
    assert created.get_json()["result"]["avg_rating"] == 4


def test_checkout_through_api(client, make_user, make_product, add_licenses, auth_headers, payments):
    product = make_product()
    add_licenses(product, 2)
    customer = auth_headers(make_user())

    invalid = client.post(f"{API}/orders/checkout", json={"checkout_details": []}, headers=customer)
    assert invalid.status_code == 400

    response = client.post(
        f"{API}/orders/checkout",
        json={
            "checkout_details": [
                {"sku_id": str(product["sku_details"][0]["_id"]), "sku_price_id": "price_existing", "quantity": 1}
            ]
        },
        headers=customer,
    )

    assert response.status_code == 200
    assert response.get_json()["result"] == "https://checkout.stripe.test/cs_test_1"


def test_webhook_with_invalid_signature(client):
    response = client.post(
        f"{API}/orders/webhook",
        data=b'{"type": "checkout.session.completed"}',
        headers={"Stripe-Signature": "t=1,v1=bad"},
        content_type="application/json",
    )

    assert response.status_code == 400
    assert response.get_json()["message"] == "Webhook signature invalid"


def test_get_order_by_id(client, order_repository):
    order = order_repository.create({"checkout_session_id": "cs_1", "order_id": "42"})

    response = client.get(f"{API}/orders/{order['_id']}")

    assert response.status_code == 200
    assert response.get_json()["result"]["order_id"] == "42"
    assert client.get(f"{API}/orders/{ObjectId()}").status_code == 404


def test_product_create_rejects_malformed_skus(client, make_user, auth_headers, db):
    admin = auth_headers(make_user(email="a@example.com", user_type="admin"))

    not_objects = client.post(f"{API}/products", json=product_body(sku_details=["1 PC"]), headers=admin)
    assert not_objects.status_code == 400
    assert not_objects.get_json()["message"] == "Each sku must be an object"

    bad_price = client.post(
        f"{API}/products",
        json=product_body(sku_details=[{"sku_name": "1 PC", "price": -5, "lifetime": True}]),
        headers=admin,
    )
    assert bad_price.status_code == 400
    assert db.products.count_documents({}) == 0


def test_product_create_with_skus_mints_prices(client, make_user, auth_headers, payments):
    admin = auth_headers(make_user(email="a@example.com", user_type="admin"))

    response = client.post(
        f"{API}/products",
        json=product_body(
            sku_details=[
                {"sku_name": "1 PC", "price": 10, "lifetime": True},
                {"sku_name": "3 PC", "price": 25, "validity": 365},
            ]
        ),
        headers=admin,
    )

    assert response.status_code == 201
    skus = response.get_json()["result"]["sku_details"]
    assert [sku["stripe_price_id"] for sku in skus] == ["price_1", "price_2"]
    assert skus[0]["sku_code"] and skus[0]["sku_code"] == skus[1]["sku_code"]
    assert payments.create_price.call_count == 2
    assert payments.create_price.call_args_list[0].kwargs["unit_amount"] == 1000
