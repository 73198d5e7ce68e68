import json
from unittest import mock

import pytest
import requests

from keyshop.errors import ExternalServiceError
from keyshop.payments import (
    SignatureVerificationError,
    StripeGateway,
    compute_signature,
    construct_event,
    encode_form,
)

SECRET = "whsec_unit"


def fake_response(status_code=200, body=None):
    response = mock.Mock()
    response.status_code = status_code
    response.json.return_value = body if body is not None else {}
    response.text = json.dumps(body or {})
    return response


def test_encode_form_flattens_nested_params():
    encoded = encode_form(
        {
            "mode": "payment",
            "line_items": [
                {"price": "price_1", "quantity": 2, "adjustable_quantity": {"enabled": True, "maximum": 5}}
            ],
            "metadata": {"user_id": "u1"},
            "payment_method_types": ["card"],
            "skipped": None,
        }
    )

    assert encoded == [
        ("mode", "payment"),
        ("line_items[0][price]", "price_1"),
        ("line_items[0][quantity]", "2"),
        ("line_items[0][adjustable_quantity][enabled]", "true"),
        ("line_items[0][adjustable_quantity][maximum]", "5"),
        ("metadata[user_id]", "u1"),
        ("payment_method_types[0]", "card"),
    ]


def test_construct_event_accepts_valid_signature():
    payload = b'{"type": "checkout.session.completed"}'
    header = f"t=1700000000,v1={compute_signature(payload, '1700000000', SECRET)}"

    event = construct_event(payload, header, SECRET, now=1700000100)

    assert event == {"type": "checkout.session.completed"}


def test_construct_event_accepts_any_matching_v1_entry():
    payload = b"{}"
    good = compute_signature(payload, "1700000000", SECRET)
    header = f"t=1700000000,v1=deadbeef,v1={good},v0=ignored"

    assert construct_event(payload, header, SECRET, now=1700000000) == {}


@pytest.mark.parametrize(
    "header",
    [
        None,
        "",
        "v1=abc",
        "t=1700000000",
        "t=1700000000,v1=0000",
    ],
)
def test_construct_event_rejects_malformed_headers(header):
    with pytest.raises(SignatureVerificationError):
        construct_event(b"{}", header, SECRET, now=1700000000)


def test_construct_event_rejects_tampered_payload():
    header = f"t=1700000000,v1={compute_signature(b'{}', '1700000000', SECRET)}"
    with pytest.raises(SignatureVerificationError):
        construct_event(b'{"tampered": true}', header, SECRET, now=1700000000)


def test_construct_event_rejects_stale_timestamp():
    header = f"t=1700000000,v1={compute_signature(b'{}', '1700000000', SECRET)}"
    with pytest.raises(SignatureVerificationError):
        construct_event(b"{}", header, SECRET, now=1700000000 + 301)


def test_construct_event_requires_secret():
    with pytest.raises(SignatureVerificationError):
        construct_event(b"{}", "t=1,v1=x", "")


def test_gateway_posts_form_encoded_price():
    gateway = StripeGateway("sk_test_123")
    with mock.patch("keyshop.payments.requests.request", return_value=fake_response(body={"id": "price_9"})) as request:
        price = gateway.create_price(1999, "inr", "prod_1", {"sku_code": "abc"})

    assert price == {"id": "price_9"}
    method, url = request.call_args[0]
    assert (method, url) == ("POST", "https://api.stripe.com/v1/prices")
    assert request.call_args.kwargs["headers"] == {"Authorization": "Bearer sk_test_123"}
    assert ("metadata[sku_code]", "abc") in request.call_args.kwargs["data"]
    assert ("unit_amount", "1999") in request.call_args.kwargs["data"]


def test_gateway_deactivates_price():
    gateway = StripeGateway("sk_test_123")
    with mock.patch("keyshop.payments.requests.request", return_value=fake_response(body={})) as request:
        gateway.deactivate_price("price_1")

    assert request.call_args[0][1].endswith("/prices/price_1")
    assert request.call_args.kwargs["data"] == [("active", "false")]


def test_gateway_lists_line_items_with_get():
    gateway = StripeGateway("sk_test_123")
    body = {"data": [{"quantity": 1}]}
    with mock.patch("keyshop.payments.requests.get", return_value=fake_response(body=body)) as get:
        items = gateway.list_line_items("cs_1")

    assert items == [{"quantity": 1}]
    assert get.call_args[0][0] == "https://api.stripe.com/v1/checkout/sessions/cs_1/line_items"


def test_gateway_raises_on_error_response():
    gateway = StripeGateway("sk_test_123")
    error_body = {"error": {"message": "No such price"}}
    with mock.patch("keyshop.payments.requests.request", return_value=fake_response(400, error_body)):
        with pytest.raises(ExternalServiceError) as failure:
            gateway.deactivate_price("price_missing")
    assert "No such price" in failure.value.description


def test_gateway_raises_on_network_failure():
    gateway = StripeGateway("sk_test_123")
    with mock.patch("keyshop.payments.requests.request", side_effect=requests.ConnectionError("down")):
        with pytest.raises(ExternalServiceError):
            gateway.delete_product("prod_1")


def test_gateway_requires_secret_key():
    with pytest.raises(ExternalServiceError):
        StripeGateway("").create_product("Name", "Description")
