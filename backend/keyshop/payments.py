import hashlib
import hmac
import json
import logging
import time
from typing import Dict, List, Optional, Tuple

import requests

from .errors import ExternalServiceError

logger = logging.getLogger(__name__)

STRIPE_API_BASE = "https://api.stripe.com/v1"
WEBHOOK_TOLERANCE_SECONDS = 300
REQUEST_TIMEOUT_SECONDS = 30


class SignatureVerificationError(ValueError):
    pass


def encode_form(params: Dict[str, object], prefix: str = "") -> List[Tuple[str, str]]:
    """Flatten nested params into Stripe's bracketed form encoding."""
    encoded: List[Tuple[str, str]] = []
    for key, value in params.items():
        field = f"{prefix}[{key}]" if prefix else str(key)
        if value is None:
            continue
        if isinstance(value, dict):
            encoded.extend(encode_form(value, field))
        elif isinstance(value, (list, tuple)):
            for index, entry in enumerate(value):
                if isinstance(entry, dict):
                    encoded.extend(encode_form(entry, f"{field}[{index}]"))
                else:
                    encoded.append((f"{field}[{index}]", _form_value(entry)))
        else:
            encoded.append((field, _form_value(value)))
    return encoded


def _form_value(value) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def compute_signature(payload: bytes, timestamp: str, secret: str) -> str:
    signed_payload = f"{timestamp}.".encode("utf-8") + payload
    return hmac.new(
        secret.encode("utf-8"), signed_payload, hashlib.sha256
    ).hexdigest()


def construct_event(
    payload: bytes,
    signature_header: Optional[str],
    secret: str,
    tolerance: int = WEBHOOK_TOLERANCE_SECONDS,
    now: Optional[float] = None,
) -> Dict[str, object]:
    """Verify a `Stripe-Signature` header and decode the event body."""
    if not secret:
        raise SignatureVerificationError("Webhook secret is not configured.")
    if not signature_header:
        raise SignatureVerificationError("Missing signature header.")
    if isinstance(payload, str):
        payload = payload.encode("utf-8")

    timestamp = None
    signatures: List[str] = []
    for part in str(signature_header).split(","):
        key, _, value = part.strip().partition("=")
        if key == "t":
            timestamp = value
        elif key == "v1":
            signatures.append(value)

    if not timestamp or not signatures:
        raise SignatureVerificationError("Unable to extract timestamp and signatures.")

    expected = compute_signature(payload, timestamp, secret)
    if not any(hmac.compare_digest(expected, candidate) for candidate in signatures):
        raise SignatureVerificationError("No signatures found matching the expected signature.")

    try:
        signed_at = int(timestamp)
    except ValueError:
        raise SignatureVerificationError("Invalid signature timestamp.")
    current_time = time.time() if now is None else now
    if tolerance and signed_at < current_time - tolerance:
        raise SignatureVerificationError("Timestamp outside the tolerance zone.")

    try:
        return json.loads(payload.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise SignatureVerificationError(f"Invalid payload: {exc}")


class StripeGateway:
    """Calls the Stripe REST API with form-encoded requests."""

    def __init__(self, secret_key: str, base_url: str = STRIPE_API_BASE):
        self.secret_key = (secret_key or "").strip()
        self.base_url = base_url.rstrip("/")

    def _request(self, method: str, path: str, params: Optional[Dict] = None) -> Dict:
        if not self.secret_key:
            raise ExternalServiceError("Stripe is not configured.")

        url = f"{self.base_url}{path}"
        headers = {"Authorization": f"Bearer {self.secret_key}"}
        form = encode_form(params or {})
        try:
            if method == "GET":
                response = requests.get(
                    url, params=form, headers=headers, timeout=REQUEST_TIMEOUT_SECONDS
                )
            else:
                response = requests.request(
                    method, url, data=form, headers=headers, timeout=REQUEST_TIMEOUT_SECONDS
                )
        except requests.RequestException as exc:
            logger.error("Stripe %s %s failed: %s", method, path, exc)
            raise ExternalServiceError("Failed to reach payment provider.")

        try:
            body = response.json()
        except ValueError:
            body = {}

        if response.status_code >= 300:
            error_message = (body.get("error") or {}).get("message") or response.text
            logger.error("Stripe %s %s returned %s: %s", method, path, response.status_code, error_message)
            raise ExternalServiceError(f"Payment provider error: {error_message}")

        return body

    def create_product(self, name: str, description: str) -> Dict:
        return self._request("POST", "/products", {"name": name, "description": description})

    def update_product(self, product_id: str, **fields) -> Dict:
        return self._request("POST", f"/products/{product_id}", fields)

    def delete_product(self, product_id: str) -> Dict:
        return self._request("DELETE", f"/products/{product_id}")

    def create_price(
        self, unit_amount: int, currency: str, product_id: str, metadata: Dict[str, object]
    ) -> Dict:
        return self._request(
            "POST",
            "/prices",
            {
                "unit_amount": unit_amount,
                "currency": currency,
                "product": product_id,
                "metadata": metadata,
            },
        )

    def deactivate_price(self, price_id: str) -> Dict:
        return self._request("POST", f"/prices/{price_id}", {"active": False})

    def create_checkout_session(self, params: Dict[str, object]) -> Dict:
        return self._request("POST", "/checkout/sessions", params)

    def list_line_items(self, session_id: str) -> List[Dict]:
        body = self._request("GET", f"/checkout/sessions/{session_id}/line_items", {"limit": 100})
        return body.get("data") or []
