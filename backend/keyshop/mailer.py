import logging
from typing import Dict, List, NamedTuple, Optional, Tuple

import resend
from flask import render_template

logger = logging.getLogger(__name__)

TEMPLATE_VERIFY_EMAIL = "verify_email"
TEMPLATE_PASSWORD_RESET = "password_reset"
TEMPLATE_ORDER_SUCCESS = "order_success"

TEMPLATE_FILES = {
    TEMPLATE_VERIFY_EMAIL: "emails/verify_email.html",
    TEMPLATE_PASSWORD_RESET: "emails/password_reset.html",
    TEMPLATE_ORDER_SUCCESS: "emails/order_success.html",
}

TEXT_BODIES = {
    TEMPLATE_VERIFY_EMAIL: "Welcome {name}. Your OTP is {otp}. It expires in {expiration_minutes} minutes.",
    TEMPLATE_PASSWORD_RESET: "Your temporary password is {password}. Log in at {login_link} and change it.",
    TEMPLATE_ORDER_SUCCESS: "Your order {order_id} is complete. View it at {order_link}.",
}


class OutboundEmail(NamedTuple):
    to: str
    template: str
    subject: str
    context: Dict[str, object]


class ResendMailer:
    """Template-keyed transactional email through Resend.

    `send` never raises: delivery problems are logged and reported through
    the returned `(sent, error)` pair so callers can ignore the outcome.
    """

    def __init__(self, api_key: str, sender: str):
        self.api_key = (api_key or "").strip()
        self.sender = sender

    def build_payload(self, message: OutboundEmail) -> Dict[str, object]:
        template_file = TEMPLATE_FILES.get(message.template)
        if not template_file:
            raise KeyError(f"Unknown email template: {message.template}")

        recipients: List[str] = [message.to]
        return {
            "from": self.sender,
            "to": recipients,
            "subject": message.subject,
            "html": render_template(template_file, **message.context),
            "text": TEXT_BODIES[message.template].format(**message.context),
        }

    def send(self, message: OutboundEmail) -> Tuple[bool, Optional[str]]:
        if not message.to:
            return False, "Missing recipient address."
        if not self.api_key:
            logger.warning(
                "Resend API key is not configured; skipped %s email to %s",
                message.template,
                message.to,
            )
            return False, "Resend API key is not configured."

        try:
            payload = self.build_payload(message)
        except (KeyError, ValueError) as exc:
            logger.error("Could not build %s email: %s", message.template, exc)
            return False, str(exc)

        previous_api_key = getattr(resend, "api_key", None)
        resend.api_key = self.api_key
        try:
            response = resend.Emails.send(payload)
        except Exception as exc:
            logger.error("Email dispatch failed for %s: %s", message.to, exc)
            return False, str(exc)
        finally:
            resend.api_key = previous_api_key

        if not isinstance(response, dict) or not response.get("id"):
            logger.error("Unexpected Resend response for %s: %s", message.to, response)
            return False, str(response)

        return True, None
