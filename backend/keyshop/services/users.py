import logging
import secrets
from datetime import datetime, timedelta
from typing import Callable, Dict, Optional

from ..errors import ConflictError, NotFoundError, UnauthorizedError, ValidationError
from ..mailer import TEMPLATE_PASSWORD_RESET, TEMPLATE_VERIFY_EMAIL, OutboundEmail
from ..schemas import (
    USER_TYPE_ADMIN,
    USER_TYPE_CUSTOMER,
    new_user_document,
    public_user_projection,
    strip_private_user_fields,
)
from ..security import (
    compare_password,
    generate_auth_token,
    generate_otp_code,
    generate_temporary_password,
    hash_password,
)

logger = logging.getLogger(__name__)

INVALID_CREDENTIALS_MESSAGE = "Invalid email or password"


class UsersService:
    def __init__(
        self,
        users,
        mailer,
        admin_secret_token: str,
        otp_expiration_minutes: int = 10,
        login_link: str = "",
        token_factory: Callable[[str], str] = generate_auth_token,
    ):
        self.users = users
        self.mailer = mailer
        self.admin_secret_token = admin_secret_token or ""
        self.otp_expiration_minutes = otp_expiration_minutes
        self.login_link = login_link
        self.token_factory = token_factory

    def _new_otp(self):
        otp = generate_otp_code()
        return otp, datetime.utcnow() + timedelta(minutes=self.otp_expiration_minutes)

    def _send_otp_email(self, user_document, otp: str):
        self.mailer.send(
            OutboundEmail(
                to=user_document["email"],
                template=TEMPLATE_VERIFY_EMAIL,
                subject="Verify your email",
                context={
                    "name": user_document.get("name", ""),
                    "email": user_document["email"],
                    "otp": otp,
                    "expiration_minutes": self.otp_expiration_minutes,
                },
            )
        )

    def _is_valid_admin_secret(self, provided: Optional[str]) -> bool:
        if not self.admin_secret_token or not provided:
            return False
        return secrets.compare_digest(str(provided), self.admin_secret_token)

    def register(self, payload: Dict[str, object]) -> Dict[str, object]:
        user_type = payload.get("type") or USER_TYPE_CUSTOMER
        if user_type == USER_TYPE_ADMIN and not self._is_valid_admin_secret(
            payload.get("secret_token")
        ):
            raise UnauthorizedError("Not allowed to create admin")

        email = payload["email"]
        if self.users.find_one({"email": email}):
            raise ConflictError("User already exists")

        is_customer = user_type == USER_TYPE_CUSTOMER
        otp, otp_expiry_time = self._new_otp() if is_customer else (None, None)

        user_document = self.users.create(
            new_user_document(
                email=email,
                name=payload["name"],
                password_hash=hash_password(payload["password"]),
                user_type=user_type,
                is_verified=not is_customer,
                otp=otp,
                otp_expiry_time=otp_expiry_time,
            )
        )
        logger.info("Registered %s account for %s", user_type, email)

        if is_customer:
            self._send_otp_email(user_document, otp)

        return {
            "success": True,
            "message": (
                "Please activate your account by verifying your email. "
                "We have sent you an email with the otp"
                if is_customer
                else "Admin created"
            ),
            "result": {"email": user_document["email"]},
        }

    def login(self, email: str, password: str) -> Dict[str, object]:
        user_document = self.users.find_one({"email": email})
        if (
            not user_document
            or not user_document.get("is_verified")
            or not compare_password(password, user_document.get("password"))
        ):
            raise UnauthorizedError(INVALID_CREDENTIALS_MESSAGE)

        token = self.token_factory(str(user_document["_id"]))
        return {
            "success": True,
            "message": "Login successful",
            "result": {"user": public_user_projection(user_document), "token": token},
        }

    def verify_email(self, otp: str, email: str) -> Dict[str, object]:
        user_document = self.users.find_one({"email": email})
        if not user_document:
            raise NotFoundError("User not found")
        if not user_document.get("otp") or str(user_document.get("otp")) != str(otp):
            raise ValidationError("Invalid otp")
        expires_at = user_document.get("otp_expiry_time")
        if not isinstance(expires_at, datetime) or expires_at < datetime.utcnow():
            raise ValidationError("OTP expired")

        self.users.update_one(
            {"_id": user_document["_id"]},
            {"is_verified": True, "otp": None, "otp_expiry_time": None},
        )
        return {
            "success": True,
            "message": "Email verified successfully. You can login now.",
            "result": None,
        }

    def resend_otp(self, email: str) -> Dict[str, object]:
        user_document = self.users.find_one({"email": email})
        if not user_document:
            raise NotFoundError("User not found")
        if user_document.get("is_verified"):
            raise ValidationError("User already verified")

        otp, otp_expiry_time = self._new_otp()
        self.users.update_one(
            {"_id": user_document["_id"]},
            {"otp": otp, "otp_expiry_time": otp_expiry_time},
        )
        self._send_otp_email(user_document, otp)
        return {
            "success": True,
            "message": "Otp sent successfully",
            "result": {"email": user_document["email"]},
        }

    def forgot_password(self, email: str) -> Dict[str, object]:
        user_document = self.users.find_one({"email": email})
        if not user_document:
            raise NotFoundError("User does not exist")

        temporary_password = generate_temporary_password()
        self.users.update_one(
            {"_id": user_document["_id"]},
            {"password": hash_password(temporary_password)},
        )
        self.mailer.send(
            OutboundEmail(
                to=user_document["email"],
                template=TEMPLATE_PASSWORD_RESET,
                subject="Reset your password",
                context={"password": temporary_password, "login_link": self.login_link},
            )
        )
        return {
            "success": True,
            "message": "Password sent to your email",
            "result": {"email": user_document["email"], "password": temporary_password},
        }

    def list_users(self, user_type: Optional[str] = None) -> Dict[str, object]:
        query = {"type": user_type} if user_type else {}
        users = [strip_private_user_fields(document) for document in self.users.find(query)]
        return {"success": True, "message": "All users", "result": users}

    def update_profile(
        self,
        user_id,
        name: Optional[str] = None,
        old_password: Optional[str] = None,
        new_password: Optional[str] = None,
    ) -> Dict[str, object]:
        if not name and not new_password:
            raise ValidationError("Please provide name or password")

        user_document = self.users.find_by_id(user_id)
        if not user_document:
            raise NotFoundError("User not found")

        updates: Dict[str, object] = {}
        if new_password:
            if not compare_password(old_password, user_document.get("password")):
                raise UnauthorizedError("Invalid current password")
            updates["password"] = hash_password(new_password)
        if name:
            updates["name"] = name

        self.users.update_one({"_id": user_document["_id"]}, updates)
        user_document.update(updates)
        return {
            "success": True,
            "message": "User updated successfully",
            "result": public_user_projection(user_document),
        }
