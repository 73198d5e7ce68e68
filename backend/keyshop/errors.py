from flask import Flask, jsonify
from werkzeug.exceptions import (
    BadGateway,
    BadRequest,
    Conflict,
    Forbidden,
    HTTPException,
    NotFound,
    Unauthorized,
)


class NotFoundError(NotFound):
    """A user, product, SKU, license, order or review does not exist."""


class ConflictError(Conflict):
    """Duplicate email or duplicate review."""


class ValidationError(BadRequest):
    """Missing fields, unavailable stock or a bad webhook signature."""


class UnauthorizedError(Unauthorized):
    """Bad credentials, unverified email or wrong current password."""


class ForbiddenError(Forbidden):
    pass


class ExternalServiceError(BadGateway):
    """Stripe or Cloudinary answered with an error."""


def register_error_handlers(app: Flask) -> None:
    @app.errorhandler(HTTPException)
    def handle_http_exception(exc: HTTPException):
        return (
            jsonify({"success": False, "message": exc.description, "result": None}),
            exc.code,
        )

    @app.errorhandler(Exception)
    def handle_unexpected_exception(exc: Exception):
        app.logger.exception("Unhandled error: %s", exc)
        return (
            jsonify(
                {"success": False, "message": "Internal server error", "result": None}
            ),
            500,
        )
