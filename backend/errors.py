from typing import Optional

from flask import jsonify, request
from werkzeug.exceptions import HTTPException


class CheckoutError(Exception):
    status_code = 500
    default_message = "Something went wrong. Please try again."

    def __init__(self, message: Optional[str] = None):
        self.message = message or self.default_message
        super().__init__(self.message)


class ValidationError(CheckoutError):
    status_code = 400
    default_message = "Invalid request."


class NotFoundError(CheckoutError):
    status_code = 404
    default_message = "Not found."


class IneligibleCouponError(CheckoutError):
    """Business-rule rejection of a coupon; the message is shown to the shopper."""

    status_code = 400
    default_message = "Invalid coupon"


class PaymentVerificationError(CheckoutError):
    status_code = 400
    default_message = "Payment verification failed"


class UpstreamServiceError(CheckoutError):
    status_code = 500
    default_message = "Payment service unavailable"


class InternalError(CheckoutError):
    status_code = 500


def register_error_handlers(app):
    @app.errorhandler(CheckoutError)
    def handle_checkout_error(exc: CheckoutError):
        return jsonify({"message": exc.message}), exc.status_code

    @app.errorhandler(Exception)
    def handle_unexpected_error(exc: Exception):
        if isinstance(exc, HTTPException):
            return exc
        app.logger.exception("Unhandled error on %s %s", request.method, request.path)
        return jsonify({"message": InternalError.default_message}), InternalError.status_code
