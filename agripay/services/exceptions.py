from typing import Any, Optional


class PaymentError(Exception):
    """Base for payment failures. ``message`` is safe to show to end users."""

    default_message = "Payment could not be processed"

    def __init__(self, message: Optional[str] = None, payload: Any = None):
        self.message = message or self.default_message
        # raw provider data, for logs only
        self.payload = payload
        super().__init__(self.message)


class ValidationError(PaymentError):
    default_message = "Invalid payment request"


class InvalidPhoneFormat(ValidationError):
    default_message = "Invalid phone number format. Use 07XXXXXXXX or 2547XXXXXXXX"


class InvalidAmount(ValidationError):
    default_message = "Invalid amount"


class CredentialError(PaymentError):
    default_message = "Payment provider credentials are missing or were rejected"


class ConnectivityError(PaymentError):
    default_message = "Cannot reach the payment provider"


class UnexpectedResponseError(PaymentError):
    default_message = "Unexpected response from the payment provider"


class GatewayRejected(PaymentError):
    default_message = "The payment provider declined the request"


class NotFound(PaymentError):
    default_message = "Payment not found"


class AlreadyAttached(PaymentError):
    default_message = "Payment already has provider identifiers"
