"""
Domain errors raised by the booking service.

Every error carries a stable machine-readable code and the HTTP status the
API layer answers with.
"""

from typing import Any, Dict, Optional


class BookingServiceError(Exception):
    code = "INTERNAL_ERROR"
    status_code = 500
    default_message = "Internal error"

    def __init__(self, message: Optional[str] = None, details: Optional[Dict[str, Any]] = None):
        self.message = message or self.default_message
        self.details = details or {}
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        data = {"detail": self.message, "code": self.code}
        if self.details:
            data["details"] = self.details
        return data

    def __str__(self) -> str:
        return f"{self.code}: {self.message}"


# --- Not found ---

class NotFound(BookingServiceError):
    code = "NOT_FOUND"
    status_code = 404
    default_message = "Resource not found"


class BookingNotFound(NotFound):
    code = "BOOKING_NOT_FOUND"
    default_message = "Booking not found"


class PaymentNotFound(NotFound):
    code = "PAYMENT_NOT_FOUND"
    default_message = "Payment not found"


class UserNotFound(NotFound):
    code = "USER_NOT_FOUND"
    default_message = "User not found"


class VendorNotFound(NotFound):
    code = "VENDOR_NOT_FOUND"
    default_message = "Vendor not found"


# --- Client errors ---

class OwnershipViolation(BookingServiceError):
    code = "NOT_OWNER_OF_BOOKING"
    status_code = 403
    default_message = "You are not the owner of this booking"


class ValidationError(BookingServiceError):
    code = "VALIDATION_ERROR"
    status_code = 422
    default_message = "Validation failed"


class InvalidTransition(ValidationError):
    code = "INVALID_STATE_TRANSITION"
    default_message = "Booking state transition is not allowed"


class DuplicateError(BookingServiceError):
    code = "ALREADY_IN_USE"
    status_code = 409
    default_message = "Already in use"


# --- Upstream errors ---

class ProviderError(BookingServiceError):
    """The payment provider rejected or failed a call."""
    code = "PAYMENT_PROVIDER_ERROR"
    status_code = 502
    default_message = "Payment provider error"


class DeliveryError(BookingServiceError):
    """The mail API failed to deliver a templated message."""
    code = "EMAIL_DELIVERY_ERROR"
    status_code = 502
    default_message = "Email delivery failed"
