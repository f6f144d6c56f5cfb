"""Error taxonomy shared by the booking service modules.

Every error carries the HTTP status the handlers map it to and a stable
machine-readable ``code`` used in ``errorInfo`` payloads.
"""

from __future__ import annotations

from typing import Dict, Optional


class BookingError(Exception):
    """Base class for all domain errors raised by the booking service."""

    status_code = 500
    code = "internal_error"

    def __init__(self, message: str = "") -> None:
        super().__init__(message or self.__class__.__name__)
        self.message = message or self.__class__.__name__


class ValidationError(BookingError):
    """Raised when request input is missing or malformed."""

    status_code = 400
    code = "invalid_request"

    def __init__(self, fields: Dict[str, str], message: str = "Invalid request") -> None:
        super().__init__(message)
        self.fields = dict(fields)


class NotFoundError(BookingError):
    status_code = 404
    code = "not_found"

    def __init__(self, booking_id: str) -> None:
        super().__init__("Booking not found")
        self.booking_id = booking_id


class InvalidTransitionError(BookingError):
    """Raised when a booking is asked to move to a status it cannot reach."""

    status_code = 409
    code = "invalid_booking_status"

    def __init__(self, booking_id: str, current: str, requested: str) -> None:
        super().__init__(f"Booking cannot move from {current} to {requested}")
        self.booking_id = booking_id
        self.current = current
        self.requested = requested


class ConflictError(BookingError):
    """Raised when a booking overlaps an already approved booking."""

    status_code = 409
    code = "slot_taken"

    def __init__(self, conflicting_id: str) -> None:
        super().__init__("Requested time overlaps an approved booking")
        self.conflicting_id = conflicting_id


class PaymentOrderUsedError(BookingError):
    """Raised when a payment order id already belongs to another booking."""

    status_code = 409
    code = "payment_order_used"

    def __init__(self, order_id: str) -> None:
        super().__init__("Payment order already belongs to a booking")
        self.order_id = order_id


class PaymentMismatchError(BookingError):
    """Raised when a payment order cannot settle a booking."""

    status_code = 409
    code = "payment_mismatch"

    def __init__(self, booking_id: str, order_id: str, message: str) -> None:
        super().__init__(message)
        self.booking_id = booking_id
        self.order_id = order_id


class ConfigurationError(BookingError):
    code = "server_misconfigured"


class StorageError(BookingError):
    """Raised when the backing store fails; carries the provider status code."""

    code = "storage_error"

    def __init__(self, message: str, provider_status: Optional[int] = None) -> None:
        super().__init__(message)
        self.provider_status = provider_status


class DeliveryError(BookingError):
    """Raised when the email provider rejects or fails to accept a message."""

    code = "delivery_failed"

    def __init__(self, message: str, *, provider_status: Optional[int] = None, retryable: bool = False) -> None:
        super().__init__(message)
        self.provider_status = provider_status
        self.retryable = retryable


class PaymentError(BookingError):
    code = "payment_failed"

    def __init__(self, message: str, provider_status: Optional[int] = None) -> None:
        super().__init__(message)
        self.provider_status = provider_status
