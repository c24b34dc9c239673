"""Domain Exceptions"""
from typing import Optional


class BookingError(Exception):
    """Base class for booking engine errors"""


class ReservationValidationError(BookingError, ValueError):
    """Invalid stay dates, guest counts or contact fields"""


class DatesUnavailableError(BookingError):
    """Requested stay overlaps a blocked range or an active hold"""


class ReservationNotFound(BookingError, LookupError):
    def __init__(self, key: str):
        super().__init__(f"Reservation not found: {key}")
        self.key = key


class InvalidStatusTransition(BookingError):
    pass


class PaymentProviderError(BookingError):
    """Payment provider unreachable or rejected the request"""

    def __init__(self, provider: str, message: str, status_code: Optional[int] = None):
        super().__init__(f"{provider}: {message}")
        self.provider = provider
        self.status_code = status_code


class PaymentNotCompletedError(BookingError):
    """Provider answered but the payment is not (yet) completed"""


class SignatureVerificationError(BookingError):
    pass


class PaymentInconsistencyError(BookingError):
    """Provider reports a successful payment but no reservation can be produced"""

    def __init__(self, provider: str, reference: str, message: str):
        super().__init__(f"{provider} {reference}: {message}")
        self.provider = provider
        self.reference = reference


class DoubleBookingError(BookingError):
    """Payment confirmed for dates that were taken in the meantime"""

    def __init__(self, reservation_id: str, message: str):
        super().__init__(message)
        self.reservation_id = reservation_id


class StoreUnavailableError(BookingError):
    """A single reservation store could not be reached"""


class LedgerUnavailableError(BookingError):
    """No reservation store could serve the operation"""
