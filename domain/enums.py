"""Domain Enums"""
from enum import Enum


class ReservationStatus(str, Enum):
    PENDING = "PENDING"
    CONFIRMED = "CONFIRMED"
    CANCELLED = "CANCELLED"


class PaymentProvider(str, Enum):
    STRIPE = "stripe"
    PAYPAL = "paypal"


class ProviderPaymentState(str, Enum):
    """Payment state as reported by the provider's own record"""
    OPEN = "OPEN"
    PAID = "PAID"
    EXPIRED = "EXPIRED"


class CancellationActor(str, Enum):
    GUEST = "GUEST"
    ADMIN = "ADMIN"
    SYSTEM = "SYSTEM"


class NotificationKind(str, Enum):
    GUEST_CONFIRMATION = "GUEST_CONFIRMATION"
    OWNER_NEW_BOOKING = "OWNER_NEW_BOOKING"
    PRE_ARRIVAL = "PRE_ARRIVAL"
    CANCELLATION = "CANCELLATION"
    OWNER_ALERT = "OWNER_ALERT"


DIRECT_SOURCE = "direct"
HOLD_SOURCE = "hold"
