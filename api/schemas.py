"""API Schemas - Request and Response DTOs"""
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel
from datetime import date, datetime
from uuid import UUID
from typing import Dict, List, Optional

from domain.enums import ReservationStatus


class CamelModel(BaseModel):
    """Accepts and emits camelCase keys, as the booking frontend uses them"""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# ============================================================================
# AVAILABILITY & PRICING SCHEMAS
# ============================================================================

class StayRequest(CamelModel):
    """Stay dates request DTO"""
    check_in: date
    check_out: date


class AvailabilityResponse(CamelModel):
    available: bool
    check_in: date
    check_out: date


class BlockedRangeResponse(CamelModel):
    """One blocked stretch; `end` is the last occupied night"""
    start: date
    end: date
    source: str
    label: Optional[str] = None


class BlockedDatesResponse(CamelModel):
    ranges: List[BlockedRangeResponse]
    feeds: Dict[str, Optional[str]] = {}


class QuoteResponse(CamelModel):
    nights: int
    base_price: float
    discount_name: Optional[str] = None
    discount_percentage: float = 0
    discount: float = 0
    service_fee: float
    total: float
    total_minor: int
    currency: str


class SeasonResponse(CamelModel):
    name: str
    start_month: int
    end_month: int
    price_per_night: float


class DiscountResponse(CamelModel):
    name: str
    min_nights: int
    percentage: float


class PricingResponse(CamelModel):
    seasons: List[SeasonResponse]
    default_price_per_night: float
    discounts: List[DiscountResponse]
    service_fee: float
    currency: str
    min_nights: int
    max_nights: int
    max_guests: int


# ============================================================================
# CHECKOUT SCHEMAS
# ============================================================================

class CheckoutRequest(CamelModel):
    """Booking form; the price is always computed server side"""
    check_in: date
    check_out: date
    name: str = Field(min_length=1, max_length=200)
    email: str = Field(min_length=3, max_length=320)
    phone: Optional[str] = Field(default=None, max_length=50)
    adults: int = Field(ge=1, le=16)
    children: int = Field(ge=0, le=16, default=0)
    special_requests: Optional[str] = Field(default=None, max_length=2000)


class StripeCheckoutResponse(CamelModel):
    session_id: str
    url: Optional[str] = None
    reservation_id: UUID


class PayPalOrderResponse(CamelModel):
    order_id: str
    approval_url: Optional[str] = None
    reservation_id: UUID


class CapturePayPalRequest(CamelModel):
    order_id: str = Field(min_length=1)


class WebhookResponse(CamelModel):
    received: bool = True
    action: str
    reservation_id: Optional[str] = None


# ============================================================================
# RESERVATION SCHEMAS
# ============================================================================

class ReservationResponse(CamelModel):
    """Reservation response DTO"""
    reservation_id: UUID
    status: ReservationStatus
    check_in: date
    check_out: date
    nights: int
    name: str
    email: str
    phone: Optional[str] = None
    adults: int
    children: int
    special_requests: Optional[str] = None
    total_amount: float
    total_amount_minor: int
    currency: str
    payment_method: Optional[str] = None
    payment_reference: Optional[str] = None
    created_at: datetime
    confirmed_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    cancellation_reason: Optional[str] = None
    restored_from_provider: bool = False


class ConfirmationResponse(CamelModel):
    reservation: ReservationResponse
    already_confirmed: bool = False


class GuestCancelRequest(CamelModel):
    email: str
    reason: Optional[str] = None


class AdminCancelRequest(CamelModel):
    reason: Optional[str] = None


# ============================================================================
# AUTH SCHEMAS
# ============================================================================

class Token(BaseModel):
    """Token response DTO"""
    access_token: str
    token_type: str
