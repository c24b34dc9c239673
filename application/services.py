"""Application Services - Business use cases"""
import asyncio
import logging
from uuid import UUID
from datetime import date, datetime, timedelta
from typing import List, Optional, Tuple

from pydantic import ValidationError

from application.availability import AvailabilityIndex
from domain.availability import find_conflicts
from domain.entities import Reservation
from domain.enums import PaymentProvider, ReservationStatus
from domain.exceptions import (
    DatesUnavailableError,
    PaymentProviderError,
    ReservationNotFound,
    ReservationValidationError,
)
from domain.pricing import PriceQuote, PricingConfig, calculate_quote
from domain.value_objects import BlockedRange, GuestContact, GuestCount, Money, StayDates
from infrastructure.payments.paypal_gateway import PayPalGateway, PayPalOrder
from infrastructure.payments.stripe_gateway import CheckoutSession, StripeGateway
from infrastructure.repositories.ledger import ReservationLedger

logger = logging.getLogger(__name__)


def _validation_message(error: ValidationError) -> str:
    first = error.errors()[0] if error.errors() else {}
    field = ".".join(str(p) for p in first.get("loc", ()))
    message = str(first.get("msg", error)).removeprefix("Value error, ")
    return f"{field}: {message}" if field else message


def build_stay(check_in: date, check_out: date) -> StayDates:
    try:
        return StayDates(check_in=check_in, check_out=check_out)
    except ValidationError as e:
        raise ReservationValidationError(_validation_message(e)) from e


class BookingService:
    """Service for the guest booking flow: quote, availability, checkout"""

    def __init__(
        self,
        ledger: ReservationLedger,
        availability: AvailabilityIndex,
        pricing: PricingConfig,
        stripe: Optional[StripeGateway] = None,
        paypal: Optional[PayPalGateway] = None,
        booking_lock: Optional[asyncio.Lock] = None,
        hold_minutes: int = 30,
        frontend_url: str = "http://localhost:3000",
        property_name: str = ""
    ):
        self.ledger = ledger
        self.availability = availability
        self.pricing = pricing
        self.stripe = stripe
        self.paypal = paypal
        self.booking_lock = booking_lock or asyncio.Lock()
        self.hold_for = timedelta(minutes=hold_minutes) if hold_minutes > 0 else None
        self.frontend_url = frontend_url.rstrip("/")
        self.property_name = property_name

    # ==================== QUERIES ====================
    def quote(self, check_in: date, check_out: date) -> PriceQuote:
        """Price breakdown for a stay, validated against the stay rules"""
        stay = build_stay(check_in, check_out)
        Reservation.validate_stay(stay, self.pricing, today=date.today())
        return calculate_quote(stay, self.pricing)

    async def check_availability(self, check_in: date, check_out: date) -> bool:
        stay = build_stay(check_in, check_out)
        return await self.availability.is_available(stay, include_holds=True)

    async def blocked_dates(self) -> List[BlockedRange]:
        return await self.availability.blocked_ranges()

    async def get_reservation(self, reservation_id: UUID) -> Reservation:
        reservation = await self.ledger.get(reservation_id)
        if reservation is None:
            raise ReservationNotFound(str(reservation_id))
        return reservation

    async def list_reservations(self, status: Optional[ReservationStatus] = None) -> List[Reservation]:
        reservations = await self.ledger.list_all()
        if status is not None:
            reservations = [r for r in reservations if r.status == status]
        return sorted(reservations, key=lambda r: (r.stay.check_in, r.created_at))

    # ==================== RESERVATION OPENING ====================
    def _draft(
        self,
        check_in: date,
        check_out: date,
        name: str,
        email: str,
        adults: int,
        children: int = 0,
        phone: Optional[str] = None,
        special_requests: Optional[str] = None,
        now: Optional[datetime] = None
    ) -> Reservation:
        stay = build_stay(check_in, check_out)
        try:
            guest = GuestContact(name=name, email=email, phone=(phone or None))
            guests = GuestCount(adults=adults, children=children)
        except ValidationError as e:
            raise ReservationValidationError(_validation_message(e)) from e

        quote = calculate_quote(stay, self.pricing)
        return Reservation.create(
            stay=stay,
            guest=guest,
            guests=guests,
            total_amount=Money(amount_minor=quote.total_minor, currency=quote.currency),
            pricing=self.pricing,
            special_requests=(special_requests or "").strip() or None,
            hold_for=self.hold_for,
            now=now,
        )

    async def open_reservation(self, draft: Reservation) -> Reservation:
        """Check the dates and record the PENDING reservation as one step.

        While the hold lasts, the dates count as taken for everybody else.
        """
        # Warm the feed snapshots outside the lock
        await self.availability.refresh_feeds()
        async with self.booking_lock:
            blocked = await self.availability.blocked_ranges(refresh=False)
            blocked += await self.availability.active_holds()
            conflicts = find_conflicts(draft.stay.check_in, draft.stay.check_out, blocked)
            if conflicts:
                logger.info(
                    "Dates %s..%s unavailable, %d conflicting ranges",
                    draft.stay.check_in, draft.stay.check_out, len(conflicts),
                )
                raise DatesUnavailableError("The selected dates are not available")
            reservation = await self.ledger.create(draft)

        logger.info(
            "Opened reservation %s for %s..%s (%s)",
            reservation.reservation_id, reservation.stay.check_in, reservation.stay.check_out,
            reservation.total_amount.amount_minor,
        )
        return reservation

    async def start_stripe_checkout(self, **request) -> Tuple[Reservation, CheckoutSession]:
        if self.stripe is None or not self.stripe.is_configured():
            raise PaymentProviderError("stripe", "Stripe payments are not available")

        reservation = await self.open_reservation(self._draft(**request))
        try:
            session = await self.stripe.create_checkout_session(
                reservation,
                success_url=f"{self.frontend_url}/booking/success?session_id={{CHECKOUT_SESSION_ID}}",
                cancel_url=f"{self.frontend_url}/booking?canceled=true",
                product_name=f"{self.property_name} Booking".strip(),
            )
        except PaymentProviderError:
            logger.error("Stripe checkout failed, reservation %s stays PENDING", reservation.reservation_id)
            raise

        reservation.attach_provider(PaymentProvider.STRIPE, session.session_id)
        await self.ledger.save(reservation)
        return reservation, session

    async def start_paypal_checkout(self, **request) -> Tuple[Reservation, PayPalOrder]:
        if self.paypal is None or not self.paypal.is_configured():
            raise PaymentProviderError("paypal", "PayPal payments are not available")

        reservation = await self.open_reservation(self._draft(**request))
        try:
            order = await self.paypal.create_order(
                reservation,
                return_url=f"{self.frontend_url}/booking/paypal-success",
                cancel_url=f"{self.frontend_url}/booking?canceled=true",
                brand_name=self.property_name,
            )
        except PaymentProviderError:
            logger.error("PayPal order failed, reservation %s stays PENDING", reservation.reservation_id)
            raise

        reservation.attach_provider(PaymentProvider.PAYPAL, order.order_id)
        await self.ledger.save(reservation)
        return reservation, order
