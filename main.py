import logging
from contextlib import asynccontextmanager
from datetime import timedelta
from typing import List, Optional
from uuid import UUID

from fastapi import Depends, FastAPI, HTTPException, Query, Request
from fastapi.responses import JSONResponse, Response
from fastapi.security import OAuth2PasswordRequestForm

from api.dependencies import (
    ADMIN_SUBJECT,
    Container,
    get_availability,
    get_booking_service,
    get_container,
    get_publisher,
    get_reconciler,
    require_admin,
)
from api.schemas import (
    # Availability & pricing
    StayRequest, AvailabilityResponse, BlockedRangeResponse, BlockedDatesResponse,
    QuoteResponse, PricingResponse, SeasonResponse, DiscountResponse,
    # Checkout
    CheckoutRequest, StripeCheckoutResponse, PayPalOrderResponse, CapturePayPalRequest, WebhookResponse,
    # Reservations
    ReservationResponse, ConfirmationResponse, GuestCancelRequest, AdminCancelRequest,
    # Auth
    Token,
)
from application.availability import AvailabilityIndex
from application.reconciliation import PaymentReconciler
from application.services import BookingService
from domain.entities import Reservation
from domain.enums import PaymentProvider, ReservationStatus
from domain.exceptions import (
    BookingError,
    DatesUnavailableError,
    DoubleBookingError,
    InvalidStatusTransition,
    LedgerUnavailableError,
    PaymentInconsistencyError,
    PaymentNotCompletedError,
    PaymentProviderError,
    ReservationNotFound,
    ReservationValidationError,
    SignatureVerificationError,
)
from domain.pricing import PriceQuote
from infrastructure.calendar.feed_publisher import FeedPublisher
from infrastructure.config import get_settings
from infrastructure.security import create_access_token

settings = get_settings()
logging.basicConfig(
    level=settings.log_level.upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    container = get_container()
    await container.startup()

    scheduler = container.scheduler
    if container.settings.feed_refresh_minutes > 0 and container.availability.feeds:
        scheduler.add_job(
            container.availability.refresh_feeds,
            "interval",
            minutes=container.settings.feed_refresh_minutes,
            id="feed_refresh",
            jobstore="memory",
            replace_existing=True,
        )
    # Reminders left in the job store by an earlier run fire from here on
    scheduler.start()
    app.state.scheduler = scheduler
    logger.info("Booking engine started with %d calendar feeds", len(container.availability.feeds))

    yield

    scheduler.shutdown(wait=False)
    await container.shutdown()


app = FastAPI(
    title="Villa Booking API",
    description="Direct booking engine for a single holiday home",
    version="1.0.0",
    lifespan=lifespan,
)

# ============================================================================
# ERROR HANDLING
# ============================================================================

ERROR_STATUS = [
    (ReservationValidationError, 400),
    (SignatureVerificationError, 400),
    (PaymentNotCompletedError, 402),
    (ReservationNotFound, 404),
    (DatesUnavailableError, 409),
    (InvalidStatusTransition, 409),
    (DoubleBookingError, 409),
    (PaymentInconsistencyError, 409),
    (PaymentProviderError, 502),
    (LedgerUnavailableError, 503),
]


def _status_for(error: BookingError) -> int:
    for error_type, status_code in ERROR_STATUS:
        if isinstance(error, error_type):
            return status_code
    return 500


@app.exception_handler(BookingError)
async def booking_error_handler(request: Request, exc: BookingError):
    status_code = _status_for(exc)
    detail = str(exc)
    if isinstance(exc, PaymentInconsistencyError):
        detail = (
            "Your payment was received but the booking could not be completed automatically. "
            f"Please contact support and quote reference {exc.reference}."
        )
    elif isinstance(exc, LedgerUnavailableError):
        detail = "Bookings are temporarily unavailable, please try again shortly."
    elif status_code == 500:
        logger.exception("Unhandled booking error on %s", request.url.path)
        detail = "Internal error"
    return JSONResponse(status_code=status_code, content={"detail": detail})


# ============================================================================
# RESPONSE HELPERS
# ============================================================================

def _reservation_to_response(reservation: Reservation) -> ReservationResponse:
    return ReservationResponse(
        reservation_id=reservation.reservation_id,
        status=reservation.status,
        check_in=reservation.stay.check_in,
        check_out=reservation.stay.check_out,
        nights=reservation.get_nights(),
        name=reservation.guest.name,
        email=reservation.guest.email,
        phone=reservation.guest.phone,
        adults=reservation.guests.adults,
        children=reservation.guests.children,
        special_requests=reservation.special_requests,
        total_amount=reservation.total_amount.major,
        total_amount_minor=reservation.total_amount.amount_minor,
        currency=reservation.total_amount.currency,
        payment_method=reservation.provider.kind.value if reservation.provider else None,
        payment_reference=reservation.provider.reference if reservation.provider else None,
        created_at=reservation.created_at,
        confirmed_at=reservation.confirmed_at,
        cancelled_at=reservation.cancelled_at,
        cancellation_reason=reservation.cancellation_reason,
        restored_from_provider=reservation.restored_from_provider,
    )


def _quote_to_response(quote: PriceQuote) -> QuoteResponse:
    return QuoteResponse(
        nights=quote.nights,
        base_price=float(quote.base_price),
        discount_name=quote.discount_name,
        discount_percentage=float(quote.discount_percentage),
        discount=float(quote.discount),
        service_fee=float(quote.service_fee),
        total=float(quote.total),
        total_minor=quote.total_minor,
        currency=quote.currency,
    )


def _checkout_fields(request: CheckoutRequest) -> dict:
    return {
        "check_in": request.check_in,
        "check_out": request.check_out,
        "name": request.name,
        "email": request.email,
        "phone": request.phone,
        "adults": request.adults,
        "children": request.children,
        "special_requests": request.special_requests,
    }


# ============================================================================
# HEALTH
# ============================================================================

@app.get("/api/health", tags=["Health"])
async def health_check(availability: AvailabilityIndex = Depends(get_availability)):
    """Health check endpoint"""
    return {"status": "healthy", "message": "API is running", "feeds": availability.feed_status()}


# ============================================================================
# AUTH ENDPOINTS
# ============================================================================

@app.post("/token", response_model=Token, tags=["Auth"])
async def login_for_access_token(
    form_data: OAuth2PasswordRequestForm = Depends(),
    container: Container = Depends(get_container)
):
    """Exchange the shared admin secret for a short-lived bearer token"""
    if form_data.username != ADMIN_SUBJECT or not container.admin_verifier.verify(form_data.password):
        raise HTTPException(
            status_code=401,
            detail="Incorrect username or password",
            headers={"WWW-Authenticate": "Bearer"},
        )
    access_token = create_access_token(
        data={"sub": ADMIN_SUBJECT},
        secret_key=container.settings.jwt_secret_key,
        algorithm=container.settings.jwt_algorithm,
        expires_delta=timedelta(minutes=container.settings.access_token_expire_minutes),
    )
    return {"access_token": access_token, "token_type": "bearer"}


# ============================================================================
# AVAILABILITY & PRICING ENDPOINTS
# ============================================================================

@app.post("/api/check-availability", response_model=AvailabilityResponse, tags=["Availability"])
async def check_availability(request: StayRequest, service: BookingService = Depends(get_booking_service)):
    """Whether the requested stay is free"""
    available = await service.check_availability(request.check_in, request.check_out)
    return AvailabilityResponse(available=available, check_in=request.check_in, check_out=request.check_out)


@app.get("/api/blocked-dates", response_model=BlockedDatesResponse, tags=["Availability"])
async def get_blocked_dates(
    service: BookingService = Depends(get_booking_service),
    availability: AvailabilityIndex = Depends(get_availability)
):
    ranges = await service.blocked_dates()
    return BlockedDatesResponse(
        ranges=[
            BlockedRangeResponse(start=b.start, end=b.end, source=b.source, label=b.label)
            for b in ranges
        ],
        feeds=availability.feed_status(),
    )


@app.post("/api/quote", response_model=QuoteResponse, tags=["Pricing"])
async def get_quote(request: StayRequest, service: BookingService = Depends(get_booking_service)):
    """Price breakdown for a stay"""
    return _quote_to_response(service.quote(request.check_in, request.check_out))


@app.get("/api/calendar", tags=["Calendar"])
@app.get("/api/calendar.ics", tags=["Calendar"])
async def export_calendar(
    include_external: Optional[bool] = Query(default=None, alias="includeExternal"),
    availability: AvailabilityIndex = Depends(get_availability),
    publisher: FeedPublisher = Depends(get_publisher),
    container: Container = Depends(get_container)
):
    """iCalendar feed of confirmed direct bookings, for the channel managers"""
    if include_external is None:
        include_external = container.settings.publish_external_ranges
    ranges = await availability.blocked_ranges(refresh=include_external)
    body = publisher.export(ranges, include_external=include_external)
    return Response(
        content=body,
        media_type="text/calendar; charset=utf-8",
        headers={"Content-Disposition": 'attachment; filename="calendar.ics"'},
    )


# ============================================================================
# STRIPE ENDPOINTS
# ============================================================================

@app.post("/api/create-checkout", response_model=StripeCheckoutResponse, tags=["Stripe"])
async def create_checkout(request: CheckoutRequest, service: BookingService = Depends(get_booking_service)):
    """Open a PENDING reservation and a Stripe Checkout session for it"""
    reservation, session = await service.start_stripe_checkout(**_checkout_fields(request))
    return StripeCheckoutResponse(
        session_id=session.session_id,
        url=session.url,
        reservation_id=reservation.reservation_id,
    )


@app.post("/api/stripe-webhook", response_model=WebhookResponse, tags=["Stripe"])
async def stripe_webhook(request: Request, reconciler: PaymentReconciler = Depends(get_reconciler)):
    payload = await request.body()
    result = await reconciler.handle_stripe_webhook(payload, request.headers.get("stripe-signature"))
    return WebhookResponse(action=result.action, reservation_id=result.reservation_id)


@app.get("/api/checkout-session/{session_id}", response_model=ReservationResponse, tags=["Stripe"])
async def get_checkout_session(session_id: str, reconciler: PaymentReconciler = Depends(get_reconciler)):
    """Reservation behind a Checkout session (rebuilt from Stripe if needed)"""
    reservation = await reconciler.reservation_for_reference(PaymentProvider.STRIPE, session_id)
    return _reservation_to_response(reservation)


# ============================================================================
# PAYPAL ENDPOINTS
# ============================================================================

@app.post("/api/create-paypal-order", response_model=PayPalOrderResponse, tags=["PayPal"])
async def create_paypal_order(request: CheckoutRequest, service: BookingService = Depends(get_booking_service)):
    reservation, order = await service.start_paypal_checkout(**_checkout_fields(request))
    return PayPalOrderResponse(
        order_id=order.order_id,
        approval_url=order.approval_url,
        reservation_id=reservation.reservation_id,
    )


@app.post("/api/capture-paypal-payment", response_model=ConfirmationResponse, tags=["PayPal"])
async def capture_paypal_payment(request: CapturePayPalRequest, reconciler: PaymentReconciler = Depends(get_reconciler)):
    """Capture an approved order; blocks until the booking is recorded"""
    outcome = await reconciler.capture_paypal_order(request.order_id)
    return ConfirmationResponse(
        reservation=_reservation_to_response(outcome.reservation),
        already_confirmed=outcome.already_confirmed,
    )


@app.get("/api/paypal-order/{order_id}", response_model=ReservationResponse, tags=["PayPal"])
async def get_paypal_order(order_id: str, reconciler: PaymentReconciler = Depends(get_reconciler)):
    reservation = await reconciler.reservation_for_reference(PaymentProvider.PAYPAL, order_id)
    return _reservation_to_response(reservation)


# ============================================================================
# RESERVATION ENDPOINTS
# ============================================================================

@app.post("/api/reservations/{reservation_id}/cancel", response_model=ReservationResponse, tags=["Reservations"])
async def cancel_reservation(
    reservation_id: UUID,
    request: GuestCancelRequest,
    reconciler: PaymentReconciler = Depends(get_reconciler)
):
    """Guest cancellation; the booking e-mail must match"""
    reservation = await reconciler.cancel_by_guest(reservation_id, request.email, request.reason)
    return _reservation_to_response(reservation)


# ============================================================================
# ADMIN ENDPOINTS
# ============================================================================

@app.get("/api/admin/bookings", response_model=List[ReservationResponse], tags=["Admin"])
async def admin_list_bookings(
    status: Optional[ReservationStatus] = None,
    service: BookingService = Depends(get_booking_service),
    admin: str = Depends(require_admin)
):
    reservations = await service.list_reservations(status)
    return [_reservation_to_response(r) for r in reservations]


@app.post("/api/admin/bookings/{reservation_id}/cancel", response_model=ReservationResponse, tags=["Admin"])
async def admin_cancel_booking(
    reservation_id: UUID,
    request: Optional[AdminCancelRequest] = None,
    reconciler: PaymentReconciler = Depends(get_reconciler),
    admin: str = Depends(require_admin)
):
    reservation = await reconciler.cancel_by_admin(reservation_id, request.reason if request else None)
    return _reservation_to_response(reservation)


@app.get("/api/admin/pricing", response_model=PricingResponse, tags=["Admin"])
async def admin_pricing(service: BookingService = Depends(get_booking_service), admin: str = Depends(require_admin)):
    pricing = service.pricing
    return PricingResponse(
        seasons=[
            SeasonResponse(
                name=s.name, start_month=s.start_month, end_month=s.end_month,
                price_per_night=float(s.price_per_night),
            )
            for s in pricing.seasons
        ],
        default_price_per_night=float(pricing.default_price_per_night),
        discounts=[
            DiscountResponse(name=d.name, min_nights=d.min_nights, percentage=float(d.percentage))
            for d in pricing.discounts
        ],
        service_fee=float(pricing.service_fee),
        currency=pricing.currency,
        min_nights=pricing.min_nights,
        max_nights=pricing.max_nights,
        max_guests=pricing.max_guests,
    )


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
