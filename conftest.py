"""Shared fixtures: in-memory wiring plus fake Stripe / PayPal / calendar servers"""
import asyncio
import json
from datetime import date, timedelta
from typing import Dict, List, Optional, Tuple
from urllib.parse import parse_qsl

import httpx
import pytest
import stripe
from fastapi.testclient import TestClient

from api.dependencies import Container, set_container
from application.availability import AvailabilityIndex
from application.reconciliation import PaymentReconciler
from application.services import BookingService
from domain.entities import Reservation
from domain.exceptions import StoreUnavailableError
from domain.pricing import PricingConfig, calculate_quote
from domain.value_objects import GuestContact, GuestCount, Money, StayDates
from infrastructure.calendar.feed_fetcher import FeedFetcher
from infrastructure.config import Settings
from infrastructure.idempotency import IdempotencyStore
from infrastructure.notifications import LoggingNotificationSender, NotificationDispatcher
from infrastructure.payments.paypal_gateway import PayPalGateway
from infrastructure.payments.stripe_gateway import StripeGateway
from infrastructure.repositories.in_memory_repositories import InMemoryReservationRepository
from infrastructure.repositories.ledger import ReservationLedger

WEBHOOK_SECRET = "whsec_test_secret"
ADMIN_SECRET = "villa-admin-secret"
OWNER_EMAIL = "owner@kefalonia-bnb.com"
STRIPE_BASE = "https://stripe.test"
PAYPAL_BASE = "https://paypal.test"
IN_MEMORY_DB = "sqlite+aiosqlite:///:memory:"


# ============================================================================
# HELPERS
# ============================================================================

def make_ics(events: List[Tuple[str, date, Optional[date], str]]) -> str:
    """Minimal iCalendar text; each event is (uid, start, exclusive_end or None, summary)"""
    lines = ["BEGIN:VCALENDAR", "VERSION:2.0", "PRODID:-//Test//Feed//EN"]
    for uid, start, end, summary in events:
        lines += ["BEGIN:VEVENT", f"UID:{uid}", "DTSTAMP:20250101T000000Z",
                  f"DTSTART;VALUE=DATE:{start.strftime('%Y%m%d')}"]
        if end is not None:
            lines.append(f"DTEND;VALUE=DATE:{end.strftime('%Y%m%d')}")
        lines += [f"SUMMARY:{summary}", "END:VEVENT"]
    lines.append("END:VCALENDAR")
    return "\r\n".join(lines) + "\r\n"


def signed_header(payload: bytes, secret: str = WEBHOOK_SECRET, timestamp: Optional[int] = None) -> str:
    return stripe.WebhookSignature.generate_signature_header(payload.decode("utf-8"), secret, timestamp=timestamp)


def stripe_event(event_id: str, event_type: str, session: dict) -> bytes:
    return json.dumps({
        "id": event_id,
        "object": "event",
        "type": event_type,
        "data": {"object": session},
    }).encode("utf-8")


def future_stay(days_ahead: int = 60, nights: int = 3) -> Tuple[date, date]:
    check_in = date.today() + timedelta(days=days_ahead)
    return check_in, check_in + timedelta(days=nights)


def make_reservation(check_in: date = date(2025, 7, 5), check_out: date = date(2025, 7, 10), **kwargs) -> Reservation:
    """PENDING reservation priced with the default table; validation is anchored on 2025-01-01"""
    pricing = PricingConfig.default()
    stay = StayDates(check_in=check_in, check_out=check_out)
    quote = calculate_quote(stay, pricing)
    return Reservation.create(
        stay=stay,
        guest=GuestContact(name="Ana Ionescu", email="ana@example.com", phone="+40 700 000 000"),
        guests=GuestCount(adults=2, children=1),
        total_amount=Money(amount_minor=quote.total_minor),
        pricing=pricing,
        today=date(2025, 1, 1),
        **kwargs
    )


def booking_request(check_in: date, check_out: date, **overrides) -> dict:
    request = {
        "check_in": check_in,
        "check_out": check_out,
        "name": "Maria Papadopoulou",
        "email": "maria@example.com",
        "phone": "+30 210 000 0000",
        "adults": 2,
        "children": 1,
        "special_requests": "Late arrival",
    }
    request.update(overrides)
    return request


class FlakyStore(InMemoryReservationRepository):
    """In-memory store whose writes can be switched off, like a primary that drops out"""

    name = "flaky"

    def __init__(self):
        super().__init__()
        self.saves_fail = False

    async def save(self, reservation: Reservation) -> Reservation:
        if self.saves_fail:
            raise StoreUnavailableError("connection reset")
        return await super().save(reservation)


class FeedServer:
    """Serves calendar bodies by URL; a value may be an int status or an exception"""

    def __init__(self, responses: Optional[Dict[str, object]] = None):
        self.responses: Dict[str, object] = dict(responses or {})
        self.calls: List[str] = []

    def handler(self, request: httpx.Request) -> httpx.Response:
        url = str(request.url)
        self.calls.append(url)
        response = self.responses.get(url, 404)
        if isinstance(response, Exception):
            raise response
        if isinstance(response, int):
            return httpx.Response(response, text="")
        return httpx.Response(200, text=str(response))

    def fetcher(self, timeout: float = 1.0) -> FeedFetcher:
        return FeedFetcher(timeout=timeout, client=httpx.AsyncClient(transport=httpx.MockTransport(self.handler)))


class FakeStripeApi:
    """Just enough of the Checkout Sessions API"""

    def __init__(self):
        self.sessions: Dict[str, dict] = {}
        self.down = False
        self._counter = 0

    def handler(self, request: httpx.Request) -> httpx.Response:
        if self.down:
            raise httpx.ConnectError("stripe unreachable", request=request)
        path = request.url.path
        if request.method == "POST" and path == "/v1/checkout/sessions":
            form = dict(parse_qsl(request.content.decode("utf-8")))
            self._counter += 1
            session_id = f"cs_test_{self._counter:04d}"
            session = {
                "id": session_id,
                "object": "checkout.session",
                "url": f"https://checkout.stripe.test/pay/{session_id}",
                "status": "open",
                "payment_status": "unpaid",
                "client_reference_id": form.get("client_reference_id"),
                "customer_email": form.get("customer_email"),
                "amount_total": int(form["line_items[0][price_data][unit_amount]"]),
                "currency": form["line_items[0][price_data][currency]"],
                "metadata": {k[len("metadata["):-1]: v for k, v in form.items() if k.startswith("metadata[")},
            }
            self.sessions[session_id] = session
            return httpx.Response(200, json=session)
        if request.method == "GET" and path.startswith("/v1/checkout/sessions/"):
            session_id = path.rsplit("/", 1)[1]
            if session_id not in self.sessions:
                return httpx.Response(404, json={"error": {
                    "type": "invalid_request_error",
                    "code": "resource_missing",
                    "message": f"No such checkout.session: '{session_id}'",
                }})
            return httpx.Response(200, json=self.sessions[session_id])
        return httpx.Response(404, json={"error": {"type": "invalid_request_error", "message": "Unrecognized request URL"}})

    def pay(self, session_id: str) -> dict:
        self.sessions[session_id].update(status="complete", payment_status="paid")
        return self.sessions[session_id]

    def expire(self, session_id: str) -> dict:
        self.sessions[session_id].update(status="expired")
        return self.sessions[session_id]


class MockStripeHttpClient(stripe.HTTPClient):
    """Feeds the stripe SDK from an httpx.MockTransport"""

    name = "httpx-mock"

    def __init__(self, handler):
        super().__init__()
        self._client = httpx.AsyncClient(transport=httpx.MockTransport(handler))

    async def request_async(self, method, url, headers, post_data=None):
        try:
            resp = await self._client.request(method, url, headers=dict(headers), content=post_data)
        except httpx.HTTPError as e:
            raise stripe.APIConnectionError(f"Network error: {e}", should_retry=False) from e
        return resp.content, resp.status_code, resp.headers

    async def close_async(self):
        await self._client.aclose()

    def sleep_async(self, secs):
        return asyncio.sleep(secs)


class FakePayPalApi:
    """Just enough of the Orders v2 API"""

    def __init__(self):
        self.orders: Dict[str, dict] = {}
        self.capture_calls = 0
        self.token_calls = 0
        self._counter = 0

    def handler(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path
        if path == "/v1/oauth2/token":
            self.token_calls += 1
            return httpx.Response(200, json={"access_token": "A21-test-token", "expires_in": 32400})

        if request.method == "POST" and path == "/v2/checkout/orders":
            body = json.loads(request.content.decode("utf-8"))
            self._counter += 1
            order_id = f"5O190127TN{self._counter:06d}"
            order = {
                "id": order_id,
                "status": "CREATED",
                "purchase_units": body["purchase_units"],
                "links": [
                    {"rel": "self", "href": f"{PAYPAL_BASE}/v2/checkout/orders/{order_id}"},
                    {"rel": "approve", "href": f"https://sandbox.paypal.test/checkoutnow?token={order_id}"},
                ],
            }
            self.orders[order_id] = order
            return httpx.Response(201, json=order)

        parts = path.strip("/").split("/")
        if len(parts) >= 4 and parts[:3] == ["v2", "checkout", "orders"]:
            order = self.orders.get(parts[3])
            if order is None:
                return httpx.Response(404, json={"name": "RESOURCE_NOT_FOUND", "details": [{"issue": "INVALID_RESOURCE_ID"}]})
            if len(parts) == 5 and parts[4] == "capture" and request.method == "POST":
                self.capture_calls += 1
                if order["status"] == "COMPLETED":
                    return httpx.Response(422, json={"name": "UNPROCESSABLE_ENTITY", "details": [{"issue": "ORDER_ALREADY_CAPTURED"}]})
                if order["status"] != "APPROVED":
                    return httpx.Response(422, json={"name": "UNPROCESSABLE_ENTITY", "details": [{"issue": "ORDER_NOT_APPROVED"}]})
                order["status"] = "COMPLETED"
                unit = order["purchase_units"][0]
                # Like the real API, the capture response omits custom_id and description
                return httpx.Response(201, json={
                    "id": order["id"],
                    "status": "COMPLETED",
                    "purchase_units": [{"reference_id": unit["reference_id"], "payments": {"captures": [{"status": "COMPLETED"}]}}],
                })
            if len(parts) == 4 and request.method == "GET":
                return httpx.Response(200, json=order)
        return httpx.Response(404, json={"name": "NOT_FOUND"})

    def approve(self, order_id: str) -> None:
        self.orders[order_id]["status"] = "APPROVED"
        self.orders[order_id]["payer"] = {
            "email_address": "payer@example.com",
            "name": {"given_name": "Pay", "surname": "Er"},
        }


# ============================================================================
# FIXTURES
# ============================================================================

@pytest.fixture
def pricing():
    return PricingConfig.default()


@pytest.fixture
def memory_store():
    return InMemoryReservationRepository()


@pytest.fixture
def ledger(memory_store):
    return ReservationLedger([memory_store])


@pytest.fixture
def sender():
    return LoggingNotificationSender()


@pytest.fixture
def notifier(sender):
    return NotificationDispatcher(sender, owner_email=OWNER_EMAIL, property_name="Kefalonia Vintage Home")


@pytest.fixture
def stripe_api():
    return FakeStripeApi()


@pytest.fixture
def paypal_api():
    return FakePayPalApi()


@pytest.fixture
def stripe_gateway(stripe_api):
    return StripeGateway(
        "sk_test_123",
        WEBHOOK_SECRET,
        api_base=STRIPE_BASE,
        http_client=MockStripeHttpClient(stripe_api.handler),
    )


@pytest.fixture
def paypal_gateway(paypal_api):
    return PayPalGateway(
        "client-id",
        "client-secret",
        api_base=PAYPAL_BASE,
        client=httpx.AsyncClient(transport=httpx.MockTransport(paypal_api.handler)),
    )


@pytest.fixture
def feed_server():
    return FeedServer()


@pytest.fixture
def availability(ledger, feed_server):
    return AvailabilityIndex(ledger, feed_urls=[], fetcher=feed_server.fetcher())


@pytest.fixture
def booking_lock():
    return asyncio.Lock()


@pytest.fixture
def booking_service(ledger, availability, pricing, stripe_gateway, paypal_gateway, booking_lock):
    return BookingService(
        ledger,
        availability,
        pricing,
        stripe=stripe_gateway,
        paypal=paypal_gateway,
        booking_lock=booking_lock,
        hold_minutes=30,
        frontend_url="https://kefalonia-bnb.test",
        property_name="Kefalonia Vintage Home",
    )


@pytest.fixture
async def idempotency():
    store = IdempotencyStore.from_url(IN_MEMORY_DB)
    await store.init_schema()
    yield store
    await store.dispose()


@pytest.fixture
def reconciler(ledger, availability, notifier, stripe_gateway, paypal_gateway, booking_lock, idempotency):
    return PaymentReconciler(
        ledger,
        availability,
        notifier,
        stripe=stripe_gateway,
        paypal=paypal_gateway,
        idempotency=idempotency,
        booking_lock=booking_lock,
        pre_arrival_lead_days=3,
    )


@pytest.fixture
def test_settings():
    return Settings(
        _env_file=None,
        database_url=IN_MEMORY_DB,
        admin_secret=ADMIN_SECRET,
        jwt_secret_key="test-jwt-secret",
        owner_email=OWNER_EMAIL,
        stripe_secret_key="sk_test_123",
        stripe_webhook_secret=WEBHOOK_SECRET,
        stripe_api_base=STRIPE_BASE,
        paypal_client_id="client-id",
        paypal_client_secret="client-secret",
        paypal_api_base=PAYPAL_BASE,
        calendar_feed_urls=[],
    )


@pytest.fixture
def container(test_settings, sender, feed_server, stripe_gateway, paypal_gateway):
    return Container(
        test_settings,
        stores=[InMemoryReservationRepository()],
        fetcher=feed_server.fetcher(),
        sender=sender,
        stripe=stripe_gateway,
        paypal=paypal_gateway,
    )


@pytest.fixture
def client(container):
    """FastAPI test client bound to the in-memory container"""
    from main import app

    set_container(container)
    # entering the client runs the lifespan: schema, scheduler, shutdown
    with TestClient(app) as test_client:
        yield test_client
    set_container(None)
