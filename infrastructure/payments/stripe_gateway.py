"""Stripe Checkout through the official ``stripe`` SDK.

Checkout sessions carry the full reservation in their metadata, which is
what lets a lost reservation be rebuilt from the session alone. Webhook
signatures are checked by ``stripe.Webhook.construct_event``.
"""
import logging
from typing import Any, Awaitable, Dict, Optional

import stripe
from pydantic import BaseModel

from domain.entities import Reservation
from domain.enums import PaymentProvider, ProviderPaymentState
from domain.exceptions import PaymentProviderError, SignatureVerificationError
from domain.provider_records import ProviderRecord, reservation_metadata
from domain.repositories import ProviderRecordSource
from infrastructure.payments.base import DEFAULT_TIMEOUT

logger = logging.getLogger(__name__)

DEFAULT_API_BASE = "https://api.stripe.com"
METADATA_VALUE_LIMIT = 500
DEFAULT_TOLERANCE = stripe.Webhook.DEFAULT_TOLERANCE


class CheckoutSession(BaseModel):
    session_id: str
    url: Optional[str] = None


def session_state(session: Dict[str, Any]) -> ProviderPaymentState:
    if session.get("payment_status") == "paid":
        return ProviderPaymentState.PAID
    if session.get("status") == "expired":
        return ProviderPaymentState.EXPIRED
    return ProviderPaymentState.OPEN


class StripeGateway(ProviderRecordSource):
    provider_name = "stripe"
    kind = PaymentProvider.STRIPE

    def __init__(
        self,
        secret_key: str,
        webhook_secret: str = "",
        api_base: str = DEFAULT_API_BASE,
        timeout: float = DEFAULT_TIMEOUT,
        tolerance_seconds: int = DEFAULT_TOLERANCE,
        http_client: Optional[stripe.HTTPClient] = None
    ):
        self.secret_key = secret_key
        self.webhook_secret = webhook_secret
        self.tolerance_seconds = tolerance_seconds
        self.http_client = http_client or stripe.HTTPXClient(timeout=timeout)
        self.client = stripe.StripeClient(
            secret_key,
            base_addresses={"api": api_base.rstrip("/")},
            http_client=self.http_client,
            max_network_retries=0,
        )

    def is_configured(self) -> bool:
        return bool(self.secret_key)

    async def close(self) -> None:
        await self.http_client.close_async()

    async def _call(self, action: str, request: Awaitable[Any]) -> Dict[str, Any]:
        """Await one SDK call; SDK errors become PaymentProviderError"""
        try:
            obj = await request
        except stripe.APIConnectionError as e:
            logger.error("stripe %s: cannot reach the API: %s", action, e.user_message)
            raise PaymentProviderError(self.provider_name, f"{action}: Stripe is unreachable") from e
        except stripe.StripeError as e:
            logger.error("stripe %s: HTTP %s %s", action, e.http_status, e.user_message)
            raise PaymentProviderError(
                self.provider_name, f"{action} (HTTP {e.http_status})", e.http_status
            ) from e
        return obj.to_dict()

    # ==================== CHECKOUT ====================
    async def create_checkout_session(
        self,
        reservation: Reservation,
        success_url: str,
        cancel_url: str,
        product_name: str
    ) -> CheckoutSession:
        if not self.is_configured():
            raise PaymentProviderError(self.provider_name, "Stripe is not configured")

        nights = reservation.get_nights()
        params: Dict[str, Any] = {
            "mode": "payment",
            "payment_method_types": ["card"],
            "success_url": success_url,
            "cancel_url": cancel_url,
            "customer_email": reservation.guest.email,
            "client_reference_id": str(reservation.reservation_id),
            "line_items": [{
                "quantity": 1,
                "price_data": {
                    "currency": reservation.total_amount.currency.lower(),
                    "unit_amount": reservation.total_amount.amount_minor,
                    "product_data": {
                        "name": product_name,
                        "description": (
                            f"{nights} nights, {reservation.guests.adults} adults, "
                            f"{reservation.guests.children} children, "
                            f"Check-in: {reservation.stay.check_in.isoformat()}, "
                            f"Check-out: {reservation.stay.check_out.isoformat()}"
                        ),
                    },
                },
            }],
            "metadata": {
                key: value[:METADATA_VALUE_LIMIT] for key, value in reservation_metadata(reservation).items()
            },
        }

        body = await self._call(
            "Cannot create checkout session", self.client.v1.checkout.sessions.create_async(params)
        )
        if not body.get("id"):
            raise PaymentProviderError(self.provider_name, "Checkout session response has no id")

        logger.info("Created Stripe session %s for reservation %s", body["id"], reservation.reservation_id)
        return CheckoutSession(session_id=body["id"], url=body.get("url"))

    async def retrieve_session(self, session_id: str) -> Dict[str, Any]:
        return await self._call(
            f"Cannot retrieve checkout session {session_id}",
            self.client.v1.checkout.sessions.retrieve_async(session_id),
        )

    async def fetch_record(self, reference: str) -> Optional[ProviderRecord]:
        try:
            session = await self.retrieve_session(reference)
        except PaymentProviderError as e:
            if e.status_code == 404:
                return None
            raise
        return self.record_from_session(session)

    @staticmethod
    def record_from_session(session: Dict[str, Any]) -> ProviderRecord:
        metadata = {str(k): str(v) for k, v in (session.get("metadata") or {}).items() if v is not None}
        if not metadata.get("reservation_id") and session.get("client_reference_id"):
            metadata["reservation_id"] = str(session["client_reference_id"])
        if not metadata.get("email") and session.get("customer_email"):
            metadata["email"] = str(session["customer_email"])

        currency = session.get("currency")
        return ProviderRecord(
            kind=PaymentProvider.STRIPE,
            reference=str(session.get("id", "")),
            state=session_state(session),
            metadata=metadata,
            amount_minor=session.get("amount_total"),
            currency=currency.upper() if currency else None,
        )

    # ==================== WEBHOOKS ====================
    def construct_event(self, payload: bytes, signature_header: Optional[str]) -> Dict[str, Any]:
        """Verify the Stripe-Signature header and decode the event"""
        if not self.webhook_secret:
            raise SignatureVerificationError("Webhook secret is not configured")

        try:
            event = stripe.Webhook.construct_event(
                payload, signature_header, self.webhook_secret, tolerance=self.tolerance_seconds
            )
        except stripe.SignatureVerificationError as e:
            raise SignatureVerificationError(e.user_message or "Invalid signature") from e
        except ValueError as e:
            raise SignatureVerificationError("Invalid webhook payload") from e
        return event.to_dict()
