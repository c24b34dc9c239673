"""PayPal Orders v2 over the REST API.

PayPal keeps far less free text per order than Stripe, so the reservation is
spread over the purchase unit and its single line item, one value per field:

* ``reference_id``: reservation id
* ``custom_id``: ``check_in|check_out|adults|children|total_minor|currency``
* ``items[0].name``: guest name
* ``items[0].sku``: guest email
* ``items[0].description``: guest phone
* ``description``: special requests

Every field is capped at 127 characters by PayPal. An email that does not
fit is refused before the order is created; a name or special requests
longer than the cap are cut on a character boundary.
"""
import logging
import time
from decimal import Decimal
from typing import Any, Dict, Optional

import httpx
from pydantic import BaseModel

from domain.entities import Reservation
from domain.enums import PaymentProvider, ProviderPaymentState
from domain.exceptions import PaymentNotCompletedError, PaymentProviderError
from domain.provider_records import ProviderRecord
from domain.repositories import ProviderRecordSource
from infrastructure.payments.base import DEFAULT_TIMEOUT, HttpGateway

logger = logging.getLogger(__name__)

FIELD_LIMIT = 127


class PayPalOrder(BaseModel):
    order_id: str
    approval_url: Optional[str] = None
    status: Optional[str] = None


def pack_custom_id(reservation: Reservation) -> str:
    return "|".join([
        reservation.stay.check_in.isoformat(),
        reservation.stay.check_out.isoformat(),
        str(reservation.guests.adults),
        str(reservation.guests.children),
        str(reservation.total_amount.amount_minor),
        reservation.total_amount.currency,
    ])[:FIELD_LIMIT]


def format_amount(amount_minor: int) -> str:
    return f"{Decimal(amount_minor) / 100:.2f}"


def pack_purchase_unit(reservation: Reservation) -> Dict[str, Any]:
    """Build the purchase unit that carries the reservation"""
    guest = reservation.guest
    if len(guest.email) > FIELD_LIMIT:
        raise PaymentProviderError(
            "paypal", f"Guest email is longer than {FIELD_LIMIT} characters and cannot be stored on the order"
        )

    money = {
        "currency_code": reservation.total_amount.currency,
        "value": format_amount(reservation.total_amount.amount_minor),
    }
    item: Dict[str, Any] = {
        "name": guest.name[:FIELD_LIMIT],
        "sku": guest.email,
        "quantity": "1",
        "unit_amount": money,
    }
    if guest.phone:
        item["description"] = guest.phone[:FIELD_LIMIT]

    unit: Dict[str, Any] = {
        "reference_id": str(reservation.reservation_id),
        "custom_id": pack_custom_id(reservation),
        "amount": {**money, "breakdown": {"item_total": dict(money)}},
        "items": [item],
    }
    if reservation.special_requests:
        unit["description"] = reservation.special_requests[:FIELD_LIMIT]
    return unit


def order_state(order: Dict[str, Any]) -> ProviderPaymentState:
    status = (order.get("status") or "").upper()
    if status == "COMPLETED":
        return ProviderPaymentState.PAID
    if status == "VOIDED":
        return ProviderPaymentState.EXPIRED
    return ProviderPaymentState.OPEN


def unpack_order_metadata(order: Dict[str, Any]) -> Dict[str, str]:
    units = order.get("purchase_units") or [{}]
    unit = units[0] or {}
    items = unit.get("items") or [{}]
    item = items[0] or {}
    metadata: Dict[str, str] = {}

    if unit.get("reference_id"):
        metadata["reservation_id"] = str(unit["reference_id"])

    parts = str(unit.get("custom_id") or "").split("|")
    if len(parts) >= 5:
        metadata["check_in"], metadata["check_out"] = parts[0], parts[1]
        metadata["adults"], metadata["children"] = parts[2], parts[3]
        metadata["total_amount"] = parts[4]
        if len(parts) >= 6 and parts[5]:
            metadata["currency"] = parts[5]

    name = str(item.get("name") or "")
    email = str(item.get("sku") or "")
    # Orders created without the guest item fall back to whoever paid
    payer = order.get("payer") or {}
    if not email:
        email = payer.get("email_address") or ""
    if not name:
        payer_name = payer.get("name") or {}
        name = " ".join(p for p in (payer_name.get("given_name"), payer_name.get("surname")) if p)
    if name:
        metadata["name"] = name
    if email:
        metadata["email"] = email
    if item.get("description"):
        metadata["phone"] = str(item["description"])
    if unit.get("description"):
        metadata["special_requests"] = str(unit["description"])

    return metadata


class PayPalGateway(HttpGateway, ProviderRecordSource):
    provider_name = "paypal"
    kind = PaymentProvider.PAYPAL

    def __init__(
        self,
        client_id: str,
        client_secret: str,
        api_base: str = "https://api-m.sandbox.paypal.com",
        timeout: float = DEFAULT_TIMEOUT,
        client: Optional[httpx.AsyncClient] = None
    ):
        super().__init__(api_base, timeout, client)
        self.client_id = client_id
        self.client_secret = client_secret
        self._token: Optional[str] = None
        self._token_expires_at = 0.0

    def is_configured(self) -> bool:
        return bool(self.client_id and self.client_secret)

    async def _access_token(self) -> str:
        if not self.is_configured():
            raise PaymentProviderError(self.provider_name, "PayPal is not configured")
        if self._token and time.monotonic() < self._token_expires_at:
            return self._token

        resp = await self._send(
            "POST",
            "/v1/oauth2/token",
            data={"grant_type": "client_credentials"},
            auth=(self.client_id, self.client_secret),
        )
        self._raise_for_status(resp, "Cannot obtain access token")
        body = self._json(resp)
        token = body.get("access_token")
        if not token:
            raise PaymentProviderError(self.provider_name, "Token response has no access_token")

        self._token = token
        # refresh a minute early
        self._token_expires_at = time.monotonic() + max(0, int(body.get("expires_in", 0)) - 60)
        return token

    async def _headers(self) -> Dict[str, str]:
        token = await self._access_token()
        return {"Authorization": f"Bearer {token}", "Content-Type": "application/json"}

    # ==================== ORDERS ====================
    async def create_order(
        self,
        reservation: Reservation,
        return_url: str,
        cancel_url: str,
        brand_name: str = ""
    ) -> PayPalOrder:
        payload = {
            "intent": "CAPTURE",
            "purchase_units": [pack_purchase_unit(reservation)],
            "application_context": {
                "brand_name": brand_name[:FIELD_LIMIT],
                "user_action": "PAY_NOW",
                "shipping_preference": "NO_SHIPPING",
                "return_url": return_url,
                "cancel_url": cancel_url,
            },
        }

        resp = await self._send("POST", "/v2/checkout/orders", json=payload, headers=await self._headers())
        self._raise_for_status(resp, "Cannot create order")
        body = self._json(resp)
        if not body.get("id"):
            raise PaymentProviderError(self.provider_name, "Order response has no id")

        approval_url = next(
            (link.get("href") for link in body.get("links", []) if link.get("rel") in ("approve", "payer-action")),
            None,
        )
        logger.info("Created PayPal order %s for reservation %s", body["id"], reservation.reservation_id)
        return PayPalOrder(order_id=body["id"], approval_url=approval_url, status=body.get("status"))

    async def get_order(self, order_id: str) -> Dict[str, Any]:
        resp = await self._send("GET", f"/v2/checkout/orders/{order_id}", headers=await self._headers())
        self._raise_for_status(resp, f"Cannot read order {order_id}")
        return self._json(resp)

    async def capture_order(self, order_id: str) -> Dict[str, Any]:
        """Capture an approved order. An order captured earlier is read back instead."""
        resp = await self._send("POST", f"/v2/checkout/orders/{order_id}/capture", headers=await self._headers())
        if resp.is_success:
            return self._json(resp)

        issue = self._issue(resp)
        if issue == "ORDER_ALREADY_CAPTURED":
            logger.info("PayPal order %s was already captured, reading it back", order_id)
            return await self.get_order(order_id)
        if issue in ("ORDER_NOT_APPROVED", "PAYER_ACTION_REQUIRED", "INSTRUMENT_DECLINED"):
            raise PaymentNotCompletedError(f"PayPal order {order_id} cannot be captured: {issue}")

        self._raise_for_status(resp, f"Cannot capture order {order_id}")
        return {}

    async def fetch_record(self, reference: str) -> Optional[ProviderRecord]:
        try:
            order = await self.get_order(reference)
        except PaymentProviderError as e:
            if e.status_code == 404:
                return None
            raise
        return self.record_from_order(order)

    @staticmethod
    def record_from_order(order: Dict[str, Any]) -> ProviderRecord:
        units = order.get("purchase_units") or [{}]
        amount = (units[0] or {}).get("amount") or {}
        amount_minor = None
        if amount.get("value"):
            amount_minor = int((Decimal(str(amount["value"])) * 100).to_integral_value())

        return ProviderRecord(
            kind=PaymentProvider.PAYPAL,
            reference=str(order.get("id", "")),
            state=order_state(order),
            metadata=unpack_order_metadata(order),
            amount_minor=amount_minor,
            currency=amount.get("currency_code"),
        )

    def _issue(self, resp: httpx.Response) -> Optional[str]:
        try:
            body = resp.json()
        except ValueError:
            return None
        details = body.get("details") if isinstance(body, dict) else None
        if details and isinstance(details, list):
            return details[0].get("issue")
        return None
