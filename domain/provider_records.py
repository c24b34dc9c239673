"""Reservation data embedded in a payment provider's checkout/order.

Every field needed to rebuild a reservation is written into the provider
object when it is created, so the provider keeps a durable copy of the
reservation it finances.
"""
from datetime import date, datetime
from typing import Dict, Optional
from uuid import UUID

from pydantic import BaseModel, Field

from domain.entities import Reservation, utcnow
from domain.enums import PaymentProvider, ProviderPaymentState, ReservationStatus
from domain.value_objects import GuestContact, GuestCount, Money, ProviderReference, StayDates

METADATA_FIELDS = (
    "reservation_id",
    "check_in",
    "check_out",
    "name",
    "email",
    "phone",
    "adults",
    "children",
    "special_requests",
    "total_amount",
    "currency",
)
REQUIRED_FIELDS = ("reservation_id", "check_in", "check_out", "name", "email", "adults", "total_amount")


class ProviderRecord(BaseModel):
    kind: PaymentProvider
    reference: str
    state: ProviderPaymentState
    metadata: Dict[str, str] = Field(default_factory=dict)
    amount_minor: Optional[int] = None
    currency: Optional[str] = None


class IncompleteProviderRecord(ValueError):
    pass


def reservation_metadata(reservation: Reservation) -> Dict[str, str]:
    """Flatten a reservation into provider metadata (string values only)"""
    return {
        "reservation_id": str(reservation.reservation_id),
        "check_in": reservation.stay.check_in.isoformat(),
        "check_out": reservation.stay.check_out.isoformat(),
        "name": reservation.guest.name,
        "email": reservation.guest.email,
        "phone": reservation.guest.phone or "",
        "adults": str(reservation.guests.adults),
        "children": str(reservation.guests.children),
        "special_requests": reservation.special_requests or "",
        "total_amount": str(reservation.total_amount.amount_minor),
        "currency": reservation.total_amount.currency,
    }


def status_for_state(state: ProviderPaymentState) -> ReservationStatus:
    if state == ProviderPaymentState.PAID:
        return ReservationStatus.CONFIRMED
    if state == ProviderPaymentState.EXPIRED:
        return ReservationStatus.CANCELLED
    return ReservationStatus.PENDING


def reservation_from_record(record: ProviderRecord, now: Optional[datetime] = None) -> Reservation:
    """Rebuild the reservation a provider record was created for"""
    meta = record.metadata
    missing = [f for f in REQUIRED_FIELDS if not meta.get(f)]
    if missing:
        raise IncompleteProviderRecord(
            f"{record.kind.value} {record.reference} metadata is missing {', '.join(missing)}"
        )

    now = now or utcnow()
    status = status_for_state(record.state)
    try:
        amount_minor = int(meta["total_amount"])
        return Reservation(
            reservation_id=UUID(meta["reservation_id"]),
            stay=StayDates(
                check_in=date.fromisoformat(meta["check_in"]),
                check_out=date.fromisoformat(meta["check_out"]),
            ),
            guest=GuestContact(name=meta["name"], email=meta["email"], phone=meta.get("phone") or None),
            guests=GuestCount(adults=int(meta["adults"]), children=int(meta.get("children") or 0)),
            total_amount=Money(
                amount_minor=amount_minor,
                currency=(meta.get("currency") or record.currency or "EUR").upper(),
            ),
            special_requests=meta.get("special_requests") or None,
            provider=ProviderReference(kind=record.kind, reference=record.reference),
            status=status,
            confirmed_at=now if status == ReservationStatus.CONFIRMED else None,
            cancelled_at=now if status == ReservationStatus.CANCELLED else None,
            cancellation_reason="payment expired" if status == ReservationStatus.CANCELLED else None,
            restored_from_provider=True,
            created_at=now,
            modified_at=now,
        )
    except ValueError as e:
        raise IncompleteProviderRecord(
            f"{record.kind.value} {record.reference} metadata is invalid: {e}"
        ) from e
