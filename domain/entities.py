"""Domain Entities - Aggregates"""
from pydantic import BaseModel, ConfigDict, Field
from uuid import UUID, uuid4
from datetime import datetime, date, timedelta, timezone
from typing import Optional

from domain.enums import ReservationStatus, PaymentProvider, DIRECT_SOURCE, HOLD_SOURCE
from domain.exceptions import InvalidStatusTransition, ReservationValidationError
from domain.pricing import PricingConfig
from domain.value_objects import BlockedRange, GuestContact, GuestCount, Money, ProviderReference, StayDates


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Reservation(BaseModel):
    """Reservation Aggregate Root Entity"""

    # Identity
    reservation_id: UUID = Field(default_factory=uuid4)

    # Value Objects
    stay: StayDates
    guest: GuestContact
    guests: GuestCount
    total_amount: Money
    special_requests: Optional[str] = None

    # Payment
    provider: Optional[ProviderReference] = None

    # Lifecycle
    status: ReservationStatus = ReservationStatus.PENDING
    hold_expires_at: Optional[datetime] = None
    confirmed_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    cancellation_reason: Optional[str] = None
    restored_from_provider: bool = False

    # Metadata
    created_at: datetime = Field(default_factory=utcnow)
    modified_at: datetime = Field(default_factory=utcnow)
    version: int = 1

    model_config = ConfigDict(from_attributes=True)

    # ==================== FACTORY METHOD ====================
    @staticmethod
    def create(
        stay: StayDates,
        guest: GuestContact,
        guests: GuestCount,
        total_amount: Money,
        pricing: PricingConfig,
        special_requests: Optional[str] = None,
        hold_for: Optional[timedelta] = None,
        today: Optional[date] = None,
        now: Optional[datetime] = None
    ) -> "Reservation":
        """Create new pending reservation with validation"""
        Reservation.validate_stay(stay, pricing, today or date.today())
        Reservation.validate_guests(guests, pricing)
        if total_amount.amount_minor <= 0:
            raise ReservationValidationError("Amount must be greater than 0")

        now = now or utcnow()
        return Reservation(
            stay=stay,
            guest=guest,
            guests=guests,
            total_amount=total_amount,
            special_requests=(special_requests or None),
            status=ReservationStatus.PENDING,
            hold_expires_at=(now + hold_for) if hold_for else None,
            created_at=now,
            modified_at=now,
        )

    # ==================== STATE TRANSITION METHODS ====================
    def attach_provider(self, kind: PaymentProvider, reference: str) -> None:
        """Record the checkout session / order created for this reservation"""
        if self.provider and self.provider.reference != reference:
            raise InvalidStatusTransition(
                f"Reservation {self.reservation_id} is already financed by {self.provider.kind.value} {self.provider.reference}"
            )
        self.provider = ProviderReference(kind=kind, reference=reference)
        self._touch()

    def confirm(self, now: Optional[datetime] = None) -> bool:
        """Promote to CONFIRMED. Returns False when it already was."""
        if self.status == ReservationStatus.CONFIRMED:
            return False
        if self.status != ReservationStatus.PENDING:
            raise InvalidStatusTransition(
                f"Cannot confirm reservation with status {self.status.value}"
            )

        self.status = ReservationStatus.CONFIRMED
        self.confirmed_at = now or utcnow()
        self.hold_expires_at = None
        self._touch()
        return True

    def cancel(self, reason: str, now: Optional[datetime] = None) -> bool:
        """Cancel reservation. Returns False when it already was."""
        if self.status == ReservationStatus.CANCELLED:
            return False

        self.status = ReservationStatus.CANCELLED
        self.cancelled_at = now or utcnow()
        self.cancellation_reason = reason
        self.hold_expires_at = None
        self._touch()
        return True

    def transition_to(self, status: ReservationStatus, reason: Optional[str] = None) -> bool:
        if status == ReservationStatus.CONFIRMED:
            return self.confirm()
        if status == ReservationStatus.CANCELLED:
            return self.cancel(reason or "cancelled")
        if self.status == ReservationStatus.PENDING:
            return False
        raise InvalidStatusTransition(
            f"Reservation {self.reservation_id} cannot return to {status.value}"
        )

    # ==================== QUERY METHODS ====================
    def is_confirmed(self) -> bool:
        return self.status == ReservationStatus.CONFIRMED

    def is_hold_active(self, now: Optional[datetime] = None) -> bool:
        """Pending reservation still reserving its dates while payment is underway"""
        if self.status != ReservationStatus.PENDING or self.hold_expires_at is None:
            return False
        return (now or utcnow()) < self.hold_expires_at

    def to_blocked_range(self) -> BlockedRange:
        return BlockedRange(
            start=self.stay.check_in,
            end=self.stay.last_night,
            source=HOLD_SOURCE if self.status == ReservationStatus.PENDING else DIRECT_SOURCE,
            external_id=str(self.reservation_id),
            label="Booked",
        )

    def get_nights(self) -> int:
        """Get number of nights"""
        return self.stay.nights()

    # ==================== VALIDATION METHODS ====================
    @staticmethod
    def validate_stay(stay: StayDates, pricing: PricingConfig, today: date) -> None:
        """Validate date range business rules"""
        if stay.check_in < today:
            raise ReservationValidationError("Check-in date must be today or later")

        nights = stay.nights()
        if nights < pricing.min_nights:
            raise ReservationValidationError(f"Minimum stay is {pricing.min_nights} nights")
        if nights > pricing.max_nights:
            raise ReservationValidationError(f"Maximum stay is {pricing.max_nights} nights")

    @staticmethod
    def validate_guests(guests: GuestCount, pricing: PricingConfig) -> None:
        """Validate guest count business rules"""
        if guests.adults < 1:
            raise ReservationValidationError("At least one adult is required")
        if guests.total > pricing.max_guests:
            raise ReservationValidationError(f"Maximum {pricing.max_guests} guests allowed")

    def _touch(self) -> None:
        self.modified_at = utcnow()
        self.version += 1
