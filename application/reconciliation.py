"""Payment Reconciler - turns provider-confirmed payments into confirmed stays.

Both providers funnel into one confirmation path:

* Stripe tells us asynchronously through a signed webhook;
* PayPal tells us synchronously when the capture call returns.

The provider is also treated as a read-through copy of the reservation: when
the ledger has no record for a reference, the reservation is rebuilt from
the metadata stored with the checkout session / order and written back.
"""
import asyncio
import logging
import weakref
from datetime import datetime, time, timedelta, timezone
from typing import Any, Dict, Optional, Tuple
from uuid import UUID

from pydantic import BaseModel

from application.availability import AvailabilityIndex
from domain.entities import Reservation, utcnow
from domain.enums import CancellationActor, PaymentProvider, ProviderPaymentState, ReservationStatus
from domain.exceptions import (
    DoubleBookingError,
    PaymentInconsistencyError,
    PaymentNotCompletedError,
    PaymentProviderError,
    ReservationNotFound,
)
from domain.provider_records import IncompleteProviderRecord, ProviderRecord, reservation_from_record
from domain.repositories import ProviderRecordSource
from infrastructure.idempotency import IdempotencyStore
from infrastructure.notifications import NotificationDispatcher
from infrastructure.payments.paypal_gateway import PayPalGateway
from infrastructure.payments.stripe_gateway import StripeGateway
from infrastructure.repositories.ledger import ReservationLedger

logger = logging.getLogger(__name__)

DOUBLE_BOOKING_REASON = "double-booking"
EXPIRED_REASON = "payment expired"
DOUBLE_BOOKING_MESSAGE = (
    "These dates were booked by someone else while your payment was processed. "
    "Please contact support for a refund."
)
PRE_ARRIVAL_HOUR = time(9, 0, tzinfo=timezone.utc)


class ConfirmationOutcome(BaseModel):
    reservation: Reservation
    already_confirmed: bool = False
    restored: bool = False


class WebhookResult(BaseModel):
    event_id: Optional[str] = None
    event_type: Optional[str] = None
    action: str
    reservation_id: Optional[str] = None


class PaymentReconciler:

    def __init__(
        self,
        ledger: ReservationLedger,
        availability: AvailabilityIndex,
        notifier: NotificationDispatcher,
        stripe: Optional[StripeGateway] = None,
        paypal: Optional[PayPalGateway] = None,
        idempotency: Optional[IdempotencyStore] = None,
        booking_lock: Optional[asyncio.Lock] = None,
        pre_arrival_lead_days: int = 3
    ):
        self.ledger = ledger
        self.availability = availability
        self.notifier = notifier
        self.stripe = stripe
        self.paypal = paypal
        self.idempotency = idempotency
        self.booking_lock = booking_lock or asyncio.Lock()
        self.pre_arrival_lead_days = pre_arrival_lead_days
        self.sources: Dict[PaymentProvider, ProviderRecordSource] = {
            gateway.kind: gateway for gateway in (stripe, paypal) if gateway is not None
        }
        self._locks: "weakref.WeakValueDictionary[Tuple[PaymentProvider, str], asyncio.Lock]" = (
            weakref.WeakValueDictionary()
        )

    def _lock_for(self, provider: PaymentProvider, reference: str) -> asyncio.Lock:
        # An entry lives only while some coroutine holds or awaits its lock
        key = (provider, reference)
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        return lock

    # ==================== CONFIRMATION ====================
    async def confirm(
        self,
        reference: str,
        provider: PaymentProvider,
        payload: Optional[ProviderRecord] = None,
        now: Optional[datetime] = None
    ) -> ConfirmationOutcome:
        """Promote the reservation paid through `reference` to CONFIRMED, once"""
        async with self._lock_for(provider, reference):
            return await self._confirm_locked(reference, provider, payload, now)

    async def _confirm_locked(
        self,
        reference: str,
        provider: PaymentProvider,
        payload: Optional[ProviderRecord],
        now: Optional[datetime]
    ) -> ConfirmationOutcome:
        now = now or utcnow()
        reservation, restored = await self._resolve(provider, reference, payload, paid=True)

        if reservation.status == ReservationStatus.CONFIRMED:
            logger.info("Reservation %s already confirmed via %s %s", reservation.reservation_id, provider.value, reference)
            return ConfirmationOutcome(reservation=reservation, already_confirmed=True)

        if reservation.status == ReservationStatus.CANCELLED:
            if reservation.cancellation_reason == DOUBLE_BOOKING_REASON:
                # the owner was alerted when this reservation was cancelled
                raise DoubleBookingError(str(reservation.reservation_id), DOUBLE_BOOKING_MESSAGE)
            raise await self._inconsistency(
                provider, reference,
                f"payment succeeded for cancelled reservation {reservation.reservation_id} "
                f"({reservation.cancellation_reason})",
            )

        # Feeds are refreshed before taking the booking lock so no network call happens under it
        await self.availability.refresh_feeds()
        async with self.booking_lock:
            conflicts = await self.availability.conflicts_for(
                reservation.stay, exclude_id=reservation.reservation_id, refresh=False
            )
            if conflicts:
                await self._cancel_double_booking(reservation, provider, reference, conflicts, now)

            reservation.confirm(now)
            await self.ledger.save(reservation)

        logger.info("Reservation %s confirmed via %s %s", reservation.reservation_id, provider.value, reference)
        await self._after_confirmation(reservation, now)
        return ConfirmationOutcome(reservation=reservation, restored=restored)

    async def _cancel_double_booking(self, reservation, provider, reference, conflicts, now) -> None:
        reservation.cancel(DOUBLE_BOOKING_REASON, now)
        await self.ledger.save(reservation)

        overlapping = ", ".join(f"{b.source} {b.start}..{b.end}" for b in conflicts)
        logger.error(
            "Double booking: reservation %s (%s..%s) paid via %s %s overlaps %s",
            reservation.reservation_id, reservation.stay.check_in, reservation.stay.check_out,
            provider.value, reference, overlapping,
        )
        await self.notifier.send(self.notifier.for_owner_alert(
            "double booking, refund required",
            {
                "reservation_id": str(reservation.reservation_id),
                "provider": provider.value,
                "reference": reference,
                "check_in": reservation.stay.check_in.isoformat(),
                "check_out": reservation.stay.check_out.isoformat(),
                "email": reservation.guest.email,
                "overlaps": overlapping,
            },
        ))
        raise DoubleBookingError(str(reservation.reservation_id), DOUBLE_BOOKING_MESSAGE)

    async def _after_confirmation(self, reservation: Reservation, now: datetime) -> None:
        """Confirmation e-mails and the pre-arrival reminder; never undoes the confirmation"""
        try:
            await self.notifier.send_all(self.notifier.for_confirmation(reservation))

            reminder = self.notifier.for_pre_arrival(reservation)
            remind_on = reservation.stay.check_in - timedelta(days=self.pre_arrival_lead_days)
            if remind_on <= now.date():
                await self.notifier.send(reminder)
            else:
                self.notifier.schedule(reminder, datetime.combine(remind_on, PRE_ARRIVAL_HOUR))
        except Exception:
            logger.exception("Post-confirmation effects failed for reservation %s", reservation.reservation_id)

    # ==================== LOOKUP / REBUILD ====================
    async def _resolve(
        self,
        provider: PaymentProvider,
        reference: str,
        record: Optional[ProviderRecord] = None,
        paid: bool = False
    ) -> Tuple[Reservation, bool]:
        """Find the reservation for a provider reference, rebuilding it if the ledger lost it.

        Returns (reservation, restored). When `paid`, the caller knows the
        provider took the money, so failure to produce a reservation is an
        inconsistency rather than a plain miss.
        """
        reservation = await self.ledger.get_by_provider_reference(provider, reference)
        if reservation is not None:
            return reservation, False

        if record is None or not record.metadata.get("reservation_id"):
            record = await self._fetch_record(provider, reference, paid)

        if record is None:
            if paid:
                raise await self._inconsistency(provider, reference, "provider has no record of this payment")
            raise ReservationNotFound(f"{provider.value}:{reference}")

        try:
            rebuilt = reservation_from_record(record)
        except IncompleteProviderRecord as e:
            if paid or record.state == ProviderPaymentState.PAID:
                raise await self._inconsistency(provider, reference, str(e)) from e
            logger.warning("Cannot rebuild reservation from %s %s: %s", provider.value, reference, e)
            raise ReservationNotFound(f"{provider.value}:{reference}") from e

        # The reservation may exist without its provider reference (attach failed after the provider call)
        existing = await self.ledger.get(rebuilt.reservation_id)
        if existing is not None:
            existing.attach_provider(provider, reference)
            await self.ledger.save(existing)
            return existing, False

        if paid:
            # Rebuilt as PENDING so the overlap check and confirmation effects still run
            rebuilt.status = ReservationStatus.PENDING
            rebuilt.confirmed_at = None
        await self.ledger.restore(rebuilt)
        return rebuilt, True

    async def _fetch_record(self, provider: PaymentProvider, reference: str, paid: bool) -> Optional[ProviderRecord]:
        source = self.sources.get(provider)
        if source is None:
            if paid:
                raise await self._inconsistency(provider, reference, f"{provider.value} is not configured")
            return None
        try:
            return await source.fetch_record(reference)
        except PaymentProviderError as e:
            if paid:
                raise await self._inconsistency(provider, reference, f"cannot read provider record: {e}") from e
            raise

    async def _inconsistency(self, provider: PaymentProvider, reference: str, message: str) -> PaymentInconsistencyError:
        logger.critical("PAYMENT INCONSISTENCY %s %s: %s", provider.value, reference, message)
        alert = self.notifier.for_owner_alert(
            "payment without reservation",
            {"provider": provider.value, "reference": reference, "problem": message},
        )
        await self.notifier.send(alert)
        return PaymentInconsistencyError(provider.value, reference, message)

    async def reservation_for_reference(self, provider: PaymentProvider, reference: str) -> Reservation:
        """Reservation behind a session/order, reconciled with the provider's view of the payment"""
        async with self._lock_for(provider, reference):
            reservation = await self.ledger.get_by_provider_reference(provider, reference)
            if reservation is not None and reservation.status != ReservationStatus.PENDING:
                return reservation

            try:
                record = await self._fetch_record(provider, reference, paid=False)
            except PaymentProviderError:
                if reservation is not None:
                    logger.warning("Serving local copy of %s %s, provider unreachable", provider.value, reference)
                    return reservation
                raise

            if record is None:
                if reservation is not None:
                    return reservation
                raise ReservationNotFound(f"{provider.value}:{reference}")

            if record.state == ProviderPaymentState.PAID:
                outcome = await self._confirm_locked(reference, provider, record, None)
                return outcome.reservation

            if reservation is None:
                reservation, _ = await self._resolve(provider, reference, record)
                return reservation

            if record.state == ProviderPaymentState.EXPIRED and reservation.cancel(EXPIRED_REASON):
                await self.ledger.save(reservation)
            return reservation

    async def expire(self, provider: PaymentProvider, reference: str) -> Optional[Reservation]:
        """Provider abandoned the checkout: release the pending reservation"""
        async with self._lock_for(provider, reference):
            reservation = await self.ledger.get_by_provider_reference(provider, reference)
            if reservation is None:
                logger.info("Expired %s %s has no local reservation", provider.value, reference)
                return None
            if reservation.status == ReservationStatus.PENDING:
                reservation.cancel(EXPIRED_REASON)
                await self.ledger.save(reservation)
                logger.info("Reservation %s released, %s %s expired", reservation.reservation_id, provider.value, reference)
            return reservation

    # ==================== CANCELLATION ====================
    async def cancel_by_guest(self, reservation_id: UUID, email: str, reason: Optional[str] = None) -> Reservation:
        """Guests prove ownership with the e-mail used for the booking"""
        return await self._cancel(
            reservation_id, CancellationActor.GUEST, reason or "cancelled by guest", email=(email or "").strip()
        )

    async def cancel_by_admin(self, reservation_id: UUID, reason: Optional[str] = None) -> Reservation:
        return await self._cancel(reservation_id, CancellationActor.ADMIN, reason or "cancelled by owner")

    async def _cancel(
        self,
        reservation_id: UUID,
        actor: CancellationActor,
        reason: str,
        email: Optional[str] = None
    ) -> Reservation:
        reservation = await self.ledger.get(reservation_id)
        if reservation is None or (email is not None and reservation.guest.email.lower() != email.lower()):
            raise ReservationNotFound(str(reservation_id))

        # Serialised with confirm and expire on the same reference
        if reservation.provider is None:
            return await self._cancel_locked(reservation_id, actor, reason)
        async with self._lock_for(reservation.provider.kind, reservation.provider.reference):
            return await self._cancel_locked(reservation_id, actor, reason)

    async def _cancel_locked(self, reservation_id: UUID, actor: CancellationActor, reason: str) -> Reservation:
        current = await self.ledger.get(reservation_id)
        if current is None:
            raise ReservationNotFound(str(reservation_id))
        was_confirmed = current.is_confirmed()

        reservation = await self.ledger.set_status(reservation_id, ReservationStatus.CANCELLED, reason)
        logger.info("Reservation %s cancelled by %s: %s", reservation_id, actor.value, reason)

        self.notifier.cancel_scheduled(str(reservation_id))
        if was_confirmed:
            await self.notifier.send_all(self.notifier.for_cancellation(reservation, actor))
        return reservation

    # ==================== STRIPE ====================
    async def handle_stripe_webhook(self, raw_body: bytes, signature_header: Optional[str]) -> WebhookResult:
        if self.stripe is None:
            raise PaymentProviderError("stripe", "Stripe is not configured")

        event = self.stripe.construct_event(raw_body, signature_header)
        event_id = event.get("id")
        event_type = event.get("type")

        if event_id and self.idempotency is not None and await self.idempotency.is_processed(event_id):
            logger.info("Stripe event %s already processed", event_id)
            return WebhookResult(event_id=event_id, event_type=event_type, action="duplicate")

        session: Dict[str, Any] = (event.get("data") or {}).get("object") or {}
        session_id = session.get("id")
        result = WebhookResult(event_id=event_id, event_type=event_type, action="ignored")

        if event_type in ("checkout.session.completed", "checkout.session.async_payment_succeeded") and session_id:
            if session.get("payment_status") == "paid":
                record = StripeGateway.record_from_session(session)
                try:
                    outcome = await self.confirm(session_id, PaymentProvider.STRIPE, record)
                    result.action = "already_confirmed" if outcome.already_confirmed else "confirmed"
                    result.reservation_id = str(outcome.reservation.reservation_id)
                except DoubleBookingError as e:
                    result.action = "double_booking"
                    result.reservation_id = e.reservation_id
            else:
                logger.info("Stripe session %s completed without payment (%s)", session_id, session.get("payment_status"))
        elif event_type == "checkout.session.expired" and session_id:
            reservation = await self.expire(PaymentProvider.STRIPE, session_id)
            result.action = "cancelled" if reservation is not None else "ignored"
            result.reservation_id = str(reservation.reservation_id) if reservation else None
        else:
            logger.debug("Ignoring Stripe event %s (%s)", event_id, event_type)

        if event_id and self.idempotency is not None:
            await self.idempotency.mark_processed(event_id)
        return result

    # ==================== PAYPAL ====================
    async def capture_paypal_order(self, order_id: str) -> ConfirmationOutcome:
        if self.paypal is None:
            raise PaymentProviderError("paypal", "PayPal is not configured")

        async with self._lock_for(PaymentProvider.PAYPAL, order_id):
            existing = await self.ledger.get_by_provider_reference(PaymentProvider.PAYPAL, order_id)
            if existing is not None and existing.status == ReservationStatus.CONFIRMED:
                return ConfirmationOutcome(reservation=existing, already_confirmed=True)

            order = await self.paypal.capture_order(order_id)
            status = (order.get("status") or "").upper()
            if status != "COMPLETED":
                raise PaymentNotCompletedError(f"PayPal order {order_id} is {status or 'not completed'}")

            # The capture response lacks custom_id; a rebuild reads the full order instead
            return await self._confirm_locked(order_id, PaymentProvider.PAYPAL, None, None)

