"""Reservation ledger over a ranked list of stores.

Writes go to every store and succeed when at least one store accepts them;
each write raises the reservation's version. Reads ask every reachable
store and keep the highest version of each reservation, so a store that
missed a write can never answer with its stale copy. Stores found behind are
repaired on the spot. Only when no store is reachable does an operation fail,
with LedgerUnavailableError.
"""
import logging
from typing import Awaitable, Callable, Dict, List, Optional, Sequence, Tuple, Union
from uuid import UUID

from domain.entities import Reservation
from domain.enums import PaymentProvider, ReservationStatus
from domain.exceptions import LedgerUnavailableError, ReservationNotFound, StoreUnavailableError
from domain.repositories import ReservationRepository

logger = logging.getLogger(__name__)

Found = Union[None, Reservation, List[Reservation]]


class ReservationLedger:

    def __init__(self, stores: Sequence[ReservationRepository]):
        if not stores:
            raise ValueError("ReservationLedger needs at least one store")
        self.stores: List[ReservationRepository] = list(stores)

    # ==================== WRITES ====================
    async def create(self, reservation: Reservation) -> Reservation:
        """Record a new reservation; it always starts out PENDING"""
        if reservation.status != ReservationStatus.PENDING:
            reservation = reservation.model_copy(update={"status": ReservationStatus.PENDING})
        return await self._write(reservation)

    async def save(self, reservation: Reservation) -> Reservation:
        return await self._write(reservation)

    async def restore(self, reservation: Reservation) -> Reservation:
        """Write back a reservation rebuilt from a payment provider's record"""
        logger.info(
            "Restoring reservation %s (%s) from %s %s",
            reservation.reservation_id,
            reservation.status.value,
            reservation.provider.kind.value if reservation.provider else "?",
            reservation.provider.reference if reservation.provider else "?",
        )
        return await self._write(reservation)

    async def set_status(
        self,
        reservation_id: UUID,
        status: ReservationStatus,
        reason: Optional[str] = None
    ) -> Reservation:
        reservation = await self.get(reservation_id)
        if reservation is None:
            raise ReservationNotFound(str(reservation_id))

        if reservation.transition_to(status, reason):
            await self._write(reservation)
        return reservation

    # ==================== READS ====================
    async def get(self, reservation_id: UUID) -> Optional[Reservation]:
        found = await self._read("get", lambda store: store.find_by_id(reservation_id))
        return found[0] if found else None

    async def get_by_provider_reference(self, kind: PaymentProvider, reference: str) -> Optional[Reservation]:
        found = await self._read(
            "get_by_provider_reference",
            lambda store: store.find_by_provider_reference(kind, reference),
        )
        return found[0] if found else None

    async def list_all(self) -> List[Reservation]:
        return await self._read("list_all", lambda store: store.find_all())

    async def list_confirmed(self) -> List[Reservation]:
        return [r for r in await self.list_all() if r.status == ReservationStatus.CONFIRMED]

    async def list_pending(self) -> List[Reservation]:
        return [r for r in await self.list_all() if r.status == ReservationStatus.PENDING]

    # ==================== STORE FAN-OUT ====================
    async def _write(self, reservation: Reservation) -> Reservation:
        reservation.version += 1
        accepted = 0
        for store in self.stores:
            try:
                await store.save(reservation)
                accepted += 1
            except StoreUnavailableError as e:
                logger.warning("Store %s rejected reservation %s: %s", store.name, reservation.reservation_id, e)

        if accepted == 0:
            logger.error("No store accepted reservation %s", reservation.reservation_id)
            raise LedgerUnavailableError(f"No reservation store accepted {reservation.reservation_id}")
        return reservation

    async def _read(self, operation: str, call: Callable[[ReservationRepository], Awaitable[Found]]) -> List[Reservation]:
        answers: List[Tuple[ReservationRepository, List[Reservation]]] = []
        for store in self.stores:
            try:
                found = await call(store)
            except StoreUnavailableError as e:
                logger.warning("Store %s unavailable for %s, skipping it: %s", store.name, operation, e)
                continue
            if found is None:
                found = []
            elif isinstance(found, Reservation):
                found = [found]
            answers.append((store, found))

        if not answers:
            logger.error("No reservation store reachable for %s", operation)
            raise LedgerUnavailableError(f"No reservation store reachable for {operation}")
        return await self._merge(operation, answers)

    async def _merge(
        self,
        operation: str,
        answers: List[Tuple[ReservationRepository, List[Reservation]]]
    ) -> List[Reservation]:
        """Keep the highest version of each reservation and write it back to
        every reachable store that answered with an older copy or none"""
        freshest: Dict[UUID, Reservation] = {}
        for _, found in answers:
            for reservation in found:
                current = freshest.get(reservation.reservation_id)
                if current is None or reservation.version > current.version:
                    freshest[reservation.reservation_id] = reservation

        for store, found in answers:
            held = {r.reservation_id: r.version for r in found}
            for reservation_id, reservation in freshest.items():
                if held.get(reservation_id, 0) < reservation.version:
                    await self._repair(store, reservation, operation)
        return list(freshest.values())

    async def _repair(self, store: ReservationRepository, reservation: Reservation, operation: str) -> None:
        try:
            await store.save(reservation)
        except StoreUnavailableError as e:
            logger.warning("Store %s could not be repaired with reservation %s: %s",
                           store.name, reservation.reservation_id, e)
            return
        logger.info("Store %s was behind on reservation %s, repaired to version %d during %s",
                    store.name, reservation.reservation_id, reservation.version, operation)
