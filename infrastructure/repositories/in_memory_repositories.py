"""In-Memory Repository Implementations"""
from typing import Optional, List, Dict
from uuid import UUID

from domain.repositories import ReservationRepository
from domain.entities import Reservation
from domain.enums import PaymentProvider


class InMemoryReservationRepository(ReservationRepository):
    """In-memory implementation of ReservationRepository.

    Stores and hands out copies, so callers never share state with the store.
    """

    name = "memory"

    def __init__(self):
        self._storage: Dict[UUID, Reservation] = {}

    async def save(self, reservation: Reservation) -> Reservation:
        """Save reservation to memory"""
        self._storage[reservation.reservation_id] = reservation.model_copy(deep=True)
        return reservation

    async def find_by_id(self, reservation_id: UUID) -> Optional[Reservation]:
        """Find reservation by ID"""
        found = self._storage.get(reservation_id)
        return found.model_copy(deep=True) if found else None

    async def find_by_provider_reference(self, kind: PaymentProvider, reference: str) -> Optional[Reservation]:
        """Find reservation by checkout session / order reference"""
        for reservation in self._storage.values():
            if reservation.provider and reservation.provider.kind == kind and reservation.provider.reference == reference:
                return reservation.model_copy(deep=True)
        return None

    async def find_all(self) -> List[Reservation]:
        """Find all reservations"""
        return [r.model_copy(deep=True) for r in self._storage.values()]

    async def delete(self, reservation_id: UUID) -> bool:
        """Drop a reservation from the mirror; True if it was there"""
        return self._storage.pop(reservation_id, None) is not None
