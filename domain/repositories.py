"""Domain Repository Interfaces"""
from abc import ABC, abstractmethod
from typing import Optional, List
from uuid import UUID

from domain.entities import Reservation
from domain.enums import PaymentProvider
from domain.provider_records import ProviderRecord


class ReservationRepository(ABC):
    """Repository interface for Reservation Aggregate.

    Implementations raise StoreUnavailableError when the backing store
    cannot be reached, so callers can fall through to another store.
    """

    name: str = "store"

    @abstractmethod
    async def save(self, reservation: Reservation) -> Reservation:
        """Insert or replace reservation"""
        pass

    @abstractmethod
    async def find_by_id(self, reservation_id: UUID) -> Optional[Reservation]:
        """Find reservation by ID"""
        pass

    @abstractmethod
    async def find_by_provider_reference(self, kind: PaymentProvider, reference: str) -> Optional[Reservation]:
        """Find reservation by checkout session / order reference"""
        pass

    @abstractmethod
    async def find_all(self) -> List[Reservation]:
        """Find all reservations"""
        pass


class ProviderRecordSource(ABC):
    """A payment provider seen as a remote, authoritative copy of the
    reservation data it was given when the checkout/order was created."""

    kind: PaymentProvider

    @abstractmethod
    async def fetch_record(self, reference: str) -> Optional[ProviderRecord]:
        """Return the provider's stored record, or None if it does not exist"""
        pass
