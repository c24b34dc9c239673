"""SQLAlchemy (async) reservation store"""
import logging
from typing import Optional, List
from uuid import UUID

from sqlalchemy import Column, Date, DateTime, Integer, String, Text, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine, async_sessionmaker
from sqlalchemy.orm import declarative_base
from sqlalchemy.pool import StaticPool

from domain.entities import Reservation
from domain.enums import PaymentProvider
from domain.exceptions import StoreUnavailableError
from domain.repositories import ReservationRepository

logger = logging.getLogger(__name__)

Base = declarative_base()


class ReservationRecord(Base):
    __tablename__ = "reservations"

    id = Column(Integer, primary_key=True)
    reservation_id = Column(String(36), unique=True, nullable=False, index=True)

    provider_kind = Column(String(16), nullable=True, index=True)
    provider_reference = Column(String(255), nullable=True, index=True)

    status = Column(String(16), nullable=False, index=True)  # PENDING/CONFIRMED/CANCELLED
    check_in = Column(Date, nullable=False)
    check_out = Column(Date, nullable=False)
    guest_email = Column(String(320), nullable=False)

    modified_at = Column(DateTime(timezone=True), nullable=False)
    payload = Column(Text, nullable=False)


def get_engine(database_url: str) -> AsyncEngine:
    if ":memory:" in database_url:
        # One shared connection, otherwise every session sees an empty database
        return create_async_engine(
            database_url,
            echo=False,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )
    return create_async_engine(database_url, echo=False, future=True)


def get_session(engine: AsyncEngine):
    return async_sessionmaker(bind=engine, expire_on_commit=False)


class SqlAlchemyReservationRepository(ReservationRepository):
    """Durable store. Any database failure surfaces as StoreUnavailableError."""

    name = "sql"

    def __init__(self, engine: AsyncEngine):
        self.engine = engine
        self._session = get_session(engine)

    @classmethod
    def from_url(cls, database_url: str) -> "SqlAlchemyReservationRepository":
        return cls(get_engine(database_url))

    async def init_schema(self) -> None:
        try:
            async with self.engine.begin() as conn:
                await conn.run_sync(Base.metadata.create_all)
        except SQLAlchemyError as e:
            raise StoreUnavailableError(f"Cannot create reservation schema: {e}") from e

    async def dispose(self) -> None:
        await self.engine.dispose()

    async def save(self, reservation: Reservation) -> Reservation:
        try:
            async with self._session() as session:
                res = await session.execute(
                    select(ReservationRecord).where(
                        ReservationRecord.reservation_id == str(reservation.reservation_id)
                    )
                )
                record = res.scalar_one_or_none()
                if record is None:
                    record = ReservationRecord(reservation_id=str(reservation.reservation_id))
                    session.add(record)
                self._fill(record, reservation)
                await session.commit()
        except SQLAlchemyError as e:
            raise StoreUnavailableError(f"Cannot save reservation {reservation.reservation_id}: {e}") from e
        return reservation

    async def find_by_id(self, reservation_id: UUID) -> Optional[Reservation]:
        return await self._find_one(ReservationRecord.reservation_id == str(reservation_id))

    async def find_by_provider_reference(self, kind: PaymentProvider, reference: str) -> Optional[Reservation]:
        return await self._find_one(
            ReservationRecord.provider_kind == kind.value,
            ReservationRecord.provider_reference == reference,
        )

    async def find_all(self) -> List[Reservation]:
        try:
            async with self._session() as session:
                res = await session.execute(select(ReservationRecord).order_by(ReservationRecord.id))
                records = res.scalars().all()
        except SQLAlchemyError as e:
            raise StoreUnavailableError(f"Cannot list reservations: {e}") from e
        return [self._to_entity(r) for r in records]

    async def _find_one(self, *criteria) -> Optional[Reservation]:
        try:
            async with self._session() as session:
                res = await session.execute(select(ReservationRecord).where(*criteria))
                record = res.scalars().first()
        except SQLAlchemyError as e:
            raise StoreUnavailableError(f"Cannot read reservation: {e}") from e
        return self._to_entity(record) if record else None

    @staticmethod
    def _fill(record: ReservationRecord, reservation: Reservation) -> None:
        record.provider_kind = reservation.provider.kind.value if reservation.provider else None
        record.provider_reference = reservation.provider.reference if reservation.provider else None
        record.status = reservation.status.value
        record.check_in = reservation.stay.check_in
        record.check_out = reservation.stay.check_out
        record.guest_email = reservation.guest.email
        record.modified_at = reservation.modified_at
        record.payload = reservation.model_dump_json()

    @staticmethod
    def _to_entity(record: ReservationRecord) -> Reservation:
        return Reservation.model_validate_json(record.payload)
