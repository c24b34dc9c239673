"""Processed-event registry for provider callbacks (webhook event ids).

Rows live in the ``processed_events`` table next to the reservations, so a
replay is still recognised after a restart. Each row expires after the TTL;
expired rows are purged on the next write.
"""
import logging
import time

from sqlalchemy import Column, Float, String, delete, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine

from infrastructure.repositories.sql_repository import Base, get_engine, get_session

logger = logging.getLogger(__name__)

DEFAULT_TTL_SECONDS = 86400


class ProcessedEventRecord(Base):
    __tablename__ = "processed_events"

    key = Column(String(255), primary_key=True)
    expires_at = Column(Float, nullable=False, index=True)  # unix seconds


class IdempotencyStore:
    """Remembers processed event ids for ``ttl_seconds``.

    The registry only saves work: every handler behind it must stay safe to
    run twice. A database failure is logged and treated as "not processed".
    """

    def __init__(self, engine: AsyncEngine, ttl_seconds: int = DEFAULT_TTL_SECONDS):
        self.engine = engine
        self.ttl_seconds = ttl_seconds
        self._session = get_session(engine)
        self._schema_ready = False

    @classmethod
    def from_url(cls, database_url: str, ttl_seconds: int = DEFAULT_TTL_SECONDS) -> "IdempotencyStore":
        return cls(get_engine(database_url), ttl_seconds)

    async def init_schema(self) -> None:
        async with self.engine.begin() as conn:
            await conn.run_sync(ProcessedEventRecord.__table__.create, checkfirst=True)
        self._schema_ready = True

    async def dispose(self) -> None:
        await self.engine.dispose()

    async def _ready(self) -> None:
        if not self._schema_ready:
            await self.init_schema()

    @staticmethod
    def _key(event_id: str) -> str:
        return f"event:{event_id}"

    async def is_processed(self, event_id: str) -> bool:
        try:
            await self._ready()
            async with self._session() as session:
                expires_at = await session.scalar(
                    select(ProcessedEventRecord.expires_at).where(ProcessedEventRecord.key == self._key(event_id))
                )
        except SQLAlchemyError as e:
            logger.warning("Idempotency lookup for %s failed, handling it as new: %s", event_id, e)
            return False
        return expires_at is not None and expires_at > time.time()

    async def mark_processed(self, event_id: str) -> None:
        now = time.time()
        try:
            await self._ready()
            async with self._session() as session:
                await session.execute(delete(ProcessedEventRecord).where(ProcessedEventRecord.expires_at <= now))
                await session.merge(ProcessedEventRecord(key=self._key(event_id), expires_at=now + self.ttl_seconds))
                await session.commit()
        except SQLAlchemyError as e:
            logger.warning("Cannot record event %s as processed: %s", event_id, e)

    async def forget(self, event_id: str) -> None:
        try:
            await self._ready()
            async with self._session() as session:
                await session.execute(delete(ProcessedEventRecord).where(ProcessedEventRecord.key == self._key(event_id)))
                await session.commit()
        except SQLAlchemyError as e:
            logger.warning("Cannot forget event %s: %s", event_id, e)
