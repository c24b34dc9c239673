"""API Dependencies - wiring and admin authentication"""
import asyncio
import logging
from typing import List, Optional

from apscheduler.jobstores.memory import MemoryJobStore
from apscheduler.jobstores.sqlalchemy import SQLAlchemyJobStore
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from fastapi import Depends, Header, HTTPException, Query, status
from fastapi.security import OAuth2PasswordBearer
from jose import JWTError

from application.availability import AvailabilityIndex
from application.reconciliation import PaymentReconciler
from application.services import BookingService
from domain.repositories import ReservationRepository
from infrastructure.calendar.feed_fetcher import FeedFetcher
from infrastructure.calendar.feed_parser import FeedParser
from infrastructure.calendar.feed_publisher import FeedPublisher
from infrastructure.config import Settings, get_settings
from infrastructure.idempotency import IdempotencyStore
from infrastructure.notifications import (
    LoggingNotificationSender,
    NotificationDispatcher,
    NotificationSender,
    SmtpNotificationSender,
)
from infrastructure.payments.paypal_gateway import PayPalGateway
from infrastructure.payments.stripe_gateway import StripeGateway
from infrastructure.repositories.in_memory_repositories import InMemoryReservationRepository
from infrastructure.repositories.ledger import ReservationLedger
from infrastructure.repositories.sql_repository import SqlAlchemyReservationRepository
from infrastructure.security import AdminKeyVerifier, decode_access_token

logger = logging.getLogger(__name__)

ADMIN_SUBJECT = "admin"

oauth2_scheme = OAuth2PasswordBearer(tokenUrl="token", auto_error=False)


class Container:
    """Everything one running booking engine needs, built from Settings"""

    def __init__(
        self,
        settings: Settings,
        stores: Optional[List[ReservationRepository]] = None,
        fetcher: Optional[FeedFetcher] = None,
        sender: Optional[NotificationSender] = None,
        stripe: Optional[StripeGateway] = None,
        paypal: Optional[PayPalGateway] = None
    ):
        self.settings = settings
        self.pricing = settings.pricing_config()

        if stores is None:
            stores = [
                SqlAlchemyReservationRepository.from_url(settings.database_url),
                InMemoryReservationRepository(),
            ]
        self.stores = stores
        self.ledger = ReservationLedger(stores)

        sql_store = next((s for s in stores if isinstance(s, SqlAlchemyReservationRepository)), None)
        if sql_store is not None:
            self.idempotency = IdempotencyStore(sql_store.engine, settings.idempotency_ttl_seconds)
        else:
            self.idempotency = IdempotencyStore.from_url(settings.database_url, settings.idempotency_ttl_seconds)

        self.availability = AvailabilityIndex(
            self.ledger,
            feed_urls=settings.calendar_feed_urls,
            fetcher=fetcher or FeedFetcher(timeout=settings.feed_timeout_seconds),
            parser=FeedParser(),
        )
        self.publisher = FeedPublisher(settings.calendar_domain, settings.property_name)

        if sender is None:
            if settings.smtp_host and settings.smtp_user:
                sender = SmtpNotificationSender(
                    settings.smtp_host, settings.smtp_port, settings.smtp_user,
                    settings.smtp_password, settings.notify_from,
                )
            else:
                sender = LoggingNotificationSender()
        # Scheduled notifications persist; interval jobs on bound methods stay in memory
        self.scheduler = AsyncIOScheduler(
            jobstores={
                "default": SQLAlchemyJobStore(url=settings.scheduler_url()),
                "memory": MemoryJobStore(),
            },
            timezone="UTC",
        )
        self.notifier = NotificationDispatcher(
            sender, settings.owner_email, settings.property_name, scheduler=self.scheduler
        )

        self.stripe = stripe or StripeGateway(
            settings.stripe_secret_key,
            settings.stripe_webhook_secret,
            api_base=settings.stripe_api_base,
            timeout=settings.provider_timeout_seconds,
            tolerance_seconds=settings.stripe_webhook_tolerance_seconds,
        )
        self.paypal = paypal or PayPalGateway(
            settings.paypal_client_id,
            settings.paypal_client_secret,
            api_base=settings.paypal_api_base,
            timeout=settings.provider_timeout_seconds,
        )

        # One lock guards check-then-create and the final check at confirmation
        self.booking_lock = asyncio.Lock()

        self.booking_service = BookingService(
            self.ledger,
            self.availability,
            self.pricing,
            stripe=self.stripe,
            paypal=self.paypal,
            booking_lock=self.booking_lock,
            hold_minutes=settings.hold_minutes,
            frontend_url=settings.frontend_url,
            property_name=settings.property_name,
        )
        self.reconciler = PaymentReconciler(
            self.ledger,
            self.availability,
            self.notifier,
            stripe=self.stripe,
            paypal=self.paypal,
            idempotency=self.idempotency,
            booking_lock=self.booking_lock,
            pre_arrival_lead_days=settings.pre_arrival_lead_days,
        )
        self.admin_verifier = AdminKeyVerifier(settings.admin_secret)

    async def startup(self) -> None:
        for store in self.stores:
            if isinstance(store, SqlAlchemyReservationRepository):
                try:
                    await store.init_schema()
                except Exception:
                    logger.exception("Store %s could not be initialised, continuing without it", store.name)

    async def shutdown(self) -> None:
        await self.stripe.close()
        await self.idempotency.dispose()
        for store in self.stores:
            if isinstance(store, SqlAlchemyReservationRepository):
                await store.dispose()


_container: Optional[Container] = None


def get_container() -> Container:
    global _container
    if _container is None:
        _container = Container(get_settings())
    return _container


def set_container(container: Optional[Container]) -> None:
    global _container
    _container = container


def get_booking_service(container: Container = Depends(get_container)) -> BookingService:
    return container.booking_service


def get_reconciler(container: Container = Depends(get_container)) -> PaymentReconciler:
    return container.reconciler


def get_publisher(container: Container = Depends(get_container)) -> FeedPublisher:
    return container.publisher


def get_availability(container: Container = Depends(get_container)) -> AvailabilityIndex:
    return container.availability


async def require_admin(
    x_admin_key: Optional[str] = Header(default=None),
    key: Optional[str] = Query(default=None),
    token: Optional[str] = Depends(oauth2_scheme),
    container: Container = Depends(get_container)
) -> str:
    """Admin guard: shared secret (header or query) or a bearer token from /token"""
    credentials_exception = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Unauthorized",
        headers={"WWW-Authenticate": "Bearer"},
    )
    settings = container.settings

    if token:
        try:
            payload = decode_access_token(token, settings.jwt_secret_key, settings.jwt_algorithm)
        except JWTError:
            raise credentials_exception
        if payload.get("sub") != ADMIN_SUBJECT:
            raise credentials_exception
        return ADMIN_SUBJECT

    candidate = x_admin_key or key
    if not container.admin_verifier.enabled:
        logger.warning("Admin request rejected, no admin secret configured")
        raise credentials_exception
    if not container.admin_verifier.verify(candidate):
        raise credentials_exception
    return ADMIN_SUBJECT
