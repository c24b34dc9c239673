"""
Application settings (Pydantic Settings).

Every value can be overridden with a BOOKING_-prefixed environment variable
or a .env file next to main.py, e.g. BOOKING_CALENDAR_FEED_URLS='["https://..."]'.
"""
from decimal import Decimal
from functools import lru_cache
from pathlib import Path
from typing import List

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict
from sqlalchemy.engine import make_url

from domain.pricing import DiscountTier, PricingConfig, SeasonalPrice

_DEFAULT_PRICING = PricingConfig.default()
_env_path = Path(__file__).resolve().parent.parent / ".env"


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="BOOKING_", env_file=_env_path, extra="ignore")

    property_name: str = "Kefalonia Vintage Home"
    calendar_domain: str = "kefalonia-bnb.com"
    frontend_url: str = "http://localhost:3000"
    log_level: str = "INFO"

    # External calendars (Booking.com, Airbnb, Vrbo, ...)
    calendar_feed_urls: List[str] = []
    feed_timeout_seconds: float = 8.0
    feed_refresh_minutes: int = 15
    publish_external_ranges: bool = False

    # Ledger: primary SQL store mirrored to an in-memory store
    database_url: str = "sqlite+aiosqlite:///./bookings.db"
    # Job store for scheduled notifications; blank means database_url with its sync driver
    scheduler_database_url: str = ""
    idempotency_ttl_seconds: int = 86400

    # Booking rules
    hold_minutes: int = 30
    pre_arrival_lead_days: int = 3

    # Pricing (major currency units)
    currency: str = "EUR"
    seasons: List[SeasonalPrice] = _DEFAULT_PRICING.seasons
    default_price_per_night: Decimal = _DEFAULT_PRICING.default_price_per_night
    discounts: List[DiscountTier] = _DEFAULT_PRICING.discounts
    service_fee: Decimal = _DEFAULT_PRICING.service_fee
    min_nights: int = 2
    max_nights: int = 90
    max_guests: int = 8

    # Stripe
    stripe_secret_key: str = ""
    stripe_webhook_secret: str = ""
    stripe_api_base: str = "https://api.stripe.com"
    stripe_webhook_tolerance_seconds: int = 300

    # PayPal
    paypal_client_id: str = ""
    paypal_client_secret: str = ""
    paypal_api_base: str = "https://api-m.sandbox.paypal.com"

    provider_timeout_seconds: float = 20.0

    # Admin access: one shared secret, optionally exchanged for a JWT at /token
    admin_secret: str = ""
    jwt_secret_key: str = "change-me"
    jwt_algorithm: str = "HS256"
    access_token_expire_minutes: int = 30

    # Notifications
    owner_email: str = ""
    smtp_host: str = ""
    smtp_port: int = 587
    smtp_user: str = ""
    smtp_password: str = ""
    notify_from: str = ""

    @field_validator(
        "stripe_secret_key", "stripe_webhook_secret", "paypal_client_id",
        "paypal_client_secret", "admin_secret", mode="after"
    )
    @classmethod
    def strip_secret(cls, v: str) -> str:
        return (v or "").strip()

    @field_validator("calendar_feed_urls", mode="after")
    @classmethod
    def drop_blank_urls(cls, v: List[str]) -> List[str]:
        return [u.strip() for u in v if u and u.strip()]

    def scheduler_url(self) -> str:
        """Synchronous SQLAlchemy URL for the APScheduler job store"""
        if self.scheduler_database_url:
            return self.scheduler_database_url
        url = make_url(self.database_url)
        return url.set(drivername=url.get_backend_name()).render_as_string(hide_password=False)

    def pricing_config(self) -> PricingConfig:
        return PricingConfig(
            seasons=self.seasons,
            default_price_per_night=self.default_price_per_night,
            discounts=self.discounts,
            service_fee=self.service_fee,
            currency=self.currency,
            min_nights=self.min_nights,
            max_nights=self.max_nights,
            max_guests=self.max_guests,
        )


@lru_cache
def get_settings() -> Settings:
    return Settings()
