"""Stay pricing: season table, length-of-stay discount, fixed service fee.

The configuration is a plain value passed in by the caller; there is no
module-level price table.
"""
from datetime import date
from decimal import Decimal, ROUND_HALF_UP
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator

from domain.value_objects import StayDates


class SeasonalPrice(BaseModel):
    """Nightly price for a month range (1-12, inclusive, may wrap the year end)"""
    name: str
    start_month: int = Field(ge=1, le=12)
    end_month: int = Field(ge=1, le=12)
    price_per_night: Decimal = Field(gt=0)

    model_config = ConfigDict(frozen=True)

    def covers(self, night: date) -> bool:
        month = night.month
        if self.start_month <= self.end_month:
            return self.start_month <= month <= self.end_month
        return month >= self.start_month or month <= self.end_month


class DiscountTier(BaseModel):
    name: str
    min_nights: int = Field(ge=1)
    percentage: Decimal = Field(ge=0, le=100)

    model_config = ConfigDict(frozen=True)


class PricingConfig(BaseModel):
    seasons: List[SeasonalPrice]
    default_price_per_night: Decimal = Field(gt=0)
    discounts: List[DiscountTier] = []
    service_fee: Decimal = Field(ge=0)
    currency: str = "EUR"
    min_nights: int = Field(ge=1, default=2)
    max_nights: int = Field(ge=1, default=90)
    max_guests: int = Field(ge=1, default=8)

    model_config = ConfigDict(frozen=True)

    @model_validator(mode='after')
    def stay_bounds_consistent(self):
        if self.max_nights < self.min_nights:
            raise ValueError('max_nights must be >= min_nights')
        return self

    @classmethod
    def default(cls) -> "PricingConfig":
        """Season table of the property, first matching season wins"""
        return cls(
            seasons=[
                SeasonalPrice(name="High Season", start_month=7, end_month=8, price_per_night=Decimal("200")),
                SeasonalPrice(name="Mid Season", start_month=6, end_month=9, price_per_night=Decimal("180")),
                SeasonalPrice(name="Shoulder Season", start_month=4, end_month=5, price_per_night=Decimal("170")),
                SeasonalPrice(name="Low Season", start_month=1, end_month=3, price_per_night=Decimal("150")),
            ],
            default_price_per_night=Decimal("150"),
            discounts=[
                DiscountTier(name="Monthly Discount", min_nights=30, percentage=Decimal("20")),
                DiscountTier(name="Weekly Discount", min_nights=7, percentage=Decimal("12")),
            ],
            service_fee=Decimal("60"),
        )


class PriceQuote(BaseModel):
    nights: int
    base_price: Decimal
    discount_name: Optional[str] = None
    discount_percentage: Decimal = Decimal("0")
    discount: Decimal = Decimal("0")
    service_fee: Decimal
    total: Decimal
    currency: str

    model_config = ConfigDict(frozen=True)

    @property
    def total_minor(self) -> int:
        return int((self.total * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def _round_major(amount: Decimal) -> Decimal:
    return amount.quantize(Decimal("1"), rounding=ROUND_HALF_UP)


def price_for_night(night: date, config: PricingConfig) -> Decimal:
    for season in config.seasons:
        if season.covers(night):
            return season.price_per_night
    return config.default_price_per_night


def best_discount(nights: int, config: PricingConfig) -> Optional[DiscountTier]:
    """Highest percentage tier whose threshold is met; tiers never stack"""
    applicable = [tier for tier in config.discounts if nights >= tier.min_nights]
    if not applicable:
        return None
    return max(applicable, key=lambda tier: (tier.percentage, tier.min_nights))


def calculate_quote(stay: StayDates, config: PricingConfig) -> PriceQuote:
    """Deterministic total for a stay: nightly sum, minus best tier, plus fee"""
    nights = stay.nights()
    base_price = sum((price_for_night(night, config) for night in stay.each_night()), Decimal("0"))

    tier = best_discount(nights, config)
    percentage = tier.percentage if tier else Decimal("0")
    discount = _round_major(base_price * percentage / 100)

    return PriceQuote(
        nights=nights,
        base_price=base_price,
        discount_name=tier.name if tier else None,
        discount_percentage=percentage,
        discount=discount,
        service_fee=config.service_fee,
        total=base_price - discount + config.service_fee,
        currency=config.currency,
    )
