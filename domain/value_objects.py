"""Domain Value Objects"""
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from datetime import date, datetime, timedelta
from typing import Optional

from domain.enums import PaymentProvider

ONE_DAY = timedelta(days=1)


def as_date(value) -> date:
    """Reduce a date or datetime to its calendar date"""
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    raise TypeError(f"Expected date or datetime, got {type(value).__name__}")


class StayDates(BaseModel):
    """Half-open stay [check_in, check_out) as requested by a guest"""
    check_in: date
    check_out: date

    model_config = ConfigDict(frozen=True)

    @field_validator('check_in', 'check_out', mode='before')
    @classmethod
    def strip_time_of_day(cls, v):
        if isinstance(v, datetime):
            return v.date()
        return v

    @model_validator(mode='after')
    def check_out_after_check_in(self):
        if self.check_out <= self.check_in:
            raise ValueError('Check-out must be after check-in')
        return self

    def nights(self) -> int:
        """Calculate number of nights"""
        return (self.check_out - self.check_in).days

    def each_night(self):
        current = self.check_in
        while current < self.check_out:
            yield current
            current += ONE_DAY

    @property
    def last_night(self) -> date:
        return self.check_out - ONE_DAY


class BlockedRange(BaseModel):
    """One occupied stretch; `end` is the last occupied night (inclusive)"""
    start: date
    end: date
    source: str
    external_id: Optional[str] = None
    label: Optional[str] = None

    model_config = ConfigDict(frozen=True)

    @model_validator(mode='after')
    def end_not_before_start(self):
        if self.end < self.start:
            raise ValueError('Blocked range must not end before it starts')
        return self

    @classmethod
    def from_exclusive_end(cls, start: date, exclusive_end: date, **kwargs) -> "BlockedRange":
        """Build from calendar convention where the end date is the first free day"""
        end = max(start, exclusive_end - ONE_DAY)
        return cls(start=start, end=end, **kwargs)

    @property
    def exclusive_end(self) -> date:
        return self.end + ONE_DAY

    def sort_key(self):
        return (self.start, self.end, self.source, self.external_id or "", self.label or "")


class GuestCount(BaseModel):
    """Value Object for guest count"""
    adults: int = Field(ge=1, le=16)
    children: int = Field(ge=0, le=16, default=0)

    model_config = ConfigDict(frozen=True)

    @property
    def total(self) -> int:
        return self.adults + self.children


class GuestContact(BaseModel):
    name: str = Field(min_length=1, max_length=200)
    email: str = Field(min_length=3, max_length=320)
    phone: Optional[str] = Field(default=None, max_length=50)

    model_config = ConfigDict(frozen=True)

    @field_validator('name', 'email', mode='before')
    @classmethod
    def strip_text(cls, v):
        return v.strip() if isinstance(v, str) else v

    @field_validator('email')
    @classmethod
    def email_shape(cls, v: str) -> str:
        local, _, domain = v.partition('@')
        if not local or '.' not in domain:
            raise ValueError('A valid email address is required')
        return v


class Money(BaseModel):
    """Amount in minor units (cents)"""
    amount_minor: int = Field(ge=0)
    currency: str = "EUR"

    model_config = ConfigDict(frozen=True)

    @property
    def major(self) -> float:
        return self.amount_minor / 100


class ProviderReference(BaseModel):
    """Checkout session (Stripe) or order (PayPal) that finances a reservation"""
    kind: PaymentProvider
    reference: str = Field(min_length=1)

    model_config = ConfigDict(frozen=True)
