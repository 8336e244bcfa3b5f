from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import ROUND_HALF_UP, Decimal

from app import settings
from app.errors import ValidationError
from app.intervals import to_utc
from app.schemas import Quote, RefundInfo

MIN_BOOKING_DURATION = timedelta(hours=3)
REFUND_PROCESSING_TIME = "3-5 business days"
TESTING_MODE_AMOUNT = Decimal("1")

# (hours to pickup strictly below, refund percent); anything later is 100%
REFUND_TIERS: tuple[tuple[int, int], ...] = ((24, 50), (48, 75))

_CENT = Decimal("0.01")
_HOUR_SECONDS = 3600


@dataclass(frozen=True)
class PricingPolicy:
    min_hours: int = 1
    # Flat amount charged instead of the computed one (storefront testing period)
    test_amount: Decimal | None = None


def policy_from_settings() -> PricingPolicy:
    return PricingPolicy(test_amount=TESTING_MODE_AMOUNT if settings.TESTING_MODE else None)


def ensure_min_duration(
    pickup: datetime,
    return_: datetime,
    minimum: timedelta = MIN_BOOKING_DURATION,
) -> None:
    """Duration gate for booking creation/modification, independent of billing."""
    pickup, return_ = to_utc(pickup), to_utc(return_)
    if return_ <= pickup:
        raise ValidationError("Return time must be after pickup time")
    if return_ - pickup < minimum:
        hours = int(minimum.total_seconds() // _HOUR_SECONDS)
        raise ValidationError(f"Booking duration must be at least {hours} hours")


def billable_hours(pickup: datetime, return_: datetime, min_hours: int = 1) -> int:
    seconds = (to_utc(return_) - to_utc(pickup)).total_seconds()
    return max(min_hours, math.ceil(seconds / _HOUR_SECONDS))


def quote(
    pickup: datetime,
    return_: datetime,
    hourly_rate: Decimal,
    policy: PricingPolicy | None = None,
) -> Quote:
    """Billable hours and amount for a rental window. Pure."""
    policy = policy or PricingPolicy()
    if to_utc(return_) <= to_utc(pickup):
        raise ValidationError("Return time must be after pickup time")

    hours = billable_hours(pickup, return_, policy.min_hours)
    original = Decimal(hours) * Decimal(hourly_rate)
    if policy.test_amount is not None:
        return Quote(
            hours=hours,
            amount=policy.test_amount,
            original_amount=original,
            testing_mode=True,
        )
    return Quote(hours=hours, amount=original, original_amount=original)


def refund_percent(hours_to_pickup: float) -> int:
    for below, percent in REFUND_TIERS:
        if hours_to_pickup < below:
            return percent
    return 100


def refund_for(hours_to_pickup: float, amount: Decimal) -> RefundInfo:
    percent = refund_percent(hours_to_pickup)
    refund = (Decimal(amount) * Decimal(percent) / Decimal(100)).quantize(
        _CENT, rounding=ROUND_HALF_UP
    )
    return RefundInfo(
        percent=percent, amount=refund, processing_time=REFUND_PROCESSING_TIME
    )


def to_minor_units(amount: Decimal) -> int:
    """Rupees to paise, as the payment provider expects."""
    return int((Decimal(amount) * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def from_minor_units(amount: int) -> Decimal:
    return (Decimal(amount) / 100).quantize(_CENT)


def no_refund() -> RefundInfo:
    """Nothing was captured, so nothing goes back."""
    return RefundInfo(percent=0, amount=Decimal("0.00"), processing_time=REFUND_PROCESSING_TIME)
