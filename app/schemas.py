from __future__ import annotations

from datetime import datetime, timezone
from decimal import Decimal
from enum import StrEnum
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


class BookingStatus(StrEnum):
    PENDING = "pending"  # awaiting payment, or re-approval after a modification
    CONFIRMED = "confirmed"  # paid and committed
    ACTIVE = "active"  # vehicle picked up
    COMPLETED = "completed"  # vehicle returned
    CANCELLED = "cancelled"  # cancelled by the customer


class PaymentStatus(StrEnum):
    PENDING = "pending"
    PAID = "paid"
    FAILED = "failed"
    REFUNDED = "refunded"


# Statuses that occupy a vehicle's time slot
BLOCKING_STATUSES: tuple[BookingStatus, ...] = (
    BookingStatus.PENDING,
    BookingStatus.CONFIRMED,
    BookingStatus.ACTIVE,
)
TERMINAL_STATUSES: tuple[BookingStatus, ...] = (
    BookingStatus.CANCELLED,
    BookingStatus.COMPLETED,
)


def _require_utc(v: datetime) -> datetime:
    if v.tzinfo is None:
        raise ValueError("datetime must be timezone-aware (include UTC offset)")
    return v.astimezone(timezone.utc)


class RentalWindow(BaseModel):
    """Shared pickup/return pair with timezone and ordering checks."""

    pickup_at: datetime
    return_at: datetime

    @field_validator("pickup_at", "return_at", mode="after")
    @classmethod
    def require_timezone(cls, v: datetime) -> datetime:
        return _require_utc(v)

    @model_validator(mode="after")
    def validate_time_range(self) -> RentalWindow:
        if self.return_at <= self.pickup_at:
            raise ValueError("return_at must be after pickup_at")
        return self


# ---------------------------------------------------------------------------
# Vehicles
# ---------------------------------------------------------------------------


class VehicleResponse(BaseModel):
    id: UUID
    name: str
    category: str | None = None
    location: str | None = None
    price_per_hour: Decimal
    available: bool

    model_config = ConfigDict(from_attributes=True)


# ---------------------------------------------------------------------------
# Bookings
# ---------------------------------------------------------------------------


class BookingResponse(BaseModel):
    id: UUID
    vehicle_id: UUID
    user_id: UUID
    pickup_at: datetime
    return_at: datetime
    pickup_location: str | None
    status: BookingStatus
    payment_status: PaymentStatus
    total_hours: int
    total_amount: Decimal
    currency: str
    order_id: str | None
    payment_id: str | None
    notes: str | None
    created_at: datetime
    updated_at: datetime

    model_config = ConfigDict(from_attributes=True)


class BookingSlot(BaseModel):
    """Minimal occupied slot: reveals no user identity."""

    vehicle_id: UUID
    pickup_at: datetime
    return_at: datetime

    model_config = ConfigDict(from_attributes=True)


class BookingFilters(BaseModel):
    """Bind to a FastAPI route via Depends(BookingFilters)."""

    vehicle_id: UUID | None = None
    status: BookingStatus | None = None

    # Pagination
    page: int = Field(default=1, ge=1)
    page_size: int = Field(default=20, ge=1, le=100)


class BookingStatusUpdate(BaseModel):
    status: BookingStatus


class AvailabilityResponse(BaseModel):
    vehicle_id: UUID
    available: bool


# ---------------------------------------------------------------------------
# Pricing
# ---------------------------------------------------------------------------


class QuoteRequest(RentalWindow):
    vehicle_id: UUID


class Quote(BaseModel):
    hours: int
    amount: Decimal
    original_amount: Decimal
    testing_mode: bool = False


class QuoteResponse(Quote):
    vehicle_id: UUID
    currency: str


class RefundInfo(BaseModel):
    percent: int
    amount: Decimal
    processing_time: str


# ---------------------------------------------------------------------------
# Payment orders and commit
# ---------------------------------------------------------------------------


class OrderCreate(RentalWindow):
    vehicle_id: UUID
    pickup_location: str | None = Field(default=None, max_length=255)
    notes: str | None = Field(default=None, max_length=1000)
    # What the storefront displayed. Informational only, the server re-quotes.
    amount: Decimal | None = None


class OrderResponse(BaseModel):
    order_id: str
    amount: int  # minor units (paise), as the checkout widget expects
    currency: str
    key_id: str
    booking_id: UUID | None = None


class PaymentCallback(RentalWindow):
    """What the checkout widget hands back after a successful payment."""

    payment_id: str = Field(min_length=1)
    order_id: str = Field(min_length=1)
    signature: str = ""
    vehicle_id: UUID
    pickup_location: str | None = Field(default=None, max_length=255)
    notes: str | None = Field(default=None, max_length=1000)


class CommitResponse(BaseModel):
    state: str
    booking: BookingResponse | None = None
    message: str
    payment_id: str
    conflict_error: bool = False


# ---------------------------------------------------------------------------
# Lifecycle
# ---------------------------------------------------------------------------


class CancelRequest(BaseModel):
    reason: str | None = Field(default=None, max_length=500)


class CancelResponse(BaseModel):
    booking: BookingResponse
    refund: RefundInfo
    message: str


class BookingModify(BaseModel):
    pickup_at: datetime | None = None
    return_at: datetime | None = None
    pickup_location: str | None = Field(default=None, max_length=255)
    notes: str | None = Field(default=None, max_length=1000)

    @field_validator("pickup_at", "return_at", mode="after")
    @classmethod
    def require_timezone(cls, v: datetime | None) -> datetime | None:
        return _require_utc(v) if v is not None else None

    @model_validator(mode="after")
    def dates_change_together(self) -> BookingModify:
        if (self.pickup_at is None) != (self.return_at is None):
            raise ValueError("pickup_at and return_at must be changed together")
        return self

    @property
    def changes_dates(self) -> bool:
        return self.pickup_at is not None and self.return_at is not None


class ModifyResponse(BaseModel):
    booking: BookingResponse
    amount_difference: Decimal
    changes: list[str]
    message: str
