"""
Payment order orchestration: turn a booking intent into a provider order.

Two flows are supported (see `settings.ORDER_FLOW`):

- order_first: nothing is written locally. The provider order's notes carry
  the whole intent, so a paid order can be reconciled even if the commit
  never ran.
- pending_first: a pending/pending booking row is inserted before the order
  is requested and holds the slot while the customer pays. It is promoted by
  the commit, or deleted on payment failure/dismissal (`release_order`) or by
  the sweeper once its hold lapses.
"""

from __future__ import annotations

from contextlib import AsyncExitStack
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Any, Protocol
from uuid import UUID

from loguru import logger

from app import settings
from app.availability import is_available
from app.errors import (
    AvailabilityConflict,
    BookingError,
    NotFound,
    StoreError,
)
from app.intervals import Interval
from app.pricing import (
    PricingPolicy,
    ensure_min_duration,
    policy_from_settings,
    quote,
    to_minor_units,
)
from app.schemas import BookingResponse, BookingStatus, PaymentStatus, Quote
from app.store import BookingStore

ORDER_FIRST = "order_first"
PENDING_FIRST = "pending_first"
ORDER_SOURCE = "vehicle-rental-system"


class PaymentGateway(Protocol):
    key_id: str

    async def create_order(
        self, amount: int, currency: str, notes: dict[str, str]
    ) -> dict[str, Any]: ...

    async def fetch_order(self, order_id: str) -> dict[str, Any]: ...


@dataclass(frozen=True)
class OrderIntent:
    vehicle_id: UUID
    user_id: UUID
    pickup_at: datetime
    return_at: datetime
    pickup_location: str | None = None
    notes: str | None = None
    # Amount the storefront displayed; the server quote wins if they differ
    amount: Decimal | None = None


@dataclass(frozen=True)
class OrderResult:
    order_id: str
    amount: int  # minor units
    currency: str
    key_id: str
    quote: Quote
    booking_id: UUID | None = None


def _order_notes(
    intent: OrderIntent,
    vehicle_name: str,
    q: Quote,
    booking_id: UUID | None,
) -> dict[str, str]:
    notes = {
        "vehicleId": str(intent.vehicle_id),
        "userId": str(intent.user_id),
        "pickupDate": intent.pickup_at.isoformat(),
        "returnDate": intent.return_at.isoformat(),
        "totalHours": str(q.hours),
        "pickupLocation": intent.pickup_location or "",
        "specialRequests": intent.notes or "",
        "vehicleName": vehicle_name,
        "source": ORDER_SOURCE,
        "testingMode": "true" if q.testing_mode else "false",
        "originalAmount": str(q.original_amount),
    }
    if booking_id is not None:
        notes["bookingId"] = str(booking_id)
    return notes


async def create_order(
    store: BookingStore,
    gateway: PaymentGateway,
    intent: OrderIntent,
    flow: str | None = None,
    policy: PricingPolicy | None = None,
    now: datetime | None = None,
) -> OrderResult:
    flow = flow or settings.ORDER_FLOW
    if flow not in (ORDER_FIRST, PENDING_FIRST):
        raise ValueError(f"Unknown order flow: {flow!r}")
    policy = policy or policy_from_settings()

    ensure_min_duration(intent.pickup_at, intent.return_at)
    candidate = Interval(intent.pickup_at, intent.return_at)

    vehicle = await store.get_vehicle(intent.vehicle_id)
    if vehicle is None or not vehicle.available:
        raise NotFound("Vehicle not found")

    q = quote(candidate.start, candidate.end, vehicle.price_per_hour, policy)
    if intent.amount is not None and Decimal(intent.amount) != q.amount:
        logger.warning(
            "Client amount {} differs from quote {} for vehicle {}; using quote",
            intent.amount,
            q.amount,
            intent.vehicle_id,
        )

    booking_id: UUID | None = None
    async with AsyncExitStack() as stack:
        if flow == PENDING_FIRST:
            # Only one placeholder may win the slot
            await stack.enter_async_context(store.lock_vehicle(intent.vehicle_id))

        # Never issue an order for a slot that is already taken
        if not await is_available(store, intent.vehicle_id, candidate, now=now):
            raise AvailabilityConflict("Vehicle is not available for the selected dates")

        if flow == PENDING_FIRST:
            placeholder = await store.insert_booking(
                vehicle_id=intent.vehicle_id,
                user_id=intent.user_id,
                pickup_at=candidate.start,
                return_at=candidate.end,
                pickup_location=intent.pickup_location,
                status=BookingStatus.PENDING,
                payment_status=PaymentStatus.PENDING,
                total_hours=q.hours,
                total_amount=q.amount,
                currency=settings.DEFAULT_CURRENCY,
                notes=intent.notes,
            )
            booking_id = placeholder.id

    try:
        order = await gateway.create_order(
            to_minor_units(q.amount),
            settings.DEFAULT_CURRENCY,
            _order_notes(intent, vehicle.name, q, booking_id),
        )
        if booking_id is not None:
            linked = await store.update_booking(booking_id, order_id=order["id"])
            if linked is None:
                raise StoreError("Pending booking disappeared before the order was linked")
    except BookingError:
        if booking_id is not None:
            await _delete_placeholder(store, booking_id)
        raise

    logger.info(
        "Payment order {} created for vehicle {} ({} h, {} {})",
        order["id"],
        intent.vehicle_id,
        q.hours,
        q.amount,
        settings.DEFAULT_CURRENCY,
    )
    return OrderResult(
        order_id=order["id"],
        amount=int(order.get("amount", to_minor_units(q.amount))),
        currency=order.get("currency", settings.DEFAULT_CURRENCY),
        key_id=gateway.key_id,
        quote=q,
        booking_id=booking_id,
    )


async def _delete_placeholder(store: BookingStore, booking_id: UUID) -> bool:
    """Compensating delete; its own failure is logged, not raised."""
    try:
        deleted = await store.delete_booking(booking_id)
    except StoreError:
        logger.error("Could not roll back pending booking {}", booking_id)
        return False
    logger.info("Rolled back pending booking {}", booking_id)
    return deleted


async def release_order(
    store: BookingStore, order_id: str, user_id: UUID
) -> BookingResponse | None:
    """
    Payment failed or the checkout was dismissed: drop the caller's pending
    placeholder for this order. Returns the removed booking, if any.
    """
    try:
        booking = await store.get_booking_by_order(order_id)
    except StoreError:
        logger.error("Could not look up order {} for rollback", order_id)
        return None

    if (
        booking is None
        or booking.user_id != user_id
        or booking.status != BookingStatus.PENDING
        or booking.payment_status != PaymentStatus.PENDING
        or booking.payment_id is not None
    ):
        return None

    return booking if await _delete_placeholder(store, booking.id) else None
