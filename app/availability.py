from __future__ import annotations

from datetime import datetime, timedelta, timezone
from uuid import UUID

from app import settings
from app.intervals import Interval, any_overlap, to_utc
from app.schemas import BookingResponse, BookingStatus, PaymentStatus, VehicleResponse
from app.store import BookingStore


def _is_lapsed_hold(booking: BookingResponse, now: datetime, hold: timedelta) -> bool:
    """An unpaid pending placeholder stops blocking once its hold runs out."""
    return (
        booking.status == BookingStatus.PENDING
        and booking.payment_status == PaymentStatus.PENDING
        and booking.payment_id is None
        and to_utc(booking.created_at) + hold <= now
    )


def blocking_intervals(
    bookings: list[BookingResponse],
    exclude_booking_id: UUID | None = None,
    now: datetime | None = None,
    hold: timedelta | None = None,
) -> list[Interval]:
    now = now or datetime.now(timezone.utc)
    hold = hold if hold is not None else timedelta(minutes=settings.PENDING_HOLD_MINUTES)
    return [
        Interval(b.pickup_at, b.return_at)
        for b in bookings
        if b.id != exclude_booking_id and not _is_lapsed_hold(b, now, hold)
    ]


async def list_blocking_intervals(
    store: BookingStore,
    vehicle_id: UUID,
    exclude_booking_id: UUID | None = None,
    now: datetime | None = None,
) -> list[Interval]:
    """
    Intervals currently reserving the vehicle.

    Raises StoreError when the store can't be read; callers must not treat
    that as "unavailable".
    """
    now = now or datetime.now(timezone.utc)
    bookings = await store.list_blocking_bookings(vehicle_id, ending_after=now)
    return blocking_intervals(bookings, exclude_booking_id=exclude_booking_id, now=now)


async def is_available(
    store: BookingStore,
    vehicle_id: UUID,
    candidate: Interval,
    exclude_booking_id: UUID | None = None,
    now: datetime | None = None,
) -> bool:
    existing = await list_blocking_intervals(
        store, vehicle_id, exclude_booking_id=exclude_booking_id, now=now
    )
    return not any_overlap(candidate, existing)


async def available_vehicles(
    store: BookingStore,
    candidate: Interval,
    location: str | None = None,
    now: datetime | None = None,
) -> list[VehicleResponse]:
    """Catalog vehicles free for the whole candidate window."""
    now = now or datetime.now(timezone.utc)
    vehicles = await store.list_vehicles(location=location)
    bookings = await store.list_blocking_bookings(ending_after=now)

    by_vehicle: dict[UUID, list[BookingResponse]] = {}
    for b in bookings:
        by_vehicle.setdefault(b.vehicle_id, []).append(b)

    return [
        v
        for v in vehicles
        if not any_overlap(candidate, blocking_intervals(by_vehicle.get(v.id, []), now=now))
    ]
