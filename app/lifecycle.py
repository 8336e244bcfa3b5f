from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from uuid import UUID

from loguru import logger

from app.availability import is_available
from app.errors import AvailabilityConflict, NotFound, PolicyViolation, ValidationError
from app.events import BookingEvent, EventKind
from app.intervals import Interval, to_utc
from app.pricing import ensure_min_duration, no_refund, quote, refund_for
from app.schemas import (
    TERMINAL_STATUSES,
    BookingModify,
    BookingResponse,
    BookingStatus,
    PaymentStatus,
    RefundInfo,
)
from app.store import BookingStore

CANCEL_CUTOFF = timedelta(hours=2)
MODIFY_CUTOFF = timedelta(hours=4)
NO_REASON = "No reason provided"


@dataclass
class CancellationResult:
    booking: BookingResponse
    refund: RefundInfo
    events: list[BookingEvent] = field(default_factory=list)


@dataclass
class ModificationResult:
    booking: BookingResponse
    previous: BookingResponse
    amount_difference: Decimal
    changes: list[str]
    events: list[BookingEvent] = field(default_factory=list)


# ---------------------------------------------------------------------------
# Transition guards
# ---------------------------------------------------------------------------

_VALID_TRANSITIONS: dict[BookingStatus, set[BookingStatus]] = {
    BookingStatus.PENDING: {BookingStatus.CONFIRMED, BookingStatus.CANCELLED},
    BookingStatus.CONFIRMED: {BookingStatus.ACTIVE, BookingStatus.CANCELLED},
    BookingStatus.ACTIVE: {BookingStatus.COMPLETED},
    BookingStatus.COMPLETED: set(),
    BookingStatus.CANCELLED: set(),
}


def assert_transition(old_status: BookingStatus, new_status: BookingStatus) -> None:
    """Statuses only move forward, or sideways to cancelled; never back."""
    allowed = _VALID_TRANSITIONS.get(old_status, set())
    if new_status not in allowed:
        raise PolicyViolation(
            f"Cannot transition from '{old_status}' to '{new_status}'. "
            f"Allowed: {sorted(s.value for s in allowed)}"
        )


def _hours_until(pickup_at: datetime, now: datetime) -> float:
    return (to_utc(pickup_at) - now).total_seconds() / 3600


def _append_note(notes: str | None, fragment: str) -> str:
    return f"{notes}\n{fragment}" if notes else fragment


async def _owned_booking(
    store: BookingStore, booking_id: UUID, user_id: UUID
) -> BookingResponse:
    booking = await store.get_booking(booking_id, user_id=user_id)
    if booking is None:
        raise NotFound("Booking not found or access denied")
    return booking


# ---------------------------------------------------------------------------
# Cancellation
# ---------------------------------------------------------------------------


async def cancel_booking(
    store: BookingStore,
    booking_id: UUID,
    user_id: UUID,
    reason: str | None = None,
    now: datetime | None = None,
) -> CancellationResult:
    now = to_utc(now) if now else datetime.now(timezone.utc)
    booking = await _owned_booking(store, booking_id, user_id)

    hours_to_pickup = _hours_until(booking.pickup_at, now)
    if hours_to_pickup < CANCEL_CUTOFF.total_seconds() / 3600:
        raise PolicyViolation("Cannot cancel booking less than 2 hours before pickup time")
    if booking.status in TERMINAL_STATUSES:
        raise PolicyViolation(f"Cannot cancel a {booking.status} booking")

    reason = reason or NO_REASON
    updated = await store.update_booking(
        booking_id,
        status=BookingStatus.CANCELLED,
        notes=_append_note(booking.notes, f"[CANCELLED: {reason}]"),
    )
    if updated is None:
        raise NotFound("Booking not found or access denied")

    if booking.payment_status == PaymentStatus.PAID:
        refund = refund_for(hours_to_pickup, booking.total_amount)
    else:
        refund = no_refund()
    logger.info(
        "Booking {} cancelled {:.1f}h before pickup, refund {}% ({})",
        booking_id,
        hours_to_pickup,
        refund.percent,
        refund.amount,
    )
    event = BookingEvent(
        kind=EventKind.BOOKING_CANCELLED,
        booking_id=updated.id,
        user_id=updated.user_id,
        payload={
            "vehicle_id": updated.vehicle_id,
            "pickup_at": updated.pickup_at,
            "return_at": updated.return_at,
            "reason": reason,
            "refund": refund.model_dump(),
        },
    )
    return CancellationResult(booking=updated, refund=refund, events=[event])


# ---------------------------------------------------------------------------
# Modification
# ---------------------------------------------------------------------------


async def modify_booking(
    store: BookingStore,
    booking_id: UUID,
    user_id: UUID,
    changes: BookingModify,
    now: datetime | None = None,
) -> ModificationResult:
    """
    Change dates, pickup location or notes of a booking.

    New dates must still satisfy the minimum duration and must not overlap
    any other blocking booking of the same vehicle. The amount is re-quoted
    at the vehicle's current rate, and a booking whose dates change goes back
    to pending for re-approval.
    """
    now = to_utc(now) if now else datetime.now(timezone.utc)
    current = await _owned_booking(store, booking_id, user_id)

    if _hours_until(current.pickup_at, now) < MODIFY_CUTOFF.total_seconds() / 3600:
        raise PolicyViolation("Cannot modify booking less than 4 hours before pickup time")
    if current.status in TERMINAL_STATUSES:
        raise PolicyViolation(f"Cannot modify a {current.status} booking")

    fields: dict = {}
    if changes.pickup_location is not None:
        fields["pickup_location"] = changes.pickup_location
    if changes.notes is not None:
        fields["notes"] = changes.notes

    if not changes.changes_dates:
        updated = await store.update_booking(booking_id, **fields) if fields else current
        if updated is None:
            raise NotFound("Booking not found or access denied")
        return _modified(current, updated)

    if changes.pickup_at is None or changes.return_at is None:
        raise ValidationError("pickup_at and return_at must be changed together")
    ensure_min_duration(changes.pickup_at, changes.return_at)
    candidate = Interval(changes.pickup_at, changes.return_at)

    vehicle = await store.get_vehicle(current.vehicle_id)
    if vehicle is None:
        raise NotFound("Vehicle not found")

    async with store.lock_vehicle(current.vehicle_id):
        if not await is_available(
            store, current.vehicle_id, candidate, exclude_booking_id=booking_id, now=now
        ):
            raise AvailabilityConflict("Selected time slot conflicts with existing bookings")

        # Rate-based amount: the testing-period flat price only applies to new orders
        q = quote(candidate.start, candidate.end, vehicle.price_per_hour)
        fields.update(
            pickup_at=candidate.start,
            return_at=candidate.end,
            total_hours=q.hours,
            total_amount=q.amount,
            status=BookingStatus.PENDING,
        )
        updated = await store.update_booking(booking_id, **fields)
    if updated is None:
        raise NotFound("Booking not found or access denied")
    return _modified(current, updated)


def _modified(previous: BookingResponse, updated: BookingResponse) -> ModificationResult:
    changed = [
        name
        for name in ("pickup_at", "return_at", "pickup_location", "notes", "total_amount")
        if getattr(previous, name) != getattr(updated, name)
    ]
    difference = Decimal(updated.total_amount) - Decimal(previous.total_amount)
    events = []
    if changed:
        logger.info("Booking {} modified: {}", updated.id, ", ".join(changed))
        events.append(
            BookingEvent(
                kind=EventKind.BOOKING_MODIFIED,
                booking_id=updated.id,
                user_id=updated.user_id,
                payload={
                    "changes": changed,
                    "old": {name: getattr(previous, name) for name in changed},
                    "new": {name: getattr(updated, name) for name in changed},
                    "amount_difference": difference,
                    "status": updated.status,
                },
            )
        )
    return ModificationResult(
        booking=updated,
        previous=previous,
        amount_difference=difference,
        changes=changed,
        events=events,
    )


# ---------------------------------------------------------------------------
# Operator status updates
# ---------------------------------------------------------------------------


async def update_status(
    store: BookingStore, booking_id: UUID, new_status: BookingStatus
) -> BookingResponse:
    """Admin-driven moves (pickup, return, re-approval). Confirming needs payment."""
    booking = await store.get_booking(booking_id)
    if booking is None:
        raise NotFound("Booking not found")
    assert_transition(booking.status, new_status)
    if new_status == BookingStatus.CONFIRMED and booking.payment_id is None:
        raise PolicyViolation("Only a verified payment can confirm an unpaid booking")

    updated = await store.update_booking(booking_id, status=new_status)
    if updated is None:
        raise NotFound("Booking not found")
    logger.info("Booking {} moved {} -> {}", booking_id, booking.status, new_status)
    return updated
