"""
Payment verification and booking commit.

    NoBooking ──order──► PendingPayment ──callback──► Confirmed
                                            ├──────► Conflicted
                                            └──────► Failed / RolledBack

A verified payment only becomes a booking if the slot is still free when it
comes back. Availability was already checked before the order was opened,
but the checkout round-trip is long enough for someone else to book the same
slot, so the check is repeated inside the store's vehicle lock right before
writing. When that recheck fails the money has moved but no booking is
made: the customer is told the payment will be refunded and inventory stays
consistent.

The booked terms are read back from the provider order, so a callback
cannot book a window, vehicle or price other than the one paid for.
"""

from __future__ import annotations

import hashlib
import hmac
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from enum import StrEnum
from typing import Any
from uuid import UUID

from loguru import logger

from app import settings
from app.availability import is_available
from app.errors import NotFound, PaymentVerificationFailed, StoreError
from app.events import BookingEvent, EventKind
from app.intervals import Interval
from app.orders import PaymentGateway
from app.pricing import (
    REFUND_PROCESSING_TIME,
    PricingPolicy,
    ensure_min_duration,
    from_minor_units,
    policy_from_settings,
    quote,
)
from app.schemas import BookingResponse, BookingStatus, PaymentStatus
from app.store import BookingStore

CONFIRMED_MESSAGE = "Booking confirmed successfully!"
CONFLICT_MESSAGE = (
    "This time slot was booked by someone else while you were making payment. "
    "Please select different dates and your payment will be refunded within "
    f"{REFUND_PROCESSING_TIME}."
)


class CommitState(StrEnum):
    CONFIRMED = "confirmed"
    CONFLICTED = "conflicted"


@dataclass(frozen=True)
class PaymentResult:
    """Signed checkout result plus the booking intent it pays for."""

    payment_id: str
    order_id: str
    signature: str
    vehicle_id: UUID
    user_id: UUID
    pickup_at: datetime
    return_at: datetime
    pickup_location: str | None = None
    notes: str | None = None


@dataclass
class CommitResult:
    state: CommitState
    payment_id: str
    message: str
    booking: BookingResponse | None = None
    events: list[BookingEvent] = field(default_factory=list)

    @property
    def conflicted(self) -> bool:
        return self.state == CommitState.CONFLICTED


def sign(order_id: str, payment_id: str, secret: str) -> str:
    return hmac.new(
        secret.encode(), f"{order_id}|{payment_id}".encode(), hashlib.sha256
    ).hexdigest()


def verify_signature(order_id: str, payment_id: str, signature: str, secret: str) -> bool:
    return hmac.compare_digest(sign(order_id, payment_id, secret), signature)


def direct_payments_enabled() -> bool:
    return settings.ALLOW_TEST_PAYMENTS and settings.ENVIRONMENT != "production"


def is_test_payment(payment_id: str, enabled: bool | None = None) -> bool:
    """Direct/test bookings, recognised by the payment id prefix."""
    if enabled is None:
        enabled = direct_payments_enabled()
    return enabled and payment_id.startswith(settings.TEST_PAYMENT_PREFIX)


def _check_signature(payment: PaymentResult, secret: str, test_payment: bool) -> None:
    if test_payment:
        logger.warning(
            "Skipping signature check for test payment {} (order {})",
            payment.payment_id,
            payment.order_id,
        )
        return
    if not secret:
        logger.error("Payment secret not configured; rejecting order {}", payment.order_id)
        raise PaymentVerificationFailed("Payment verification failed")
    if not verify_signature(payment.order_id, payment.payment_id, payment.signature, secret):
        logger.warning(
            "Signature mismatch for order {} payment {}", payment.order_id, payment.payment_id
        )
        raise PaymentVerificationFailed("Payment verification failed")


@dataclass(frozen=True)
class OrderedTerms:
    """What the provider order was opened for; the callback must agree."""

    vehicle_id: UUID
    user_id: UUID
    window: Interval
    # Paid amount; None for test payments, which have no provider order
    amount: Decimal | None = None
    pickup_location: str | None = None
    notes: str | None = None


def _callback_terms(payment: PaymentResult) -> OrderedTerms:
    return OrderedTerms(
        vehicle_id=payment.vehicle_id,
        user_id=payment.user_id,
        window=Interval(payment.pickup_at, payment.return_at),
        pickup_location=payment.pickup_location,
        notes=payment.notes,
    )


def ordered_terms(order: dict[str, Any]) -> OrderedTerms:
    """Read the booking intent back out of a provider order's notes."""
    notes = order.get("notes") or {}
    try:
        return OrderedTerms(
            vehicle_id=UUID(notes["vehicleId"]),
            user_id=UUID(notes["userId"]),
            window=Interval(
                datetime.fromisoformat(notes["pickupDate"]),
                datetime.fromisoformat(notes["returnDate"]),
            ),
            amount=from_minor_units(int(order["amount"])),
            pickup_location=notes.get("pickupLocation") or None,
            notes=notes.get("specialRequests") or None,
        )
    except (KeyError, TypeError, ValueError):
        logger.warning("Order {} carries no usable booking intent", order.get("id"))
        raise PaymentVerificationFailed("Payment verification failed") from None


async def _paid_terms(
    gateway: PaymentGateway, payment: PaymentResult, test_payment: bool
) -> OrderedTerms:
    claimed = _callback_terms(payment)
    if test_payment:
        return claimed

    terms = ordered_terms(await gateway.fetch_order(payment.order_id))
    if (
        terms.vehicle_id != claimed.vehicle_id
        or terms.user_id != claimed.user_id
        or terms.window != claimed.window
    ):
        logger.warning(
            "Callback for order {} does not match the order: vehicle {} [{} - {})",
            payment.order_id,
            claimed.vehicle_id,
            claimed.window.start,
            claimed.window.end,
        )
        raise PaymentVerificationFailed("Payment does not match the order it was made for")
    return OrderedTerms(
        vehicle_id=terms.vehicle_id,
        user_id=terms.user_id,
        window=terms.window,
        amount=terms.amount,
        pickup_location=terms.pickup_location or claimed.pickup_location,
        notes=terms.notes or claimed.notes,
    )


def _holds_terms(placeholder: BookingResponse, terms: OrderedTerms) -> bool:
    return (
        placeholder.user_id == terms.user_id
        and placeholder.vehicle_id == terms.vehicle_id
        and Interval(placeholder.pickup_at, placeholder.return_at) == terms.window
    )


async def commit_booking(
    store: BookingStore,
    gateway: PaymentGateway,
    payment: PaymentResult,
    secret: str,
    policy: PricingPolicy | None = None,
    test_payments: bool | None = None,
    now: datetime | None = None,
) -> CommitResult:
    """
    Turn a verified payment into a confirmed booking, or report the conflict.

    The booked vehicle, window and amount come from the provider order, not
    from the callback. Raises ValidationError, PaymentVerificationFailed,
    PaymentGatewayError, NotFound or StoreError. A lost race is not an error:
    it comes back as CommitState.CONFLICTED.
    """
    ensure_min_duration(payment.pickup_at, payment.return_at)
    test_payment = is_test_payment(payment.payment_id, test_payments)

    # 1. Authenticity, before anything is read or written
    _check_signature(payment, secret, test_payment)
    terms = await _paid_terms(gateway, payment, test_payment)

    vehicle = await store.get_vehicle(terms.vehicle_id)
    if vehicle is None:
        raise NotFound("Vehicle not found")

    async with store.lock_vehicle(terms.vehicle_id):
        existing = await store.get_booking_by_order(payment.order_id)
        if existing is not None and existing.payment_id is not None:
            return _already_committed(existing, payment)

        placeholder = None
        if existing is not None:
            if not _holds_terms(existing, terms):
                logger.warning(
                    "Pending booking {} does not match order {}",
                    existing.id,
                    payment.order_id,
                )
                raise PaymentVerificationFailed(
                    "Payment does not match the booking it was ordered for"
                )
            if existing.status != BookingStatus.PENDING:
                # Released (cancelled) while the customer was paying
                return _conflicted(payment)
            placeholder = existing

        # 2. Commit-time recheck
        free = await is_available(
            store,
            terms.vehicle_id,
            terms.window,
            exclude_booking_id=placeholder.id if placeholder else None,
            now=now,
        )
        if not free:
            logger.warning(
                "Slot taken during payment: vehicle {} order {} payment {}",
                terms.vehicle_id,
                payment.order_id,
                payment.payment_id,
            )
            if placeholder is not None:
                await _drop_placeholder(store, placeholder.id)
            return _conflicted(payment)

        # 3. Commit
        paid_fields: dict[str, Any] = dict(
            status=BookingStatus.CONFIRMED,
            payment_status=PaymentStatus.PENDING if test_payment else PaymentStatus.PAID,
            payment_id=payment.payment_id,
            order_id=payment.order_id,
        )
        if terms.amount is not None:
            paid_fields["total_amount"] = terms.amount
        try:
            booking = None
            if placeholder is not None:
                booking = await store.update_booking(placeholder.id, **paid_fields)
            if booking is None:
                q = quote(
                    terms.window.start,
                    terms.window.end,
                    vehicle.price_per_hour,
                    policy or policy_from_settings(),
                )
                paid_fields.setdefault("total_amount", q.amount)
                booking = await store.insert_booking(
                    vehicle_id=terms.vehicle_id,
                    user_id=terms.user_id,
                    pickup_at=terms.window.start,
                    return_at=terms.window.end,
                    pickup_location=terms.pickup_location,
                    total_hours=q.hours,
                    currency=settings.DEFAULT_CURRENCY,
                    notes=terms.notes,
                    **paid_fields,
                )
        except StoreError as exc:
            logger.error(
                "Payment {} verified but booking could not be stored", payment.payment_id
            )
            raise StoreError(
                "Failed to create booking after payment. Please contact support "
                f"with payment ID: {payment.payment_id}"
            ) from exc

    logger.info(
        "Booking {} confirmed for vehicle {} [{} - {}) payment {}",
        booking.id,
        booking.vehicle_id,
        booking.pickup_at,
        booking.return_at,
        booking.payment_status,
    )
    # 4. Notify, after the fact and outside the state machine
    event = BookingEvent(
        kind=EventKind.BOOKING_CONFIRMED,
        booking_id=booking.id,
        user_id=booking.user_id,
        payload={
            "vehicle_id": booking.vehicle_id,
            "vehicle_name": vehicle.name,
            "pickup_at": booking.pickup_at,
            "return_at": booking.return_at,
            "pickup_location": booking.pickup_location,
            "total_hours": booking.total_hours,
            "total_amount": booking.total_amount,
            "currency": booking.currency,
            "payment_id": booking.payment_id,
            "notes": booking.notes,
        },
    )
    return CommitResult(
        state=CommitState.CONFIRMED,
        payment_id=payment.payment_id,
        message=CONFIRMED_MESSAGE,
        booking=booking,
        events=[event],
    )


def _already_committed(existing: BookingResponse, payment: PaymentResult) -> CommitResult:
    """A replayed callback for an order that was already settled."""
    if existing.payment_id != payment.payment_id or existing.user_id != payment.user_id:
        logger.warning(
            "Order {} already settled by payment {}; rejecting payment {}",
            payment.order_id,
            existing.payment_id,
            payment.payment_id,
        )
        raise PaymentVerificationFailed("Payment order has already been used")
    logger.info("Duplicate confirmation for order {} ignored", payment.order_id)
    return CommitResult(
        state=CommitState.CONFIRMED,
        payment_id=payment.payment_id,
        message=CONFIRMED_MESSAGE,
        booking=existing,
    )


async def _drop_placeholder(store: BookingStore, booking_id: UUID) -> None:
    try:
        await store.delete_booking(booking_id)
    except StoreError:
        logger.error("Could not remove pending booking {} after conflict", booking_id)


def _conflicted(payment: PaymentResult) -> CommitResult:
    return CommitResult(
        state=CommitState.CONFLICTED,
        payment_id=payment.payment_id,
        message=CONFLICT_MESSAGE,
    )
