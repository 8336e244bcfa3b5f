from datetime import datetime, timezone
from uuid import UUID

from fastapi import APIRouter, BackgroundTasks, Depends, status
from fastapi.responses import JSONResponse
from loguru import logger

from app import errors, settings
from app.availability import blocking_intervals, is_available
from app.cache import get_slots_cache, invalidate_slots_cache, set_slots_cache
from app.commit import PaymentResult, commit_booking
from app.deps import (
    CurrentUser,
    NotificationsClient,
    RazorpayClient,
    can_admin_write_booking,
    can_cancel_booking,
    can_modify_booking,
    can_read_or_admin_booking,
    can_write_booking,
    get_booking_store,
    get_current_user,
    get_notifications_client,
    get_payment_gateway,
    get_payment_secret,
    is_booking_admin,
)
from app.events import dispatch_events
from app.intervals import Interval
from app.lifecycle import cancel_booking, modify_booking, update_status
from app.orders import OrderIntent, create_order, release_order
from app.pricing import policy_from_settings, quote
from app.schemas import (
    AvailabilityResponse,
    BookingFilters,
    BookingModify,
    BookingResponse,
    BookingSlot,
    BookingStatusUpdate,
    CancelRequest,
    CancelResponse,
    CommitResponse,
    ModifyResponse,
    OrderCreate,
    OrderResponse,
    PaymentCallback,
    QuoteRequest,
    QuoteResponse,
)
from app.store import BookingStore

router = APIRouter(prefix="/bookings", tags=["bookings"])


def _window(pickup_at: datetime, return_at: datetime) -> Interval:
    try:
        return Interval(pickup_at, return_at)
    except ValueError as exc:
        raise errors.ValidationError(str(exc)) from None


# ---------------------------------------------------------------------------
# Availability and pricing
# ---------------------------------------------------------------------------


@router.get("/slots", response_model=list[BookingSlot])
async def get_vehicle_slots(
    vehicle_id: UUID,
    _: CurrentUser = Depends(get_current_user),
    store: BookingStore = Depends(get_booking_store),
) -> list[BookingSlot]:
    """
    Returns occupied time windows for a vehicle.
    Any authenticated user can call this: response contains NO user identity.
    """
    cached = await get_slots_cache(vehicle_id)
    if cached is not None:
        logger.debug("Cache hit for slots: vehicle_id={}", vehicle_id)
        return cached

    logger.debug("Cache miss for slots: vehicle_id={}", vehicle_id)
    now = datetime.now(timezone.utc)
    bookings = await store.list_blocking_bookings(vehicle_id, ending_after=now)
    slots = [
        BookingSlot(vehicle_id=vehicle_id, pickup_at=i.start, return_at=i.end)
        for i in blocking_intervals(bookings, now=now)
    ]
    await set_slots_cache(vehicle_id, slots)
    return slots


@router.get("/availability", response_model=AvailabilityResponse)
async def check_availability(
    vehicle_id: UUID,
    pickup_at: datetime,
    return_at: datetime,
    _: CurrentUser = Depends(get_current_user),
    store: BookingStore = Depends(get_booking_store),
) -> AvailabilityResponse:
    available = await is_available(store, vehicle_id, _window(pickup_at, return_at))
    return AvailabilityResponse(vehicle_id=vehicle_id, available=available)


@router.post("/quote", response_model=QuoteResponse)
async def get_quote(
    payload: QuoteRequest,
    _: CurrentUser = Depends(get_current_user),
    store: BookingStore = Depends(get_booking_store),
) -> QuoteResponse:
    vehicle = await store.get_vehicle(payload.vehicle_id)
    if vehicle is None:
        raise errors.NotFound("Vehicle not found")
    q = quote(
        payload.pickup_at, payload.return_at, vehicle.price_per_hour, policy_from_settings()
    )
    return QuoteResponse(
        **q.model_dump(), vehicle_id=vehicle.id, currency=settings.DEFAULT_CURRENCY
    )


# ---------------------------------------------------------------------------
# Payment orders and commit
# ---------------------------------------------------------------------------


@router.post("/orders", response_model=OrderResponse, status_code=status.HTTP_201_CREATED)
async def open_payment_order(
    payload: OrderCreate,
    current_user: CurrentUser = Depends(can_write_booking),
    store: BookingStore = Depends(get_booking_store),
    gateway: RazorpayClient = Depends(get_payment_gateway),
) -> OrderResponse:
    result = await create_order(
        store,
        gateway,
        OrderIntent(
            vehicle_id=payload.vehicle_id,
            user_id=current_user.id,
            pickup_at=payload.pickup_at,
            return_at=payload.return_at,
            pickup_location=payload.pickup_location,
            notes=payload.notes,
            amount=payload.amount,
        ),
    )
    if result.booking_id is not None:
        await invalidate_slots_cache(payload.vehicle_id)
    return OrderResponse(
        order_id=result.order_id,
        amount=result.amount,
        currency=result.currency,
        key_id=result.key_id,
        booking_id=result.booking_id,
    )


@router.post("/orders/{order_id}/release")
async def release_payment_order(
    order_id: str,
    current_user: CurrentUser = Depends(can_write_booking),
    store: BookingStore = Depends(get_booking_store),
) -> dict:
    """Checkout dismissed or payment failed: give back the held slot."""
    released = await release_order(store, order_id, current_user.id)
    if released is not None:
        await invalidate_slots_cache(released.vehicle_id)
    return {"released": released is not None}


@router.post(
    "/confirm",
    response_model=CommitResponse,
    responses={status.HTTP_409_CONFLICT: {"model": CommitResponse}},
)
async def confirm_booking(
    payload: PaymentCallback,
    background_tasks: BackgroundTasks,
    current_user: CurrentUser = Depends(can_write_booking),
    store: BookingStore = Depends(get_booking_store),
    gateway: RazorpayClient = Depends(get_payment_gateway),
    secret: str = Depends(get_payment_secret),
    notifier: NotificationsClient = Depends(get_notifications_client),
):
    result = await commit_booking(
        store,
        gateway,
        PaymentResult(
            payment_id=payload.payment_id,
            order_id=payload.order_id,
            signature=payload.signature,
            vehicle_id=payload.vehicle_id,
            user_id=current_user.id,
            pickup_at=payload.pickup_at,
            return_at=payload.return_at,
            pickup_location=payload.pickup_location,
            notes=payload.notes,
        ),
        secret,
    )
    await invalidate_slots_cache(payload.vehicle_id)

    body = CommitResponse(
        state=result.state,
        booking=result.booking,
        message=result.message,
        payment_id=result.payment_id,
        conflict_error=result.conflicted,
    )
    if result.conflicted:
        return JSONResponse(
            status_code=status.HTTP_409_CONFLICT, content=body.model_dump(mode="json")
        )

    background_tasks.add_task(dispatch_events, result.events, notifier)
    return body


# ---------------------------------------------------------------------------
# Reading bookings
# ---------------------------------------------------------------------------


@router.get("/", response_model=list[BookingResponse])
async def list_bookings(
    filters: BookingFilters = Depends(),
    current_user: CurrentUser = Depends(can_read_or_admin_booking),
    store: BookingStore = Depends(get_booking_store),
) -> list[BookingResponse]:
    if is_booking_admin(current_user):
        return await store.list_bookings(filters=filters)
    return await store.list_bookings(filters=filters, user_id=current_user.id)


@router.get("/{booking_id}", response_model=BookingResponse)
async def get_booking(
    booking_id: UUID,
    current_user: CurrentUser = Depends(can_read_or_admin_booking),
    store: BookingStore = Depends(get_booking_store),
) -> BookingResponse:
    if is_booking_admin(current_user):
        booking = await store.get_booking(booking_id)
    else:
        booking = await store.get_booking(booking_id, user_id=current_user.id)

    if not booking:
        raise errors.NotFound("Booking not found")
    return booking


# ---------------------------------------------------------------------------
# Lifecycle
# ---------------------------------------------------------------------------


@router.post("/{booking_id}/cancel", response_model=CancelResponse)
async def cancel(
    booking_id: UUID,
    background_tasks: BackgroundTasks,
    payload: CancelRequest | None = None,
    current_user: CurrentUser = Depends(can_cancel_booking),
    store: BookingStore = Depends(get_booking_store),
    notifier: NotificationsClient = Depends(get_notifications_client),
) -> CancelResponse:
    reason = payload.reason if payload else None
    result = await cancel_booking(store, booking_id, current_user.id, reason)
    await invalidate_slots_cache(result.booking.vehicle_id)
    background_tasks.add_task(dispatch_events, result.events, notifier)
    return CancelResponse(
        booking=result.booking,
        refund=result.refund,
        message="Booking cancelled successfully",
    )


@router.patch("/{booking_id}", response_model=ModifyResponse)
async def modify(
    booking_id: UUID,
    payload: BookingModify,
    background_tasks: BackgroundTasks,
    current_user: CurrentUser = Depends(can_modify_booking),
    store: BookingStore = Depends(get_booking_store),
    notifier: NotificationsClient = Depends(get_notifications_client),
) -> ModifyResponse:
    result = await modify_booking(store, booking_id, current_user.id, payload)
    if payload.changes_dates:
        await invalidate_slots_cache(result.booking.vehicle_id)
    background_tasks.add_task(dispatch_events, result.events, notifier)
    return ModifyResponse(
        booking=result.booking,
        amount_difference=result.amount_difference,
        changes=result.changes,
        message="Booking modified successfully",
    )


@router.patch(
    "/{booking_id}/status",
    response_model=BookingResponse,
    dependencies=[Depends(can_admin_write_booking)],
)
async def change_status(
    booking_id: UUID,
    payload: BookingStatusUpdate,
    store: BookingStore = Depends(get_booking_store),
) -> BookingResponse:
    updated = await update_status(store, booking_id, payload.status)
    await invalidate_slots_cache(updated.vehicle_id)
    return updated
