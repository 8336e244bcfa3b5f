from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone

from loguru import logger

from app import settings
from app.cache import invalidate_slots_cache
from app.errors import StoreError
from app.store import BookingStore


async def expire_abandoned_bookings(
    store: BookingStore,
    now: datetime | None = None,
    hold: timedelta | None = None,
) -> int:
    """
    Delete pending placeholders whose checkout was abandoned without a
    dismissal ever reaching us (closed tab, crashed browser).
    Returns the number of rows removed.
    """
    now = now or datetime.now(timezone.utc)
    hold = hold if hold is not None else timedelta(minutes=settings.PENDING_HOLD_MINUTES)

    stale = await store.list_stale_pending(now - hold)
    removed = 0
    for booking in stale:
        if await store.delete_booking(booking.id):
            removed += 1
            await invalidate_slots_cache(booking.vehicle_id)
            logger.info(
                "Expired abandoned booking {} (vehicle {}, order {})",
                booking.id,
                booking.vehicle_id,
                booking.order_id,
            )
    return removed


async def sweep_loop(
    store: BookingStore,
    stop_event: asyncio.Event,
    interval: float | None = None,
) -> None:
    interval = interval if interval is not None else settings.SWEEP_INTERVAL_SECONDS
    while not stop_event.is_set():
        try:
            await expire_abandoned_bookings(store)
        except StoreError:
            logger.warning("Abandoned-booking sweep failed; retrying next tick")
        try:
            await asyncio.wait_for(stop_event.wait(), timeout=interval)
        except asyncio.TimeoutError:
            continue
