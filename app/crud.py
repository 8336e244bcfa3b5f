from __future__ import annotations

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any
from uuid import UUID

from loguru import logger
from tortoise.exceptions import BaseORMException
from tortoise.transactions import in_transaction

from app.errors import StoreError
from app.models import Booking, Vehicle
from app.schemas import (
    BLOCKING_STATUSES,
    BookingFilters,
    BookingResponse,
    BookingStatus,
    PaymentStatus,
    VehicleResponse,
)

# Columns callers may write through update_booking
_UPDATABLE = {
    "pickup_at",
    "return_at",
    "pickup_location",
    "status",
    "payment_status",
    "total_hours",
    "total_amount",
    "order_id",
    "payment_id",
    "notes",
}


@asynccontextmanager
async def _store_errors(operation: str) -> AsyncIterator[None]:
    """Translate ORM/driver failures into StoreError."""
    try:
        yield
    except BaseORMException as exc:
        logger.error("Store operation {} failed: {}", operation, exc)
        raise StoreError(f"Booking store unavailable during {operation}") from exc


class TortoiseBookingStore:
    @asynccontextmanager
    async def lock_vehicle(self, vehicle_id: UUID) -> AsyncIterator[None]:
        """
        Transaction holding the vehicle row with SELECT ... FOR UPDATE.
        Concurrent writers for the same vehicle, in any worker, wait here
        until the holder commits; everything inside shares the transaction.
        """
        async with _store_errors("lock_vehicle"):
            async with in_transaction():
                await Vehicle.filter(id=vehicle_id).select_for_update().first()
                yield

    async def get_vehicle(self, vehicle_id: UUID) -> VehicleResponse | None:
        async with _store_errors("get_vehicle"):
            inst = await Vehicle.get_or_none(id=vehicle_id)
        if not inst:
            return None
        return VehicleResponse.model_validate(inst, from_attributes=True)

    async def list_vehicles(self, location: str | None = None) -> list[VehicleResponse]:
        qs = Vehicle.filter(available=True)
        if location:
            qs = qs.filter(location__icontains=location)
        async with _store_errors("list_vehicles"):
            vehicles = await qs
        return [VehicleResponse.model_validate(v, from_attributes=True) for v in vehicles]

    async def list_blocking_bookings(
        self, vehicle_id: UUID | None = None, ending_after: datetime | None = None
    ) -> list[BookingResponse]:
        qs = Booking.filter(status__in=list(BLOCKING_STATUSES))
        if vehicle_id is not None:
            qs = qs.filter(vehicle_id=vehicle_id)
        if ending_after is not None:
            qs = qs.filter(return_at__gt=ending_after)
        async with _store_errors("list_blocking_bookings"):
            bookings = await qs
        return [BookingResponse.model_validate(b, from_attributes=True) for b in bookings]

    async def get_booking(
        self, booking_id: UUID, user_id: UUID | None = None
    ) -> BookingResponse | None:
        async with _store_errors("get_booking"):
            if user_id is not None:
                inst = await Booking.get_or_none(id=booking_id, user_id=user_id)
            else:
                inst = await Booking.get_or_none(id=booking_id)
        if not inst:
            return None
        return BookingResponse.model_validate(inst, from_attributes=True)

    async def get_booking_by_order(self, order_id: str) -> BookingResponse | None:
        async with _store_errors("get_booking_by_order"):
            inst = await Booking.filter(order_id=order_id).first()
        if not inst:
            return None
        return BookingResponse.model_validate(inst, from_attributes=True)

    async def list_bookings(
        self, filters: BookingFilters, user_id: UUID | None = None
    ) -> list[BookingResponse]:
        qs = Booking.all()

        if user_id is not None:
            qs = qs.filter(user_id=user_id)
        if filters.vehicle_id is not None:
            qs = qs.filter(vehicle_id=filters.vehicle_id)
        if filters.status is not None:
            qs = qs.filter(status=filters.status)

        offset = (filters.page - 1) * filters.page_size
        qs = qs.offset(offset).limit(filters.page_size)

        async with _store_errors("list_bookings"):
            bookings = await qs
        return [BookingResponse.model_validate(b, from_attributes=True) for b in bookings]

    async def insert_booking(self, **fields: Any) -> BookingResponse:
        async with _store_errors("insert_booking"):
            inst = await Booking.create(**fields)
        return BookingResponse.model_validate(inst, from_attributes=True)

    async def update_booking(
        self, booking_id: UUID, **fields: Any
    ) -> BookingResponse | None:
        unknown = set(fields) - _UPDATABLE
        if unknown:
            raise ValueError(f"Cannot update booking columns: {sorted(unknown)}")

        async with _store_errors("update_booking"):
            inst = await Booking.get_or_none(id=booking_id)
            if not inst:
                return None
            for name, value in fields.items():
                setattr(inst, name, value)
            await inst.save(update_fields=[*fields, "updated_at"])
        return BookingResponse.model_validate(inst, from_attributes=True)

    async def delete_booking(self, booking_id: UUID) -> bool:
        async with _store_errors("delete_booking"):
            deleted = await Booking.filter(id=booking_id).delete()
        return deleted > 0

    async def list_stale_pending(self, cutoff: datetime) -> list[BookingResponse]:
        async with _store_errors("list_stale_pending"):
            bookings = await Booking.filter(
                status=BookingStatus.PENDING,
                payment_status=PaymentStatus.PENDING,
                payment_id__isnull=True,
                created_at__lt=cutoff,
            )
        return [BookingResponse.model_validate(b, from_attributes=True) for b in bookings]


booking_store = TortoiseBookingStore()
