"""
The store contract the booking core is written against.

The core never imports the ORM: every component receives a `BookingStore`
and only uses the query shapes below. `app.crud.TortoiseBookingStore` is the
production implementation; tests pass an in-memory fake with the same
methods. Every "recheck availability, then write" sequence runs inside
`lock_vehicle`, which the store backs with its own locking primitive.
"""

from __future__ import annotations

from contextlib import AbstractAsyncContextManager
from datetime import datetime
from typing import Any, Protocol
from uuid import UUID

from app.schemas import BookingFilters, BookingResponse, VehicleResponse


class BookingStore(Protocol):
    def lock_vehicle(self, vehicle_id: UUID) -> AbstractAsyncContextManager[None]:
        """
        Exclusive write section for one vehicle. Writers for the same vehicle
        queue up behind it; reads and writes issued inside see each other.
        """
        ...

    async def get_vehicle(self, vehicle_id: UUID) -> VehicleResponse | None: ...

    async def list_vehicles(
        self, location: str | None = None
    ) -> list[VehicleResponse]:
        """Catalog vehicles with `available=True`, optionally filtered by location."""
        ...

    async def list_blocking_bookings(
        self, vehicle_id: UUID | None = None, ending_after: datetime | None = None
    ) -> list[BookingResponse]:
        """
        Bookings in the blocking set, for one vehicle or for all of them.
        With `ending_after`, rentals already returned by then are left out.
        """
        ...

    async def get_booking(
        self, booking_id: UUID, user_id: UUID | None = None
    ) -> BookingResponse | None: ...

    async def get_booking_by_order(self, order_id: str) -> BookingResponse | None: ...

    async def list_bookings(
        self, filters: BookingFilters, user_id: UUID | None = None
    ) -> list[BookingResponse]: ...

    async def insert_booking(self, **fields: Any) -> BookingResponse: ...

    async def update_booking(
        self, booking_id: UUID, **fields: Any
    ) -> BookingResponse | None: ...

    async def delete_booking(self, booking_id: UUID) -> bool: ...

    async def list_stale_pending(self, cutoff: datetime) -> list[BookingResponse]:
        """Unpaid pending bookings created before `cutoff`."""
        ...
