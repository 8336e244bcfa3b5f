from datetime import datetime

from fastapi import APIRouter, Depends

from app import errors
from app.availability import available_vehicles
from app.deps import CurrentUser, get_booking_store, get_current_user
from app.intervals import Interval
from app.schemas import VehicleResponse
from app.store import BookingStore

router = APIRouter(prefix="/vehicles", tags=["vehicles"])


@router.get("/search", response_model=list[VehicleResponse])
async def search_vehicles(
    pickup_at: datetime,
    return_at: datetime,
    location: str | None = None,
    _: CurrentUser = Depends(get_current_user),
    store: BookingStore = Depends(get_booking_store),
) -> list[VehicleResponse]:
    """Vehicles in the catalog that are free for the whole window."""
    try:
        window = Interval(pickup_at, return_at)
    except ValueError as exc:
        raise errors.ValidationError(str(exc)) from None
    return await available_vehicles(store, window, location=location)
