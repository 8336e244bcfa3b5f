"""
Read-through Redis cache for the public slots view of a vehicle.

Display only: availability decisions always go to the store. A Redis
failure or an undecodable entry reads as a miss.
"""

from uuid import UUID

from loguru import logger
from pydantic import TypeAdapter
from pydantic import ValidationError as SchemaError
from redis.asyncio import Redis
from redis.exceptions import RedisError

from app import settings
from app.schemas import BookingSlot

_slots_adapter = TypeAdapter(list[BookingSlot])
_redis: Redis | None = None


def get_redis() -> Redis:
    global _redis
    if _redis is None:
        _redis = Redis.from_url(settings.REDIS_URL, decode_responses=True)
    return _redis


def slots_key(vehicle_id: UUID) -> str:
    return f"rentals:vehicle:{vehicle_id}:slots"


async def get_slots_cache(vehicle_id: UUID) -> list[BookingSlot] | None:
    key = slots_key(vehicle_id)
    try:
        raw = await get_redis().get(key)
    except RedisError as exc:
        logger.warning("Slots cache unreachable, reading {} from the store: {}", key, exc)
        return None
    if raw is None:
        return None

    try:
        return _slots_adapter.validate_json(raw)
    except SchemaError:
        logger.warning("Discarding undecodable slots cache entry {}", key)
        await invalidate_slots_cache(vehicle_id)
        return None


async def set_slots_cache(vehicle_id: UUID, slots: list[BookingSlot]) -> None:
    key = slots_key(vehicle_id)
    try:
        await get_redis().setex(
            key, settings.SLOTS_CACHE_TTL_SECONDS, _slots_adapter.dump_json(slots)
        )
    except RedisError as exc:
        logger.warning("Could not cache slots under {}: {}", key, exc)


async def invalidate_slots_cache(vehicle_id: UUID) -> None:
    """Called after every write that changes what blocks the vehicle."""
    key = slots_key(vehicle_id)
    try:
        await get_redis().delete(key)
    except RedisError as exc:
        logger.warning("Could not drop slots cache {}: {}", key, exc)
