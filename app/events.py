from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from enum import StrEnum
from typing import Any, Protocol
from uuid import UUID

from loguru import logger


class EventKind(StrEnum):
    BOOKING_CONFIRMED = "booking_confirmed"
    BOOKING_CANCELLED = "booking_cancelled"
    BOOKING_MODIFIED = "booking_modified"


@dataclass(frozen=True)
class BookingEvent:
    """Something to tell the customer once a transition has been persisted."""

    kind: EventKind
    booking_id: UUID
    user_id: UUID
    payload: dict[str, Any] = field(default_factory=dict)
    event_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    occurred_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_message(self) -> dict[str, Any]:
        return {
            "event_id": self.event_id,
            "event_type": str(self.kind),
            "occurred_at": self.occurred_at.isoformat(),
            "data": {
                "booking_id": str(self.booking_id),
                "user_id": str(self.user_id),
                **_jsonable(self.payload),
            },
        }


def _jsonable(value: Any) -> Any:
    if isinstance(value, dict):
        return {k: _jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_jsonable(v) for v in value]
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, (Decimal, UUID)):
        return str(value)
    return value


@dataclass(frozen=True)
class SendResult:
    success: bool
    error: str | None = None


class Notifier(Protocol):
    async def send(self, kind: str, payload: dict[str, Any]) -> SendResult: ...


async def dispatch_events(events: list[BookingEvent], notifier: Notifier) -> int:
    """
    Deliver post-commit events, best effort. Returns how many were delivered.
    A failed notification never fails the booking operation that produced it.
    """
    delivered = 0
    for event in events:
        try:
            result = await notifier.send(str(event.kind), event.to_message())
        except Exception:
            logger.warning(
                "Notification {} for booking {} raised", event.kind, event.booking_id,
                exc_info=True,
            )
            continue
        if result.success:
            delivered += 1
        else:
            logger.warning(
                "Notification {} for booking {} failed: {}",
                event.kind,
                event.booking_id,
                result.error,
            )
    return delivered
