from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone


def to_utc(dt: datetime) -> datetime:
    """Ensure a datetime is UTC-aware, handling both aware and naive inputs."""
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


@dataclass(frozen=True)
class Interval:
    """Half-open rental window [start, end)."""

    start: datetime
    end: datetime

    def __post_init__(self) -> None:
        object.__setattr__(self, "start", to_utc(self.start))
        object.__setattr__(self, "end", to_utc(self.end))
        if self.end <= self.start:
            raise ValueError("interval end must be after its start")

    @property
    def duration(self) -> timedelta:
        return self.end - self.start


def overlaps(candidate: Interval, existing: Interval) -> bool:
    """
    True if the two half-open intervals share at least one instant.

    Same answer as the three-clause form (candidate starts inside existing,
    ends inside existing, or contains it), but bookings that merely touch,
    one returning exactly when the next is picked up, do not overlap.
    """
    return candidate.start < existing.end and existing.start < candidate.end


def any_overlap(candidate: Interval, existing: Iterable[Interval]) -> bool:
    return any(overlaps(candidate, other) for other in existing)
