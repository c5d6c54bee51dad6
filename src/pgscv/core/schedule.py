"""Per-descriptor collection schedule."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone

EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)

# Interval used by expensive or rarely changing statistics.
DEFAULT_SCHEDULE_INTERVAL = timedelta(minutes=5)


def _now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(slots=True)
class Schedule:
    """Active/inactive state plus the time a descriptor last fired.

    A zero interval means the descriptor is collected on every round and is
    never gated. With a positive interval the descriptor starts inactive and
    the collection round activates it once the interval has elapsed.
    """

    interval: timedelta = timedelta(0)
    active: bool = field(default=False)
    last_fired: datetime = EPOCH

    def __post_init__(self) -> None:
        if self.interval < timedelta(0):
            raise ValueError("schedule interval must not be negative")
        if not self.gated:
            self.active = True

    @property
    def gated(self) -> bool:
        return self.interval > timedelta(0)

    def activate(self) -> None:
        self.active = True

    def deactivate(self) -> None:
        self.active = False

    def is_expired(self, now: datetime | None = None) -> bool:
        now = now or _now()
        return now - self.last_fired >= self.interval

    def mark_fired(self, now: datetime | None = None) -> None:
        """Record a completed collection; gated schedules wait for the next expiry."""
        self.last_fired = now or _now()
        if self.gated:
            self.active = False
