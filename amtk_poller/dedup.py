"""Track the last emitted update per vehicle to suppress stale re-publication."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable

from amtk_poller.timeutils import ServiceDate

LOGGER = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class VehicleKey:
    train_number: str
    service_date: ServiceDate

    def __str__(self) -> str:
        return f"{self.service_date.to_gtfs()}-{self.train_number}"


class DedupGate:
    """Owns the vehicle update state for a single polling loop.

    Retention is measured from the wall-clock time a key was last recorded,
    not from the upstream instant, so a train reporting an old timestamp is
    still remembered for the whole window.

    Not thread-safe; all calls are expected from the scheduling thread.
    """

    def __init__(
        self,
        retention: timedelta | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.retention = retention
        self.clock = clock
        self._last_update: dict[VehicleKey, datetime] = {}
        self._recorded_at: dict[VehicleKey, datetime] = {}

    def __len__(self) -> int:
        return len(self._last_update)

    def __contains__(self, key: object) -> bool:
        return key in self._last_update

    def last_update(self, key: VehicleKey) -> datetime | None:
        return self._last_update.get(key)

    def should_emit(self, key: VehicleKey, candidate: datetime) -> bool:
        previous = self._last_update.get(key)
        if previous is None:
            return True
        return candidate > previous

    def record(self, key: VehicleKey, instant: datetime) -> None:
        self._last_update[key] = instant
        self._recorded_at[key] = self.clock()

    def touch(self, key: VehicleKey) -> None:
        """Mark a known vehicle as still reporting without changing its instant."""

        if key in self._recorded_at:
            self._recorded_at[key] = self.clock()

    def prune(self, now: datetime | None = None) -> int:
        """Drop vehicles not seen within the retention window."""

        if self.retention is None:
            return 0
        cutoff = (now or self.clock()) - self.retention
        expired = [key for key, seen in self._recorded_at.items() if seen < cutoff]
        for key in expired:
            del self._last_update[key]
            del self._recorded_at[key]
        if expired:
            LOGGER.debug("Evicted %d vehicles not seen since %s", len(expired), cutoff)
        return len(expired)
