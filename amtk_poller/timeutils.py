"""Resolve upstream local timestamps into absolute instants and service dates."""
from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime
from enum import Enum
from zoneinfo import ZoneInfo

from amtk_poller.errors import MalformedTimestampError, UnknownRegionError

REGION_ZONES: dict[str, ZoneInfo] = {
    "E": ZoneInfo("America/New_York"),
    "C": ZoneInfo("America/Chicago"),
    "M": ZoneInfo("America/Denver"),
    "P": ZoneInfo("America/Los_Angeles"),
}


class TimestampFormat(str, Enum):
    # 10/4/2013 10:00:34 AM
    EVENT = "%m/%d/%Y %I:%M:%S %p"
    # 10/03/2013 04:33:00
    STOP = "%m/%d/%Y %H:%M:%S"


@dataclass(frozen=True)
class ResolvedTimestamp:
    instant: datetime
    region: str

    @property
    def epoch_seconds(self) -> int:
        return int(self.instant.timestamp())


@dataclass(frozen=True, order=True)
class ServiceDate:
    year: int
    month: int
    day: int

    @classmethod
    def from_date(cls, value: date) -> "ServiceDate":
        return cls(year=value.year, month=value.month, day=value.day)

    def as_date(self) -> date:
        return date(self.year, self.month, self.day)

    def to_gtfs(self) -> str:
        return f"{self.year:04d}{self.month:02d}{self.day:02d}"

    def __str__(self) -> str:
        return self.to_gtfs()


def zone_for_region(region: str | None) -> ZoneInfo:
    try:
        return REGION_ZONES[region]  # type: ignore[index]
    except KeyError:
        raise UnknownRegionError(region) from None


def resolve_timestamp(
    value: str | None,
    region: str | None,
    fmt: TimestampFormat = TimestampFormat.EVENT,
) -> ResolvedTimestamp:
    """Interpret ``value`` as wall-clock time in ``region`` and attach that zone.

    The region is checked first so an unknown code is reported as such even
    when the timestamp itself is also unreadable. A wall time repeated by a
    daylight saving fall-back resolves to its first occurrence (``fold=0``).
    """

    tz = zone_for_region(region)
    if not value or not value.strip():
        raise MalformedTimestampError(value, fmt.value)
    try:
        naive = datetime.strptime(value.strip(), fmt.value)
    except ValueError as exc:
        raise MalformedTimestampError(value, fmt.value) from exc
    return ResolvedTimestamp(instant=naive.replace(tzinfo=tz, fold=0), region=region)  # type: ignore[arg-type]


def service_date_for(resolved: ResolvedTimestamp) -> ServiceDate:
    local = resolved.instant.astimezone(zone_for_region(resolved.region))
    return ServiceDate.from_date(local.date())
