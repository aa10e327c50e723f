"""Match reported trains to trips in the static GTFS schedule."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date
from itertools import chain
from typing import Iterable, Protocol

import psycopg2

from amtk_poller.timeutils import ServiceDate

LOGGER = logging.getLogger(__name__)

WEEKDAY_COLUMNS = (
    "monday",
    "tuesday",
    "wednesday",
    "thursday",
    "friday",
    "saturday",
    "sunday",
)

SERVICE_ADDED = 1
SERVICE_REMOVED = 2


@dataclass(frozen=True)
class ScheduledTrip:
    trip_id: str
    short_name: str | None
    service_id: str


@dataclass(frozen=True)
class MatchedTrip:
    trip_id: str
    service_date: ServiceDate


class ScheduleLookup(Protocol):
    def service_ids_for_date(self, service_date: date) -> list[str]:
        ...

    def trips_for_service_id(self, service_id: str) -> list[ScheduledTrip]:
        ...


class ScheduleMatcher:
    def __init__(self, lookup: ScheduleLookup) -> None:
        self.lookup = lookup

    def find_trip(self, train_number: str, service_date: ServiceDate) -> MatchedTrip | None:
        """Return the first scheduled trip whose short name is ``train_number``.

        Trips are scanned service by service in the order the lookup returns
        them. ``None`` means the train has no scheduled trip on that date,
        which is routine (extra sections, trains not running that day).
        """

        service_ids = self.lookup.service_ids_for_date(service_date.as_date())
        if not service_ids:
            return None
        trips: Iterable[ScheduledTrip] = chain.from_iterable(
            self.lookup.trips_for_service_id(service_id) for service_id in service_ids
        )
        for trip in trips:
            if trip.short_name == train_number:
                return MatchedTrip(trip_id=trip.trip_id, service_date=service_date)
        return None


class PostgresScheduleLookup:
    """Schedule queries against the dimension tables loaded by ``static_gtfs``.

    Results are cached per date and per service id for the lifetime of the
    instance; build a new one after the static tables are reloaded.
    """

    def __init__(self, conn: psycopg2.extensions.connection) -> None:
        self.conn = conn
        self._services_by_date: dict[date, list[str]] = {}
        self._trips_by_service: dict[str, list[ScheduledTrip]] = {}

    def _query(self, statement: str, params: tuple) -> list[tuple]:
        try:
            with self.conn.cursor() as cur:
                cur.execute(statement, params)
                rows = cur.fetchall()
        except psycopg2.Error:
            self.conn.rollback()
            raise
        # End the read-only transaction.
        self.conn.commit()
        return rows

    def service_ids_for_date(self, service_date: date) -> list[str]:
        if service_date in self._services_by_date:
            return self._services_by_date[service_date]

        weekday_column = WEEKDAY_COLUMNS[service_date.weekday()]
        rows = self._query(
            f"""
            SELECT service_id
            FROM dim_calendar
            WHERE start_date <= %s AND end_date >= %s AND {weekday_column} = 1
            """,
            (service_date, service_date),
        )
        active = {row[0] for row in rows}
        exceptions = self._query(
            """
            SELECT service_id, exception_type
            FROM dim_calendar_dates
            WHERE service_date = %s
            """,
            (service_date,),
        )

        for service_id, exception_type in exceptions:
            if exception_type == SERVICE_ADDED:
                active.add(service_id)
            elif exception_type == SERVICE_REMOVED:
                active.discard(service_id)

        service_ids = sorted(active)
        if not service_ids:
            LOGGER.debug("No active services on %s", service_date.isoformat())
        self._services_by_date[service_date] = service_ids
        return service_ids

    def trips_for_service_id(self, service_id: str) -> list[ScheduledTrip]:
        if service_id in self._trips_by_service:
            return self._trips_by_service[service_id]
        rows = self._query(
            """
            SELECT trip_id, trip_short_name
            FROM dim_trips
            WHERE service_id = %s
            ORDER BY trip_id
            """,
            (service_id,),
        )
        trips = [
            ScheduledTrip(trip_id=row[0], short_name=row[1], service_id=service_id)
            for row in rows
        ]
        self._trips_by_service[service_id] = trips
        return trips
