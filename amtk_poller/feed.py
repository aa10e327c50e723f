"""Build GTFS-realtime entities from normalized train records."""
from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any, Mapping

from google.transit import gtfs_realtime_pb2

from amtk_poller.dedup import VehicleKey
from amtk_poller.errors import MalformedFieldError, MissingFieldError, UnknownHeadingError
from amtk_poller.records import NormalizedRecord
from amtk_poller.schedule import MatchedTrip
from amtk_poller.timeutils import ResolvedTimestamp, TimestampFormat, resolve_timestamp

MPH_TO_METERS_PER_SECOND = 0.44704
ALERT_LANGUAGE = "en"

HEADING_DEGREES = {
    "N": 0,
    "NE": 45,
    "E": 90,
    "SE": 135,
    "S": 180,
    "SW": 225,
    "W": 270,
    "NW": 315,
}


@dataclass(frozen=True)
class AssembledUpdate:
    key: VehicleKey
    trip_update: gtfs_realtime_pb2.FeedEntity
    vehicle_position: gtfs_realtime_pb2.FeedEntity
    alert: gtfs_realtime_pb2.FeedEntity | None = None

    @property
    def entity_id(self) -> str:
        return str(self.key)


def degrees_for_heading(heading: str) -> int:
    try:
        return HEADING_DEGREES[heading]
    except KeyError:
        raise UnknownHeadingError(heading) from None


def mph_to_mps(velocity_mph: float) -> float:
    return velocity_mph * MPH_TO_METERS_PER_SECOND


def _station_payload(blob: str | Mapping[str, Any]) -> Mapping[str, Any]:
    if isinstance(blob, Mapping):
        return blob
    try:
        payload = json.loads(blob)
    except (TypeError, ValueError) as exc:
        raise MalformedFieldError("Station", blob) from exc
    if not isinstance(payload, Mapping):
        raise MalformedFieldError("Station", blob)
    return payload


def _stop_time(payload: Mapping[str, Any], name: str, region: str) -> int:
    return resolve_timestamp(payload.get(name), region, TimestampFormat.STOP).epoch_seconds


def stop_time_update_for_station(
    blob: str | Mapping[str, Any],
    default_region: str,
) -> gtfs_realtime_pb2.TripUpdate.StopTimeUpdate | None:
    """Translate one station blob into a stop time update.

    Posted times (``postarr`` and ``postdep`` together) win over estimates;
    an ``estarr`` may carry an optional ``estdep``. Returns ``None`` when the
    station has neither.
    """

    payload = _station_payload(blob)
    code = payload.get("code")
    if code in (None, ""):
        raise MissingFieldError("code")
    region = payload.get("tz") or default_region

    update = gtfs_realtime_pb2.TripUpdate.StopTimeUpdate()
    update.stop_id = str(code)

    if "postarr" in payload and "postdep" in payload:
        update.arrival.time = _stop_time(payload, "postarr", region)
        update.departure.time = _stop_time(payload, "postdep", region)
    elif "estarr" in payload:
        update.arrival.time = _stop_time(payload, "estarr", region)
        if "estdep" in payload:
            update.departure.time = _stop_time(payload, "estdep", region)

    if update.HasField("arrival") or update.HasField("departure"):
        return update
    return None


def _trip_descriptor(trip: MatchedTrip) -> gtfs_realtime_pb2.TripDescriptor:
    descriptor = gtfs_realtime_pb2.TripDescriptor()
    descriptor.trip_id = trip.trip_id
    descriptor.start_date = trip.service_date.to_gtfs()
    return descriptor


def _vehicle_descriptor(key: VehicleKey) -> gtfs_realtime_pb2.VehicleDescriptor:
    descriptor = gtfs_realtime_pb2.VehicleDescriptor()
    descriptor.id = str(key)
    descriptor.label = key.train_number
    return descriptor


def build_trip_update(
    record: NormalizedRecord,
    trip: MatchedTrip,
    key: VehicleKey,
    updated_at: ResolvedTimestamp,
) -> gtfs_realtime_pb2.FeedEntity:
    entity = gtfs_realtime_pb2.FeedEntity()
    entity.id = str(key)
    trip_update = entity.trip_update
    trip_update.trip.CopyFrom(_trip_descriptor(trip))
    trip_update.vehicle.CopyFrom(_vehicle_descriptor(key))
    trip_update.timestamp = updated_at.epoch_seconds

    for blob in record.stations:
        stop_time_update = stop_time_update_for_station(blob, record.update_region)
        if stop_time_update is not None:
            trip_update.stop_time_update.append(stop_time_update)
    return entity


def build_vehicle_position(
    record: NormalizedRecord,
    trip: MatchedTrip,
    key: VehicleKey,
    updated_at: ResolvedTimestamp,
) -> gtfs_realtime_pb2.FeedEntity:
    entity = gtfs_realtime_pb2.FeedEntity()
    entity.id = str(key)
    vehicle = entity.vehicle
    vehicle.trip.CopyFrom(_trip_descriptor(trip))
    vehicle.vehicle.CopyFrom(_vehicle_descriptor(key))
    vehicle.timestamp = updated_at.epoch_seconds

    # Source geometry is [longitude, latitude].
    vehicle.position.latitude = record.latitude
    vehicle.position.longitude = record.longitude
    if record.heading is not None:
        vehicle.position.bearing = degrees_for_heading(record.heading)
    if record.velocity_mph is not None:
        vehicle.position.speed = mph_to_mps(record.velocity_mph)
    return entity


def build_alert(
    record: NormalizedRecord,
    trip: MatchedTrip,
    key: VehicleKey,
) -> gtfs_realtime_pb2.FeedEntity | None:
    message = (record.status_message or "").strip()
    if not message:
        return None
    entity = gtfs_realtime_pb2.FeedEntity()
    entity.id = str(key)
    informed = entity.alert.informed_entity.add()
    informed.trip.CopyFrom(_trip_descriptor(trip))
    translation = entity.alert.description_text.translation.add()
    translation.text = message
    translation.language = ALERT_LANGUAGE
    return entity


def assemble(
    record: NormalizedRecord,
    trip: MatchedTrip,
    key: VehicleKey,
    updated_at: ResolvedTimestamp,
) -> AssembledUpdate:
    return AssembledUpdate(
        key=key,
        trip_update=build_trip_update(record, trip, key, updated_at),
        vehicle_position=build_vehicle_position(record, trip, key, updated_at),
        alert=build_alert(record, trip, key),
    )
