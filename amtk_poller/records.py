"""Parse raw train features from the positions dataset into typed records."""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Mapping

from amtk_poller.errors import MalformedFieldError, MissingFieldError

LOGGER = logging.getLogger(__name__)

ELIGIBLE_STATES = frozenset({"Active", "Predeparture"})
STATION_PREFIX = "Station"


@dataclass(frozen=True)
class NormalizedRecord:
    train_number: str
    state: str
    origin_timestamp: str
    origin_region: str
    update_timestamp: str
    update_region: str
    longitude: float
    latitude: float
    heading: str | None = None
    velocity_mph: float | None = None
    status_message: str | None = None
    stations: list[str | Mapping[str, Any]] = field(default_factory=list)


def _clean(value: object | None) -> str | None:
    if value is None:
        return None
    stripped = str(value).strip()
    return stripped or None


def _require(properties: Mapping[str, Any], name: str, train_number: str | None = None) -> str:
    value = _clean(properties.get(name))
    if value is None:
        raise MissingFieldError(name, train_number)
    return value


def _coordinates(feature: Mapping[str, Any], train_number: str) -> tuple[float, float]:
    geometry = feature.get("geometry") or {}
    coords = geometry.get("coordinates") if isinstance(geometry, Mapping) else None
    if not coords or len(coords) < 2 or coords[0] is None or coords[1] is None:
        raise MissingFieldError("geometry.coordinates", train_number)
    try:
        return float(coords[0]), float(coords[1])
    except (TypeError, ValueError) as exc:
        raise MalformedFieldError("geometry.coordinates", coords, train_number) from exc


def _velocity(properties: Mapping[str, Any], train_number: str) -> float | None:
    raw = _clean(properties.get("Velocity"))
    if raw is None:
        return None
    try:
        return float(raw)
    except ValueError as exc:
        raise MalformedFieldError("Velocity", raw, train_number) from exc


def normalize_record(feature: Mapping[str, Any]) -> NormalizedRecord | None:
    """Return a typed view of ``feature`` or ``None`` if the train is not running.

    Only ``Active`` and ``Predeparture`` trains are eligible; anything else
    (cancelled, completed, unknown) is skipped without error.
    """

    properties = feature.get("properties")
    if not isinstance(properties, Mapping):
        raise MissingFieldError("properties")

    state = _clean(properties.get("TrainState"))
    if state not in ELIGIBLE_STATES:
        LOGGER.debug(
            "Skipping train %s in state %s", properties.get("TrainNum"), state
        )
        return None

    train_number = _require(properties, "TrainNum")
    origin_timestamp = _require(properties, "OrigSchDep", train_number)
    origin_region = _require(properties, "OriginTZ", train_number)
    update_timestamp = _require(properties, "LastValTS", train_number)
    update_region = _clean(properties.get("EventTZ")) or origin_region
    longitude, latitude = _coordinates(feature, train_number)

    stations = [
        value
        for key, value in properties.items()
        if key.startswith(STATION_PREFIX) and value not in (None, "")
    ]

    return NormalizedRecord(
        train_number=train_number,
        state=state,
        origin_timestamp=origin_timestamp,
        origin_region=origin_region,
        update_timestamp=update_timestamp,
        update_region=update_region,
        longitude=longitude,
        latitude=latitude,
        heading=_clean(properties.get("Heading")),
        velocity_mph=_velocity(properties, train_number),
        status_message=_clean(properties.get("StatusMsg")),
        stations=stations,
    )
