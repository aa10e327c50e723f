"""In-memory GTFS-realtime feeds fed by incremental updates, plus snapshot export."""
from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Iterable, Protocol

from google.protobuf.json_format import MessageToDict
from google.transit import gtfs_realtime_pb2

LOGGER = logging.getLogger(__name__)

GTFS_REALTIME_VERSION = "2.0"


class FeedType(str, Enum):
    VEHICLE_POSITIONS = "vehicle_positions"
    TRIP_UPDATES = "trip_updates"
    ALERTS = "alerts"


class FeedSink(Protocol):
    def handle_incremental_update(
        self,
        feed_type: FeedType,
        updated: Iterable[gtfs_realtime_pb2.FeedEntity],
        deleted: Iterable[str] = (),
    ) -> None:
        ...


def _entity_timestamp(entity: gtfs_realtime_pb2.FeedEntity) -> int | None:
    if entity.HasField("trip_update") and entity.trip_update.timestamp:
        return entity.trip_update.timestamp
    if entity.HasField("vehicle") and entity.vehicle.timestamp:
        return entity.vehicle.timestamp
    return None


class GtfsRealtimeFeed:
    """Latest entity per id for each feed type, exported as full datasets."""

    def __init__(self) -> None:
        self._entities: dict[FeedType, dict[str, gtfs_realtime_pb2.FeedEntity]] = {
            feed_type: {} for feed_type in FeedType
        }
        self._updated_at: dict[FeedType, int | None] = {feed_type: None for feed_type in FeedType}

    def handle_incremental_update(
        self,
        feed_type: FeedType,
        updated: Iterable[gtfs_realtime_pb2.FeedEntity],
        deleted: Iterable[str] = (),
    ) -> None:
        entities = self._entities[feed_type]
        changed = False
        for entity in updated:
            entities[entity.id] = entity
            changed = True
        for entity_id in deleted:
            if entities.pop(entity_id, None) is not None:
                changed = True
        if changed:
            self._updated_at[feed_type] = int(datetime.now(timezone.utc).timestamp())

    def entities(self, feed_type: FeedType) -> list[gtfs_realtime_pb2.FeedEntity]:
        return list(self._entities[feed_type].values())

    def entity(self, feed_type: FeedType, entity_id: str) -> gtfs_realtime_pb2.FeedEntity | None:
        return self._entities[feed_type].get(entity_id)

    def expire_before(self, cutoff: datetime) -> int:
        """Remove vehicles whose last trip update or position predates ``cutoff``.

        Alerts share entity ids with the vehicle they describe and are dropped
        with it.
        """

        cutoff_epoch = int(cutoff.timestamp())
        expired: set[str] = set()
        for feed_type in (FeedType.TRIP_UPDATES, FeedType.VEHICLE_POSITIONS):
            for entity_id, entity in self._entities[feed_type].items():
                timestamp = _entity_timestamp(entity)
                if timestamp is not None and timestamp < cutoff_epoch:
                    expired.add(entity_id)
        if not expired:
            return 0
        for feed_type in FeedType:
            self.handle_incremental_update(feed_type, (), expired)
        LOGGER.info("Expired %d vehicles older than %s", len(expired), cutoff.isoformat())
        return len(expired)

    def build_message(self, feed_type: FeedType) -> gtfs_realtime_pb2.FeedMessage:
        message = gtfs_realtime_pb2.FeedMessage()
        message.header.gtfs_realtime_version = GTFS_REALTIME_VERSION
        message.header.incrementality = gtfs_realtime_pb2.FeedHeader.FULL_DATASET
        header_timestamp = self._updated_at[feed_type]
        if header_timestamp is None:
            header_timestamp = int(datetime.now(timezone.utc).timestamp())
        message.header.timestamp = header_timestamp
        message.entity.extend(self._entities[feed_type].values())
        return message


def write_feed_log(
    output_dir: Path,
    feed_type: FeedType,
    written_at: datetime,
    message: gtfs_realtime_pb2.FeedMessage,
) -> None:
    log_path = output_dir / f"{feed_type.value}.log"
    lines = [
        f"written_at_utc={written_at.isoformat()}",
        f"feed_type={feed_type.value}",
        f"entities={len(message.entity)}",
    ]

    header_timestamp = message.header.timestamp
    if header_timestamp:
        header_iso = datetime.fromtimestamp(header_timestamp, tz=timezone.utc).isoformat()
        lines.append(f"feed_header_timestamp={header_timestamp}")
        lines.append(f"feed_header_datetime_utc={header_iso}")

    log_path.write_text("\n".join(lines) + "\n", encoding="utf-8")


def _replace_file(path: Path, payload: bytes) -> None:
    tmp_path = path.with_name(path.name + ".tmp")
    tmp_path.write_bytes(payload)
    tmp_path.replace(path)


def write_feed_snapshots(
    feed: GtfsRealtimeFeed,
    output_dir: Path,
    store_json: bool = True,
) -> dict[FeedType, Path]:
    """Write the current protobuf (and JSON projection) of every feed type."""

    output_dir.mkdir(parents=True, exist_ok=True)
    written_at = datetime.now(timezone.utc)
    written: dict[FeedType, Path] = {}

    for feed_type in FeedType:
        message = feed.build_message(feed_type)
        pb_path = output_dir / f"{feed_type.value}.pb"
        _replace_file(pb_path, message.SerializeToString())
        written[feed_type] = pb_path

        if store_json:
            json_payload = MessageToDict(
                message,
                preserving_proto_field_name=True,
                always_print_fields_with_no_presence=False,
            )
            json_path = output_dir / f"{feed_type.value}.json"
            _replace_file(json_path, json.dumps(json_payload, indent=2).encode("utf-8"))
            LOGGER.debug("Wrote JSON snapshot to %s", json_path)

        write_feed_log(output_dir, feed_type, written_at, message)
        LOGGER.debug(
            "Wrote %s snapshot with %d entities to %s",
            feed_type.value,
            len(message.entity),
            pb_path,
        )

    return written
