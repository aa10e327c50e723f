"""Drive one poll of the train positions dataset through to the realtime feeds."""
from __future__ import annotations

import logging
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Mapping

from amtk_poller.dedup import DedupGate, VehicleKey
from amtk_poller.errors import FetchError, PollerError
from amtk_poller.feed import AssembledUpdate, assemble
from amtk_poller.notify import FailureNotifier
from amtk_poller.records import normalize_record
from amtk_poller.schedule import ScheduleMatcher
from amtk_poller.sink import FeedSink, FeedType
from amtk_poller.timeutils import TimestampFormat, resolve_timestamp, service_date_for

LOGGER = logging.getLogger(__name__)

Fetcher = Callable[[], list[Mapping[str, Any]]]


class RecordStatus(str, Enum):
    EMITTED = "emitted"
    SKIPPED = "skipped"
    UNMATCHED = "unmatched"
    STALE = "stale"
    FAILED = "failed"


@dataclass(frozen=True)
class RecordResult:
    status: RecordStatus
    train_number: str | None = None
    key: VehicleKey | None = None
    reason: str | None = None


@dataclass
class CycleSummary:
    started_at: datetime
    results: list[RecordResult] = field(default_factory=list)

    @property
    def counts(self) -> Counter:
        return Counter(result.status for result in self.results)

    def count(self, status: RecordStatus) -> int:
        return self.counts.get(status, 0)


def _train_label(feature: Mapping[str, Any]) -> str | None:
    properties = feature.get("properties") if isinstance(feature, Mapping) else None
    if isinstance(properties, Mapping):
        value = properties.get("TrainNum")
        return str(value) if value not in (None, "") else None
    return None


class RefreshOrchestrator:
    """Runs poll cycles: fetch, then normalize, match, dedup and publish per train.

    A failure inside one train's processing only drops that train; a failed
    fetch drops the whole cycle. Nothing is raised to the caller.
    """

    def __init__(
        self,
        fetch: Fetcher,
        matcher: ScheduleMatcher,
        gate: DedupGate,
        sink: FeedSink,
        notifier: FailureNotifier | None = None,
        source_name: str = "train positions",
    ) -> None:
        self.fetch = fetch
        self.matcher = matcher
        self.gate = gate
        self.sink = sink
        self.notifier = notifier
        self.source_name = source_name

    def run_cycle(self) -> CycleSummary | None:
        started_at = datetime.now(timezone.utc)
        LOGGER.info("Refreshing vehicles")
        try:
            features = self.fetch()
        except FetchError as exc:
            LOGGER.error("Skipping cycle: %s", exc)
            self._record_fetch_failure(exc)
            return None
        except Exception as exc:
            LOGGER.exception("Unexpected error while fetching %s", self.source_name)
            self._record_fetch_failure(exc)
            return None

        if self.notifier is not None:
            self.notifier.record_success()

        summary = CycleSummary(started_at=started_at)
        for feature in features:
            summary.results.append(self.process_record(feature))

        self.gate.prune()

        LOGGER.info(
            "Processed %d trains (emitted=%d, stale=%d, unmatched=%d, skipped=%d, failed=%d)",
            len(summary.results),
            summary.count(RecordStatus.EMITTED),
            summary.count(RecordStatus.STALE),
            summary.count(RecordStatus.UNMATCHED),
            summary.count(RecordStatus.SKIPPED),
            summary.count(RecordStatus.FAILED),
        )
        return summary

    def _record_fetch_failure(self, exc: Exception) -> None:
        if self.notifier is not None:
            self.notifier.record_failure(self.source_name, exc)

    def process_record(self, feature: Mapping[str, Any]) -> RecordResult:
        train_number = _train_label(feature)
        try:
            return self._process(feature)
        except PollerError as exc:
            LOGGER.warning("Dropping train %s: %s", train_number or "<unknown>", exc)
            return RecordResult(RecordStatus.FAILED, train_number, reason=str(exc))
        except Exception as exc:
            LOGGER.exception("Exception processing train %s", train_number or "<unknown>")
            return RecordResult(
                RecordStatus.FAILED, train_number, reason=f"{type(exc).__name__}: {exc}"
            )

    def _process(self, feature: Mapping[str, Any]) -> RecordResult:
        record = normalize_record(feature)
        if record is None:
            return RecordResult(RecordStatus.SKIPPED, _train_label(feature))

        origin = resolve_timestamp(
            record.origin_timestamp, record.origin_region, TimestampFormat.EVENT
        )
        updated_at = resolve_timestamp(
            record.update_timestamp, record.update_region, TimestampFormat.EVENT
        )
        service_date = service_date_for(origin)
        key = VehicleKey(record.train_number, service_date)

        trip = self.matcher.find_trip(record.train_number, service_date)
        if trip is None:
            LOGGER.warning(
                "Could not find train %s departing on %s",
                record.train_number,
                service_date.as_date().isoformat(),
            )
            return RecordResult(RecordStatus.UNMATCHED, record.train_number, key)

        if not self.gate.should_emit(key, updated_at.instant):
            LOGGER.debug("No fresh data for %s since %s", key, self.gate.last_update(key))
            self.gate.touch(key)
            return RecordResult(RecordStatus.STALE, record.train_number, key)

        update = assemble(record, trip, key, updated_at)
        self.publish(update)
        self.gate.record(key, updated_at.instant)
        return RecordResult(RecordStatus.EMITTED, record.train_number, key)

    def publish(self, update: AssembledUpdate) -> None:
        self.sink.handle_incremental_update(FeedType.TRIP_UPDATES, [update.trip_update])
        self.sink.handle_incremental_update(FeedType.VEHICLE_POSITIONS, [update.vehicle_position])
        if update.alert is not None:
            self.sink.handle_incremental_update(FeedType.ALERTS, [update.alert])
        else:
            self.sink.handle_incremental_update(FeedType.ALERTS, (), [update.entity_id])
