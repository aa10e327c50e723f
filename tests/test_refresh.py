import json
import sys
import unittest
from datetime import date, timedelta
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from amtk_poller.dedup import DedupGate, VehicleKey
from amtk_poller.errors import FetchError
from amtk_poller.notify import FailureNotifier
from amtk_poller.poller import run_polling_loop
from amtk_poller.refresh import RecordStatus, RefreshOrchestrator
from amtk_poller.schedule import ScheduledTrip, ScheduleMatcher
from amtk_poller.sink import FeedType, GtfsRealtimeFeed
from amtk_poller.timeutils import ServiceDate


def make_feature(train_number="99", **overrides):
    properties = {
        "TrainNum": train_number,
        "TrainState": "Active",
        "OrigSchDep": "10/4/2013 10:00:34 AM",
        "OriginTZ": "E",
        "LastValTS": "10/4/2013 11:15:00 AM",
        "EventTZ": "E",
        "Heading": "N",
        "Velocity": "79",
        "Station1": json.dumps({"code": "WAS", "tz": "E", "postarr": "10/04/2013 10:00:00", "postdep": "10/04/2013 10:05:00"}),
        "Station2": json.dumps({"code": "BAL", "tz": "E", "estarr": "10/04/2013 10:45:00"}),
    }
    properties.update(overrides)
    return {
        "geometry": {"coordinates": [-76.6, 39.3]},
        "properties": properties,
    }


class StubScheduleLookup:
    def __init__(self):
        self.date_calls: list[date] = []

    def service_ids_for_date(self, service_date):
        self.date_calls.append(service_date)
        if service_date == date(2013, 10, 4):
            return ["weekday"]
        return []

    def trips_for_service_id(self, service_id):
        return [
            ScheduledTrip("trip-98", "98", service_id),
            ScheduledTrip("trip-99", "99", service_id),
        ]


class RecordingSink:
    def __init__(self):
        self.calls: list[tuple[FeedType, list, list]] = []

    def handle_incremental_update(self, feed_type, updated, deleted=()):
        self.calls.append((feed_type, list(updated), list(deleted)))


class StubFetcher:
    def __init__(self, batches):
        self.batches = list(batches)

    def __call__(self):
        batch = self.batches.pop(0)
        if isinstance(batch, Exception):
            raise batch
        return batch


class StubNotifier(FailureNotifier):
    def __init__(self):
        super().__init__(webhook_url=None, threshold=2)
        self.failures: list[Exception] = []

    def record_failure(self, feed_url, exc):
        self.failures.append(exc)
        return super().record_failure(feed_url, exc)


class RefreshOrchestratorTest(unittest.TestCase):
    def setUp(self) -> None:
        self.lookup = StubScheduleLookup()
        self.sink = RecordingSink()
        self.gate = DedupGate()

    def orchestrator(self, *batches, notifier=None) -> RefreshOrchestrator:
        return RefreshOrchestrator(
            fetch=StubFetcher(batches),
            matcher=ScheduleMatcher(self.lookup),
            gate=self.gate,
            sink=self.sink,
            notifier=notifier,
        )

    def test_end_to_end_trip_update(self) -> None:
        summary = self.orchestrator([make_feature()]).run_cycle()

        self.assertEqual(summary.count(RecordStatus.EMITTED), 1)
        feed_types = [call[0] for call in self.sink.calls]
        self.assertEqual(
            feed_types, [FeedType.TRIP_UPDATES, FeedType.VEHICLE_POSITIONS, FeedType.ALERTS]
        )
        trip_update = self.sink.calls[0][1][0].trip_update
        self.assertEqual(trip_update.trip.trip_id, "trip-99")
        self.assertEqual(trip_update.trip.start_date, "20131004")
        self.assertEqual([stu.stop_id for stu in trip_update.stop_time_update], ["WAS", "BAL"])
        position = self.sink.calls[1][1][0].vehicle.position
        self.assertAlmostEqual(position.latitude, 39.3, places=4)
        self.assertAlmostEqual(position.longitude, -76.6, places=4)
        # No status message: the vehicle's alert is withdrawn instead.
        self.assertEqual(self.sink.calls[2], (FeedType.ALERTS, [], ["20131004-99"]))
        self.assertIn(VehicleKey("99", ServiceDate(2013, 10, 4)), self.gate)

    def test_status_message_publishes_alert(self) -> None:
        self.orchestrator([make_feature(StatusMsg="Delayed")]).run_cycle()
        feed_type, updated, deleted = self.sink.calls[2]
        self.assertEqual(feed_type, FeedType.ALERTS)
        self.assertEqual(updated[0].alert.description_text.translation[0].text, "Delayed")
        self.assertEqual(deleted, [])

    def test_cancelled_train_never_reaches_matching(self) -> None:
        summary = self.orchestrator([make_feature(TrainState="Cancelled")]).run_cycle()
        self.assertEqual(summary.results[0].status, RecordStatus.SKIPPED)
        self.assertEqual(self.lookup.date_calls, [])
        self.assertEqual(self.sink.calls, [])

    def test_unmatched_train_is_skipped(self) -> None:
        with self.assertLogs("amtk_poller.refresh", level="WARNING") as logs:
            summary = self.orchestrator([make_feature("1234")]).run_cycle()
        self.assertEqual(summary.results[0].status, RecordStatus.UNMATCHED)
        self.assertEqual(self.sink.calls, [])
        self.assertTrue(any("1234" in line for line in logs.output))

    def test_bad_record_does_not_abort_cycle(self) -> None:
        features = [
            make_feature("98", OriginTZ="X"),
            make_feature("99", Heading="NNE"),
            {"geometry": None, "properties": "not a mapping"},
            make_feature("99"),
        ]
        summary = self.orchestrator(features).run_cycle()
        statuses = [result.status for result in summary.results]
        self.assertEqual(
            statuses,
            [RecordStatus.FAILED, RecordStatus.FAILED, RecordStatus.FAILED, RecordStatus.EMITTED],
        )
        self.assertIn("Unknown timezone region", summary.results[0].reason)
        self.assertEqual(summary.results[1].train_number, "99")

    def test_failed_record_is_not_recorded_in_gate(self) -> None:
        self.orchestrator([make_feature("99", Heading="NNE")]).run_cycle()
        self.assertEqual(len(self.gate), 0)

    def test_unexpected_exception_is_isolated(self) -> None:
        class ExplodingLookup(StubScheduleLookup):
            def trips_for_service_id(self, service_id):
                raise RuntimeError("schedule store unavailable")

        self.lookup = ExplodingLookup()
        with self.assertLogs("amtk_poller.refresh", level="ERROR"):
            summary = self.orchestrator([make_feature()]).run_cycle()
        self.assertEqual(summary.results[0].status, RecordStatus.FAILED)
        self.assertIn("RuntimeError", summary.results[0].reason)

    def test_stale_update_is_not_republished(self) -> None:
        orchestrator = self.orchestrator(
            [make_feature()],
            [make_feature()],
            [make_feature(LastValTS="10/4/2013 11:20:00 AM")],
        )
        orchestrator.run_cycle()
        second = orchestrator.run_cycle()
        self.assertEqual(second.results[0].status, RecordStatus.STALE)
        self.assertEqual(len(self.sink.calls), 3)

        third = orchestrator.run_cycle()
        self.assertEqual(third.results[0].status, RecordStatus.EMITTED)
        self.assertEqual(len(self.sink.calls), 6)

    def test_old_update_stays_suppressed_with_retention(self) -> None:
        self.gate = DedupGate(retention=timedelta(hours=48))
        orchestrator = self.orchestrator([make_feature()], [make_feature()])

        first = orchestrator.run_cycle()
        second = orchestrator.run_cycle()

        self.assertEqual(first.results[0].status, RecordStatus.EMITTED)
        self.assertEqual(second.results[0].status, RecordStatus.STALE)
        self.assertEqual(len(self.sink.calls), 3)
        self.assertIn(first.results[0].key, self.gate)

    def test_fetch_failure_aborts_cycle(self) -> None:
        notifier = StubNotifier()
        orchestrator = self.orchestrator(FetchError("timeout"), [make_feature()], notifier=notifier)
        with self.assertLogs("amtk_poller.refresh", level="ERROR"):
            self.assertIsNone(orchestrator.run_cycle())
        self.assertEqual(self.sink.calls, [])
        self.assertEqual(notifier.consecutive_failures, 1)

        summary = orchestrator.run_cycle()
        self.assertEqual(summary.count(RecordStatus.EMITTED), 1)
        self.assertEqual(notifier.consecutive_failures, 0)

    def test_into_in_memory_feed(self) -> None:
        feed = GtfsRealtimeFeed()
        RefreshOrchestrator(
            fetch=StubFetcher([[make_feature(StatusMsg="Held")]]),
            matcher=ScheduleMatcher(self.lookup),
            gate=self.gate,
            sink=feed,
        ).run_cycle()
        for feed_type in FeedType:
            message = feed.build_message(feed_type)
            self.assertEqual([entity.id for entity in message.entity], ["20131004-99"])


class PollingLoopTest(unittest.TestCase):
    def test_fixed_delay_between_cycles(self) -> None:
        events: list[str] = []

        class CountingOrchestrator:
            def __init__(self):
                self.cycles = 0

            def run_cycle(self):
                self.cycles += 1
                events.append("cycle")
                return None

        def fake_sleep(seconds):
            events.append(f"sleep {seconds}")
            if len(events) >= 6:
                raise KeyboardInterrupt

        orchestrator = CountingOrchestrator()
        with self.assertRaises(KeyboardInterrupt):
            run_polling_loop(orchestrator, 30.0, sleep=fake_sleep)
        self.assertEqual(events, ["cycle", "sleep 30.0"] * 3)

    def test_once_runs_single_cycle(self) -> None:
        seen: list[object] = []

        class SingleOrchestrator:
            def run_cycle(self):
                return "summary"

        run_polling_loop(
            SingleOrchestrator(),
            30.0,
            once=True,
            after_cycle=seen.append,
            sleep=lambda _seconds: self.fail("should not sleep"),
        )
        self.assertEqual(seen, ["summary"])


if __name__ == "__main__":  # pragma: no cover
    unittest.main()
