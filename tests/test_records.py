import json
import sys
import unittest
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from amtk_poller.errors import MalformedFieldError, MissingFieldError
from amtk_poller.records import normalize_record


def make_feature(**overrides):
    properties = {
        "TrainNum": "99",
        "TrainState": "Active",
        "OrigSchDep": "10/4/2013 10:00:34 AM",
        "OriginTZ": "E",
        "LastValTS": "10/4/2013 11:15:00 AM",
        "EventTZ": "E",
        "Heading": "NE",
        "Velocity": "60",
        "StatusMsg": " ",
        "Station1": json.dumps({"code": "WAS", "tz": "E", "postarr": "10/04/2013 10:00:00", "postdep": "10/04/2013 10:05:00"}),
        "Station2": json.dumps({"code": "BAL", "tz": "E", "estarr": "10/04/2013 10:45:00"}),
    }
    properties.update(overrides)
    return {
        "type": "Feature",
        "geometry": {"type": "Point", "coordinates": [-76.6, 39.3]},
        "properties": properties,
    }


class NormalizeRecordTest(unittest.TestCase):
    def test_active_record(self) -> None:
        record = normalize_record(make_feature())
        self.assertIsNotNone(record)
        self.assertEqual(record.train_number, "99")
        self.assertEqual(record.longitude, -76.6)
        self.assertEqual(record.latitude, 39.3)
        self.assertEqual(record.heading, "NE")
        self.assertEqual(record.velocity_mph, 60.0)
        self.assertEqual(len(record.stations), 2)
        self.assertIn("WAS", record.stations[0])

    def test_predeparture_is_eligible(self) -> None:
        self.assertIsNotNone(normalize_record(make_feature(TrainState="Predeparture")))

    def test_other_states_are_skipped(self) -> None:
        for state in ("Cancelled", "Completed", "", None, "active"):
            with self.subTest(state=state):
                self.assertIsNone(normalize_record(make_feature(TrainState=state)))

    def test_skipped_state_does_not_validate_fields(self) -> None:
        feature = make_feature(TrainState="Cancelled", TrainNum=None)
        feature["geometry"] = {}
        self.assertIsNone(normalize_record(feature))

    def test_missing_required_fields(self) -> None:
        for name in ("TrainNum", "OrigSchDep", "OriginTZ", "LastValTS"):
            with self.subTest(field=name):
                feature = make_feature()
                del feature["properties"][name]
                with self.assertRaises(MissingFieldError) as ctx:
                    normalize_record(feature)
                self.assertEqual(ctx.exception.field, name)

    def test_missing_coordinates(self) -> None:
        feature = make_feature()
        feature["geometry"] = {"type": "Point", "coordinates": [-76.6]}
        with self.assertRaises(MissingFieldError):
            normalize_record(feature)

    def test_update_region_defaults_to_origin(self) -> None:
        feature = make_feature(OriginTZ="C")
        del feature["properties"]["EventTZ"]
        self.assertEqual(normalize_record(feature).update_region, "C")
        self.assertEqual(normalize_record(make_feature(OriginTZ="P", EventTZ="")).update_region, "P")

    def test_optional_fields_omitted_when_empty(self) -> None:
        record = normalize_record(make_feature(Heading="", Velocity="", StatusMsg=""))
        self.assertIsNone(record.heading)
        self.assertIsNone(record.velocity_mph)
        self.assertIsNone(record.status_message)

        feature = make_feature()
        for name in ("Heading", "Velocity", "StatusMsg"):
            del feature["properties"][name]
        record = normalize_record(feature)
        self.assertIsNone(record.heading)
        self.assertIsNone(record.velocity_mph)

    def test_non_numeric_velocity(self) -> None:
        with self.assertRaises(MalformedFieldError):
            normalize_record(make_feature(Velocity="fast"))


if __name__ == "__main__":  # pragma: no cover
    unittest.main()
