"""Tests for the auto-save engine: haversine, sample checks, trigger rules, and the sample pipeline."""

import dataclasses
import datetime
import math
import threading
from concurrent.futures import ThreadPoolExecutor
from unittest.mock import patch

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

import processing
from autosave import AutoSaveConfiguration
from database import Base
from models import Trip
from processing import (
    Decision,
    DecisionReason,
    LocationSample,
    evaluate,
    format_address,
    haversine_m,
    malformed_fields,
    process_sample,
    process_samples,
)
from store import TripStore
from tests.trip_test_fixtures import (
    DRIVE,
    DRIVE_ACCEPTED_INDEXES,
    DRIVE_EXPECTED,
    START,
    north_of,
    t,
)


def _trip(config):
    trip = Trip(name="Test trip")
    trip.auto_save = config
    return trip


def _sample(seconds=0, north_m=0.0, road="Infinite Loop", altitude=70.0):
    return LocationSample(
        latitude=north_of(START["latitude"], north_m),
        longitude=START["longitude"],
        altitude=altitude,
        timestamp=t(seconds),
        road_name=road,
    )


ROAD_ONLY = AutoSaveConfiguration.walking().with_changes(
    save_on_time_interval=False, minimum_distance_meters=100.0,
)
TIME_ONLY = AutoSaveConfiguration.walking().with_changes(
    save_on_road_change=False, time_interval_minutes=1, time_interval_seconds=15,
)
NO_TRIGGERS = AutoSaveConfiguration.walking().with_changes(
    save_on_road_change=False, save_on_time_interval=False,
)


# =====================================================================
# Haversine tests
# =====================================================================

class TestHaversine:
    def test_same_point_is_zero(self):
        assert haversine_m(37.3349, -122.0090, 37.3349, -122.0090) == 0.0

    def test_symmetric(self):
        a = (37.3349, -122.0090)
        b = (37.7793, -122.4193)
        assert haversine_m(*a, *b) == pytest.approx(haversine_m(*b, *a))

    def test_one_degree_of_latitude(self):
        d = haversine_m(0.0, 0.0, 1.0, 0.0)
        assert d == pytest.approx(111_195, abs=1)

    def test_one_degree_of_longitude_at_equator(self):
        d = haversine_m(0.0, 10.0, 0.0, 11.0)
        assert d == pytest.approx(111_195, abs=1)

    def test_london_to_paris(self):
        d = haversine_m(51.5074, -0.1278, 48.8566, 2.3522)
        assert 340_000 < d < 347_000

    def test_short_distance(self):
        # Two points ~100m apart
        d = haversine_m(37.7749, -122.4194, 37.7758, -122.4194)
        assert 90 < d < 110

    def test_fixture_offsets_are_exact(self):
        d = haversine_m(START["latitude"], START["longitude"], north_of(START["latitude"], 150), START["longitude"])
        assert d == pytest.approx(150, abs=0.01)


# =====================================================================
# Sample checks
# =====================================================================

class TestMalformedFields:
    def test_good_sample(self):
        assert malformed_fields(_sample()) == []

    def test_missing_coordinate(self):
        sample = dataclasses.replace(_sample(), latitude=None)
        assert malformed_fields(sample) == ["latitude"]

    def test_non_finite_values(self):
        sample = dataclasses.replace(_sample(), longitude=math.inf, altitude=math.nan)
        assert malformed_fields(sample) == ["longitude", "altitude"]

    def test_out_of_range_latitude(self):
        sample = dataclasses.replace(_sample(), latitude=91.0)
        assert malformed_fields(sample) == ["latitude"]

    def test_missing_timestamp(self):
        sample = dataclasses.replace(_sample(), timestamp=None)
        assert malformed_fields(sample) == ["timestamp"]

    def test_no_sample(self):
        assert malformed_fields(None) == ["sample"]


# =====================================================================
# Engine tests
# =====================================================================

class TestEvaluateBasics:
    def test_first_sample_always_accepted(self):
        decision = evaluate(_sample(), _trip(NO_TRIGGERS), None)
        assert decision.accepted
        assert decision.reason is DecisionReason.TRIP_START
        assert decision.waypoint.road_name == "Infinite Loop"
        assert decision.waypoint.timestamp == t(0)

    def test_disabled_rejects_even_first_sample(self):
        config = AutoSaveConfiguration.car().with_changes(is_enabled=False)
        decision = evaluate(_sample(), _trip(config), None)
        assert not decision.accepted
        assert decision.reason is DecisionReason.AUTO_SAVE_DISABLED

    def test_disabled_short_circuits_malformed_sample(self):
        config = AutoSaveConfiguration.car().with_changes(is_enabled=False)
        decision = evaluate(None, _trip(config), None)
        assert decision.reason is DecisionReason.AUTO_SAVE_DISABLED

    def test_ended_trip_rejects(self):
        trip = _trip(AutoSaveConfiguration.car())
        trip.end_date = datetime.datetime(2024, 6, 1, 12, 0)
        assert evaluate(_sample(), trip, None).reason is DecisionReason.TRIP_ENDED

    def test_missing_trip_is_a_programming_error(self):
        with pytest.raises(ValueError):
            evaluate(_sample(), None, None)

    def test_malformed_sample_rejected(self):
        bad = dataclasses.replace(_sample(10, 500), altitude=math.nan)
        decision = evaluate(bad, _trip(AutoSaveConfiguration.car()), _sample())
        assert not decision.accepted
        assert decision.reason is DecisionReason.MALFORMED_SAMPLE

    def test_malformed_first_sample_rejected(self):
        bad = dataclasses.replace(_sample(), latitude=None)
        decision = evaluate(bad, _trip(AutoSaveConfiguration.car()), None)
        assert decision.reason is DecisionReason.MALFORMED_SAMPLE

    def test_no_triggers_always_rejects_after_start(self):
        trip = _trip(NO_TRIGGERS)
        last = _sample()
        for seconds, north, road in [(10, 5, "Infinite Loop"), (5000, 900, "Homestead Road")]:
            decision = evaluate(_sample(seconds, north, road), trip, last)
            assert not decision.accepted
            assert decision.reason is DecisionReason.NO_TRIGGER_ENABLED

    def test_deterministic(self):
        trip = _trip(AutoSaveConfiguration.car())
        sample, last = _sample(90, 400, "North De Anza Boulevard"), _sample()
        assert evaluate(sample, trip, last) == evaluate(sample, trip, last)

    def test_accept_reports_distance_and_elapsed(self):
        decision = evaluate(_sample(90, 400, "Homestead Road"), _trip(ROAD_ONLY), _sample())
        assert decision.distance_m == pytest.approx(400, abs=0.01)
        assert decision.elapsed_s == 90


class TestStaleSamples:
    @pytest.mark.parametrize("north, road", [(0, "Infinite Loop"), (5000, "Homestead Road")])
    def test_earlier_than_last_accepted_is_stale(self, north, road):
        last = _sample(100)
        decision = evaluate(_sample(99, north, road), _trip(AutoSaveConfiguration.walking()), last)
        assert not decision.accepted
        assert decision.reason is DecisionReason.STALE_SAMPLE

    def test_same_timestamp_is_not_stale(self):
        last = _sample(100)
        decision = evaluate(_sample(100, 500, "Homestead Road"), _trip(ROAD_ONLY), last)
        assert decision.reason is DecisionReason.ROAD_CHANGE

    def test_timezone_aware_timestamps_compare(self):
        last = _sample(100)
        aware = dataclasses.replace(
            _sample(0), timestamp=t(0).replace(tzinfo=datetime.timezone.utc),
        )
        decision = evaluate(aware, _trip(AutoSaveConfiguration.walking()), last)
        assert decision.reason is DecisionReason.STALE_SAMPLE


class TestRoadChangeTrigger:
    def test_new_road_far_enough_is_accepted(self):
        decision = evaluate(_sample(10, 150, "Homestead Road"), _trip(ROAD_ONLY), _sample())
        assert decision.accepted
        assert decision.reason is DecisionReason.ROAD_CHANGE

    def test_same_road_is_rejected(self):
        decision = evaluate(_sample(10, 150, "Infinite Loop"), _trip(ROAD_ONLY), _sample())
        assert not decision.accepted
        assert decision.reason is DecisionReason.NO_TRIGGER_MATCHED

    def test_new_road_too_close_is_rejected(self):
        decision = evaluate(_sample(10, 50, "Homestead Road"), _trip(ROAD_ONLY), _sample())
        assert not decision.accepted

    def test_road_names_are_case_sensitive(self):
        decision = evaluate(_sample(10, 150, "infinite loop"), _trip(ROAD_ONLY), _sample())
        assert decision.reason is DecisionReason.ROAD_CHANGE

    def test_unresolved_road_differs_from_named_road(self):
        decision = evaluate(_sample(10, 150, None), _trip(ROAD_ONLY), _sample())
        assert decision.reason is DecisionReason.ROAD_CHANGE

    def test_empty_and_unresolved_are_the_same_road(self):
        decision = evaluate(_sample(10, 150, ""), _trip(ROAD_ONLY), _sample(road=None))
        assert not decision.accepted

    def test_road_trigger_disabled(self):
        config = TIME_ONLY
        decision = evaluate(_sample(10, 900, "Homestead Road"), _trip(config), _sample())
        assert not decision.accepted


class TestTimeIntervalTrigger:
    def test_exactly_the_interval_is_accepted(self):
        decision = evaluate(_sample(75), _trip(TIME_ONLY), _sample(0))
        assert decision.accepted
        assert decision.reason is DecisionReason.TIME_INTERVAL

    def test_one_second_short_is_rejected(self):
        decision = evaluate(_sample(74), _trip(TIME_ONLY), _sample(0))
        assert not decision.accepted
        assert decision.reason is DecisionReason.NO_TRIGGER_MATCHED

    def test_invalid_interval_disables_time_trigger(self):
        config = TIME_ONLY.with_changes(time_interval_minutes=0, time_interval_seconds=15)
        decision = evaluate(_sample(3000), _trip(config), _sample(0))
        assert not decision.accepted
        assert decision.reason is DecisionReason.INVALID_CONFIGURATION

    def test_invalid_interval_leaves_road_trigger_working(self):
        config = AutoSaveConfiguration.walking().with_changes(time_interval_minutes=0, time_interval_seconds=0)
        trip = _trip(config)
        assert evaluate(_sample(3000), trip, _sample(0)).reason is DecisionReason.NO_TRIGGER_MATCHED
        assert evaluate(_sample(10, 60, "Homestead Road"), trip, _sample(0)).reason is DecisionReason.ROAD_CHANGE

    def test_road_change_wins_when_both_fire(self):
        decision = evaluate(_sample(600, 500, "Homestead Road"), _trip(AutoSaveConfiguration.car()), _sample(0))
        assert decision.reason is DecisionReason.ROAD_CHANGE


class TestCarPresetScenario:
    def test_start_then_time_trigger(self):
        trip = _trip(AutoSaveConfiguration.car())

        start = _sample(0, 0, "Infinite Loop")
        first = evaluate(start, trip, None)
        assert first.accepted

        near = evaluate(_sample(50, 20, "Infinite Loop"), trip, start)
        assert not near.accepted

        later = evaluate(_sample(400, 0, "Infinite Loop"), trip, start)
        assert later.accepted
        assert later.reason is DecisionReason.TIME_INTERVAL

    def test_drive_fixture(self):
        trip = _trip(AutoSaveConfiguration.car())
        last = None
        reasons = []
        for pt in DRIVE:
            sample = LocationSample(**pt)
            decision = evaluate(sample, trip, last)
            reasons.append(decision.reason.value)
            if decision.accepted:
                last = sample
        assert reasons == DRIVE_EXPECTED


# =====================================================================
# Address formatting
# =====================================================================

class TestFormatAddress:
    def test_full_address(self):
        details = {
            "house_number": "1",
            "road": "Infinite Loop",
            "town": "Cupertino",
            "state": "California",
            "postcode": "95014",
        }
        assert format_address(details) == "1 Infinite Loop, Cupertino, California, 95014"

    def test_empty_address(self):
        assert format_address({}) == "Unknown Address"


# =====================================================================
# Pipeline tests
# =====================================================================

GEOCODED = {"address": "1 Infinite Loop, Cupertino, California, 95014", "road": "Infinite Loop"}


class TestProcessSample:
    def test_no_active_trip(self, db):
        decision = process_sample(db, _sample())
        assert not decision.accepted
        assert decision.reason is DecisionReason.NO_ACTIVE_TRIP

    @patch("processing.reverse_geocode", return_value=GEOCODED)
    def test_first_sample_is_committed(self, mock_geocode, db, store, car_trip):
        decision = process_sample(db, _sample())
        assert decision.accepted
        assert decision.waypoint_id is not None

        waypoint = store.get_waypoint(decision.waypoint_id)
        assert waypoint.address == GEOCODED["address"]
        assert waypoint.road_name == "Infinite Loop"
        assert store.get_trip(car_trip.id).location_ids == [waypoint.id]

    @patch("processing.reverse_geocode", return_value=None)
    def test_geocode_failure_falls_back(self, mock_geocode, db, store, car_trip):
        decision = process_sample(db, _sample())
        assert store.get_waypoint(decision.waypoint_id).address == "Unknown Address"

    @patch("processing.reverse_geocode")
    def test_sample_address_skips_geocoding(self, mock_geocode, db, store, car_trip):
        sample = dataclasses.replace(_sample(), address="Apple Park Visitor Center")
        decision = process_sample(db, sample)
        assert store.get_waypoint(decision.waypoint_id).address == "Apple Park Visitor Center"
        mock_geocode.assert_not_called()

    @patch("processing.reverse_geocode", return_value=GEOCODED)
    def test_rejected_sample_is_not_committed(self, mock_geocode, db, store, car_trip):
        process_sample(db, _sample())
        decision = process_sample(db, _sample(50, 20))
        assert not decision.accepted
        assert len(store.get_trip(car_trip.id).location_ids) == 1

    @patch("processing.reverse_geocode", return_value=GEOCODED)
    def test_road_names_resolved_when_enabled(self, mock_geocode, db, store, car_trip):
        settings = {"reverse_geocode": "1", "resolve_road_names": "1"}
        decision = process_sample(db, _sample(road=None), settings)
        assert store.get_waypoint(decision.waypoint_id).road_name == "Infinite Loop"
        assert mock_geocode.call_count == 1

    @patch("processing.reverse_geocode", return_value=GEOCODED)
    def test_road_names_not_resolved_by_default(self, mock_geocode, db, store, car_trip):
        decision = process_sample(db, _sample(road=None))
        assert store.get_waypoint(decision.waypoint_id).road_name is None

    @patch("processing.reverse_geocode", return_value=GEOCODED)
    def test_disabled_trip_commits_nothing(self, mock_geocode, db, store):
        trip = store.start_trip("Walk")
        decision = process_sample(db, _sample())
        assert decision.reason is DecisionReason.AUTO_SAVE_DISABLED
        assert store.get_trip(trip.id).location_ids == []
        mock_geocode.assert_not_called()

    @patch("processing.reverse_geocode", return_value=GEOCODED)
    def test_aware_timestamp_is_stored_as_utc(self, mock_geocode, db, store, car_trip):
        plus_two = datetime.timezone(datetime.timedelta(hours=2))
        aware = dataclasses.replace(_sample(), timestamp=datetime.datetime(2024, 6, 1, 11, 0, tzinfo=plus_two))
        first = process_sample(db, aware)
        assert store.get_waypoint(first.waypoint_id).timestamp == t(0)

        # Six minutes later in naive UTC is past the car interval, not stale
        assert process_sample(db, _sample(360)).reason is DecisionReason.TIME_INTERVAL

    @patch("processing.reverse_geocode", return_value=GEOCODED)
    def test_hand_added_waypoint_is_not_a_reference_point(self, mock_geocode, db, store):
        store.start_trip("Yesterday", config=AutoSaveConfiguration.car())
        next_day = process_sample(db, _sample(86400))
        trip = store.start_trip("Today", config=AutoSaveConfiguration.car())
        store.add_waypoint_to_trip(next_day.waypoint_id, trip.id)

        decision = process_sample(db, _sample(0))
        assert decision.reason is DecisionReason.TRIP_START
        assert store.get_trip(trip.id).location_ids == [next_day.waypoint_id, decision.waypoint_id]
        assert process_sample(db, _sample(300)).reason is DecisionReason.TIME_INTERVAL


class TestProcessSamples:
    @patch("processing.reverse_geocode", return_value=GEOCODED)
    def test_drive_batch(self, mock_geocode, db, store, car_trip):
        decisions = process_samples(db, [LocationSample(**pt) for pt in DRIVE])

        assert [d.reason.value for d in decisions] == DRIVE_EXPECTED
        assert all(isinstance(d, Decision) for d in decisions)

        waypoints = store.get_waypoints(car_trip.id)
        assert [w.timestamp for w in waypoints] == [DRIVE[i]["timestamp"] for i in DRIVE_ACCEPTED_INDEXES]
        assert [w.road_name for w in waypoints] == [DRIVE[i]["road_name"] for i in DRIVE_ACCEPTED_INDEXES]

    @patch("processing.reverse_geocode", return_value=GEOCODED)
    def test_config_change_applies_to_next_sample(self, mock_geocode, db, store, car_trip):
        process_sample(db, _sample(0))
        assert not process_sample(db, _sample(150)).accepted

        store.update_auto_save_config(car_trip.id, AutoSaveConfiguration.walking())
        assert process_sample(db, _sample(150)).reason is DecisionReason.TIME_INTERVAL

    @patch("processing.reverse_geocode", return_value=GEOCODED)
    def test_ended_trip_receives_nothing(self, mock_geocode, db, store, car_trip):
        process_sample(db, _sample(0))
        store.end_trip(car_trip.id)
        assert process_sample(db, _sample(1000)).reason is DecisionReason.NO_ACTIVE_TRIP


class TestConcurrentSamples:
    def test_one_trip_start_when_samples_race(self, tmp_path):
        engine = create_engine(f"sqlite:///{tmp_path / 'trips.db'}", connect_args={"check_same_thread": False})
        Base.metadata.create_all(bind=engine)
        Session = sessionmaker(bind=engine)
        with Session() as setup:
            trip_id = TripStore(setup).start_trip("Race", config=AutoSaveConfiguration.car()).id

        # Both uploads are past their first decision before either commits
        barrier = threading.Barrier(2, timeout=5)

        def geocode(lat, lon):
            barrier.wait()
            return GEOCODED

        def upload():
            with Session() as db:
                return process_sample(db, _sample()).reason

        with patch("processing.reverse_geocode", side_effect=geocode):
            with ThreadPoolExecutor(max_workers=2) as pool:
                futures = [pool.submit(upload) for _ in range(2)]
                reasons = sorted(f.result().value for f in futures)

        assert reasons == ["no_trigger_matched", "trip_start"]
        with Session() as db:
            assert len(TripStore(db).get_trip(trip_id).location_ids) == 1
        engine.dispose()

    def test_idle_locks_of_other_trips_are_dropped(self):
        first = processing._trip_lock(1001)
        assert processing._trip_lock(1001) is first
        processing._trip_lock(1002)
        assert 1001 not in processing._trip_locks
