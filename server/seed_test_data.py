#!/usr/bin/env python3
"""Seed the database with a demo drive for development and API testing.

Usage:
    python seed_test_data.py

This starts a trip with the car auto-save preset, streams the Cupertino
drive fixture through the auto-save pipeline, and ends the trip.
"""

from unittest.mock import patch

from autosave import AutoSaveConfiguration
from database import SessionLocal, init_db
from models import Trip
from processing import LocationSample, process_samples
from store import TripStore
from tests.trip_test_fixtures import DRIVE


def seed():
    init_db()
    db = SessionLocal()

    if db.query(Trip).filter(Trip.name == "Demo drive").first():
        print("Demo trip already exists. Skipping seed.")
        db.close()
        return

    store = TripStore(db)
    trip = store.start_trip(
        "Demo drive",
        description="Infinite Loop to Stevens Creek",
        config=AutoSaveConfiguration.car(),
    )
    print(f"Started trip: {trip.name} (id={trip.id})")

    # Mock geocoding to avoid hitting Nominatim
    with patch(
        "processing.reverse_geocode",
        return_value={"address": "Cupertino, California, 95014", "road": None},
    ):
        decisions = process_samples(db, [LocationSample(**pt) for pt in DRIVE])

    for pt, d in zip(DRIVE, decisions):
        mark = "saved" if d.accepted else "skipped"
        print(f"  - {pt['timestamp'].strftime('%H:%M:%S')} {pt['road_name']}: {mark} ({d.reason.value})")

    store.end_trip(trip.id)
    print(f"\nDone! Trip has {len(store.get_trip(trip.id).location_ids)} waypoints")
    db.close()


if __name__ == "__main__":
    seed()
