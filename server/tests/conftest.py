"""Shared pytest fixtures: in-memory DB, trip store, active trip."""

import sys
import os

# Add server root to path so imports work
sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from database import Base
from models import Config, Trip, TripWaypoint, Waypoint  # noqa: F401
from autosave import AutoSaveConfiguration
from store import TripStore


@pytest.fixture
def engine():
    """Create a fresh in-memory SQLite database for each test."""
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(bind=engine)
    return engine


@pytest.fixture
def db(engine):
    """Provide a DB session, closed after each test."""
    Session = sessionmaker(bind=engine)
    session = Session()
    yield session
    session.close()


@pytest.fixture
def store(db):
    return TripStore(db)


@pytest.fixture
def car_trip(store):
    """An active trip with the car preset switched on."""
    return store.start_trip("Road trip", config=AutoSaveConfiguration.car())
