"""Database setup and session management using SQLAlchemy + SQLite."""

import logging
import os

logger = logging.getLogger(__name__)

from sqlalchemy import create_engine, inspect, text
from sqlalchemy.orm import Session, declarative_base, sessionmaker

DATABASE_URL = os.environ.get("DATABASE_URL", "sqlite:///trips.db")

engine = create_engine(DATABASE_URL, connect_args={"check_same_thread": False})
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)
Base = declarative_base()


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def init_db():
    """Create all tables, run migrations, and seed default settings."""
    from models import Config, Trip, TripWaypoint, Waypoint  # noqa: F401

    logger.info("Initializing database at %s", DATABASE_URL)
    Base.metadata.create_all(bind=engine)
    _migrate()
    _seed_config()


def _migrate():
    """Add any missing columns to existing tables."""
    insp = inspect(engine)
    if "waypoints" in insp.get_table_names():
        columns = {c["name"] for c in insp.get_columns("waypoints")}
        if "road_name" not in columns:
            logger.info("Migrating: adding road_name column to waypoints table")
            with engine.begin() as conn:
                conn.execute(text("ALTER TABLE waypoints ADD COLUMN road_name VARCHAR"))

    if "trips" in insp.get_table_names():
        columns = {c["name"] for c in insp.get_columns("trips")}
        if "auto_save_config" not in columns:
            logger.info("Migrating: adding auto_save_config column to trips table")
            with engine.begin() as conn:
                conn.execute(text("ALTER TABLE trips ADD COLUMN auto_save_config JSON"))

    if "trip_waypoints" in insp.get_table_names():
        columns = {c["name"] for c in insp.get_columns("trip_waypoints")}
        if "auto_saved" not in columns:
            logger.info("Migrating: adding auto_saved column to trip_waypoints table")
            with engine.begin() as conn:
                conn.execute(text("ALTER TABLE trip_waypoints ADD COLUMN auto_saved BOOLEAN NOT NULL DEFAULT 0"))


# Runtime settings; values are stored as strings
DEFAULT_SETTINGS = {
    "default_trip_type": "walking",
    "reverse_geocode": "1",
    "resolve_road_names": "0",
}


def _seed_config():
    """Insert default settings if not present."""
    from models import Config

    db = SessionLocal()
    try:
        for key, value in DEFAULT_SETTINGS.items():
            if not db.query(Config).filter(Config.key == key).first():
                db.add(Config(key=key, value=value))
        db.commit()
    finally:
        db.close()


def get_settings(db: Session) -> dict:
    """Read settings from the Config table, falling back to DEFAULT_SETTINGS."""
    from models import Config

    settings = dict(DEFAULT_SETTINGS)
    rows = db.query(Config).filter(Config.key.in_(settings.keys())).all()
    for row in rows:
        settings[row.key] = row.value
    return settings


def setting_enabled(settings: dict, key: str) -> bool:
    return str(settings.get(key, "0")).strip().lower() in ("1", "true", "yes", "on")
