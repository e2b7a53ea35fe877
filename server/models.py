"""SQLAlchemy models for trips, waypoints, and runtime settings."""

import datetime
import enum

from sqlalchemy import JSON, Boolean, Column, DateTime, Float, ForeignKey, Integer, String, Text
from sqlalchemy.orm import relationship

from autosave import AutoSaveConfiguration
from database import Base


class TripColor(str, enum.Enum):
    """Categorical tag shown next to a trip."""

    GREEN = "spotifyGreen"
    BLUE = "systemBlue"
    PURPLE = "systemPurple"
    ORANGE = "systemOrange"
    RED = "systemRed"
    YELLOW = "systemYellow"
    PINK = "systemPink"
    INDIGO = "systemIndigo"

    @property
    def display_name(self) -> str:
        return _COLOR_NAMES[self]


_COLOR_NAMES = {
    TripColor.GREEN: "Adventure",
    TripColor.BLUE: "Business",
    TripColor.PURPLE: "Vacation",
    TripColor.ORANGE: "Food & Dining",
    TripColor.RED: "Emergency",
    TripColor.YELLOW: "Exploration",
    TripColor.PINK: "Romance",
    TripColor.INDIGO: "Nature",
}


class Trip(Base):
    """A journey: an ordered collection of waypoints between a start and an end.

    At most one trip is active at a time; the store ends the previous one
    before starting another.
    """

    __tablename__ = "trips"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String, nullable=False)
    description = Column(Text, nullable=True)
    start_date = Column(DateTime, nullable=False, default=datetime.datetime.utcnow)
    end_date = Column(DateTime, nullable=True)
    is_active = Column(Boolean, default=True, index=True)
    color = Column(String, nullable=False, default=TripColor.GREEN.value)
    cover_photo_identifier = Column(String, nullable=True)
    auto_save_config = Column(JSON, nullable=True)
    created_at = Column(DateTime, default=datetime.datetime.utcnow)

    entries = relationship(
        "TripWaypoint",
        back_populates="trip",
        order_by="TripWaypoint.position",
        cascade="all, delete-orphan",
    )

    @property
    def location_ids(self) -> list[int]:
        return [e.waypoint_id for e in self.entries]

    @property
    def auto_save(self) -> AutoSaveConfiguration:
        return AutoSaveConfiguration.from_dict(self.auto_save_config)

    @auto_save.setter
    def auto_save(self, config: AutoSaveConfiguration):
        self.auto_save_config = config.to_dict()

    @property
    def duration_seconds(self) -> float:
        end = self.end_date or datetime.datetime.utcnow()
        return (end - self.start_date).total_seconds()

    @property
    def status(self) -> str:
        return "Active" if self.is_active else "Completed"


class Waypoint(Base):
    """A single saved location sample (a place in the journal)."""

    __tablename__ = "waypoints"

    id = Column(Integer, primary_key=True, index=True)
    address = Column(Text, nullable=False, default="Unknown Address")
    latitude = Column(Float, nullable=False)
    longitude = Column(Float, nullable=False)
    altitude = Column(Float, nullable=False, default=0.0)
    road_name = Column(String, nullable=True)
    timestamp = Column(DateTime, nullable=False, index=True)
    comment = Column(Text, nullable=True)
    photo_identifiers = Column(JSON, nullable=False, default=list)
    created_at = Column(DateTime, default=datetime.datetime.utcnow)

    entries = relationship("TripWaypoint", back_populates="waypoint", cascade="all, delete-orphan")


class TripWaypoint(Base):
    """Membership of a waypoint in a trip, with its display position."""

    __tablename__ = "trip_waypoints"

    id = Column(Integer, primary_key=True, index=True)
    trip_id = Column(Integer, ForeignKey("trips.id"), nullable=False, index=True)
    waypoint_id = Column(Integer, ForeignKey("waypoints.id"), nullable=False, index=True)
    position = Column(Integer, nullable=False, default=0)
    # Set only for waypoints the auto-save pipeline committed
    auto_saved = Column(Boolean, nullable=False, default=False)
    added_at = Column(DateTime, default=datetime.datetime.utcnow)

    trip = relationship("Trip", back_populates="entries")
    waypoint = relationship("Waypoint", back_populates="entries")


class Config(Base):
    """Runtime settings stored as string key/value pairs."""

    __tablename__ = "config"

    key = Column(String, primary_key=True)
    value = Column(String, nullable=False)
