"""Trip and waypoint persistence on top of a SQLAlchemy session.

The store owns the list of trips, their ordered waypoint references, and the
single-active-trip rule. The auto-save engine never touches it directly; the
sample pipeline in ``processing`` reads the active trip and last accepted
waypoint from here and commits accepted waypoints back.
"""

import datetime
import logging
from typing import Optional

from sqlalchemy import func
from sqlalchemy.orm import Session

from autosave import AutoSaveConfiguration
from models import Trip, TripColor, TripWaypoint, Waypoint

logger = logging.getLogger(__name__)


class NotFoundError(LookupError):
    """Raised when a trip or waypoint id does not exist."""


class TripStore:
    def __init__(self, db: Session):
        self.db = db

    # ---------------------------------------------------------------------
    # Engine-facing interface
    # ---------------------------------------------------------------------

    def get_active_trip(self) -> Optional[Trip]:
        return self.db.query(Trip).filter(Trip.is_active.is_(True)).first()

    def get_last_accepted_waypoint(self, trip_id: int) -> Optional[Waypoint]:
        """Most recent waypoint the auto-save pipeline committed to the trip.

        Waypoints attached by hand are not reference points, and display
        order is ignored, so neither membership edits nor reordering move
        the reference point for the next decision.
        """
        self.get_trip(trip_id)
        return (
            self.db.query(Waypoint)
            .join(TripWaypoint, TripWaypoint.waypoint_id == Waypoint.id)
            .filter(TripWaypoint.trip_id == trip_id, TripWaypoint.auto_saved.is_(True))
            .order_by(TripWaypoint.id.desc())
            .first()
        )

    def commit_waypoint(self, trip_id: int, waypoint_data) -> Waypoint:
        """Persist an accepted waypoint and append it to the trip."""
        trip = self.get_trip(trip_id)
        if not trip.is_active:
            raise ValueError(f"Trip {trip_id} has ended")

        waypoint = Waypoint(
            address=waypoint_data.address,
            latitude=waypoint_data.latitude,
            longitude=waypoint_data.longitude,
            altitude=waypoint_data.altitude,
            road_name=waypoint_data.road_name,
            timestamp=waypoint_data.timestamp,
            comment=getattr(waypoint_data, "comment", None),
            photo_identifiers=list(getattr(waypoint_data, "photo_identifiers", None) or []),
        )
        self.db.add(waypoint)
        self.db.flush()
        self._append(trip, waypoint.id, auto_saved=True)
        self.db.commit()
        self.db.refresh(waypoint)
        logger.info("Committed waypoint id=%d to trip id=%d", waypoint.id, trip.id)
        return waypoint

    # ---------------------------------------------------------------------
    # Trips
    # ---------------------------------------------------------------------

    def get_trip(self, trip_id: int) -> Trip:
        trip = self.db.query(Trip).filter(Trip.id == trip_id).first()
        if trip is None:
            raise NotFoundError(f"Trip {trip_id} not found")
        return trip

    def list_trips(self) -> list[Trip]:
        return self.db.query(Trip).order_by(Trip.start_date.desc(), Trip.id.desc()).all()

    def start_trip(
        self,
        name: str,
        description: str | None = None,
        color: TripColor | str = TripColor.GREEN,
        config: AutoSaveConfiguration | None = None,
    ) -> Trip:
        """Start tracking a new trip, ending whichever trip was active."""
        self.end_active_trip()
        trip = Trip(
            name=name,
            description=description,
            start_date=datetime.datetime.utcnow(),
            is_active=True,
            color=TripColor(color).value,
        )
        trip.auto_save = config or AutoSaveConfiguration.default()
        self.db.add(trip)
        self.db.commit()
        self.db.refresh(trip)
        logger.info("Started trip %r (id=%d)", trip.name, trip.id)
        return trip

    def end_active_trip(self) -> Optional[Trip]:
        trip = self.get_active_trip()
        if trip is None:
            return None
        return self.end_trip(trip.id)

    def end_trip(self, trip_id: int) -> Trip:
        trip = self.get_trip(trip_id)
        if trip.is_active:
            trip.is_active = False
            trip.end_date = datetime.datetime.utcnow()
            self.db.commit()
            logger.info("Ended trip %r (id=%d) with %d waypoints", trip.name, trip.id, len(trip.entries))
        return trip

    def update_trip(
        self,
        trip_id: int,
        name: str | None = None,
        description: str | None = None,
        color: TripColor | str | None = None,
        cover_photo_identifier: str | None = None,
    ) -> Trip:
        """Update the cosmetic fields of a trip; allowed on ended trips too."""
        trip = self.get_trip(trip_id)
        if name is not None:
            trip.name = name
        if description is not None:
            trip.description = description
        if color is not None:
            trip.color = TripColor(color).value
        if cover_photo_identifier is not None:
            trip.cover_photo_identifier = cover_photo_identifier
        self.db.commit()
        return trip

    def update_auto_save_config(self, trip_id: int, config: AutoSaveConfiguration) -> Trip:
        trip = self.get_trip(trip_id)
        if not trip.is_active:
            raise ValueError(f"Trip {trip_id} has ended; its auto-save policy is frozen")
        trip.auto_save = config
        self.db.commit()
        logger.info(
            "Trip id=%d auto-save now %s (%s, enabled=%s)",
            trip.id, config.trip_type.value, config.trigger_mode.value, config.is_enabled,
        )
        return trip

    def delete_trip(self, trip_id: int):
        """Delete a trip. Its waypoints remain in the journal."""
        trip = self.get_trip(trip_id)
        self.db.delete(trip)
        self.db.commit()
        logger.info("Deleted trip id=%d", trip_id)

    def create_trip_from_waypoints(
        self,
        name: str,
        waypoint_ids: list[int],
        description: str | None = None,
        color: TripColor | str = TripColor.GREEN,
    ) -> Trip:
        """Build an ended trip out of already-saved waypoints."""
        waypoints = [self.get_waypoint(wid) for wid in dict.fromkeys(waypoint_ids)]
        now = datetime.datetime.utcnow()
        timestamps = [w.timestamp for w in waypoints]
        trip = Trip(
            name=name,
            description=description,
            start_date=min(timestamps) if timestamps else now,
            end_date=max(timestamps) if timestamps else now,
            is_active=False,
            color=TripColor(color).value,
        )
        trip.auto_save = AutoSaveConfiguration.default()
        self.db.add(trip)
        self.db.flush()
        for w in waypoints:
            self._append(trip, w.id)
        self.db.commit()
        self.db.refresh(trip)
        logger.info("Created trip %r (id=%d) from %d waypoints", trip.name, trip.id, len(waypoints))
        return trip

    # ---------------------------------------------------------------------
    # Trip membership
    # ---------------------------------------------------------------------

    def get_waypoints(self, trip_id: int, chronological: bool = False) -> list[Waypoint]:
        trip = self.get_trip(trip_id)
        waypoints = [e.waypoint for e in trip.entries]
        if chronological:
            waypoints.sort(key=lambda w: w.timestamp)
        return waypoints

    def add_waypoint_to_trip(self, waypoint_id: int, trip_id: int) -> Trip:
        trip = self._editable_trip(trip_id)
        self.get_waypoint(waypoint_id)
        if waypoint_id not in trip.location_ids:
            self._append(trip, waypoint_id)
            self.db.commit()
        return trip

    def remove_waypoint_from_trip(self, waypoint_id: int, trip_id: int) -> Trip:
        trip = self._editable_trip(trip_id)
        for entry in list(trip.entries):
            if entry.waypoint_id == waypoint_id:
                trip.entries.remove(entry)
        self._renumber(trip)
        self.db.commit()
        return trip

    def reorder_waypoints(self, trip_id: int, waypoint_ids: list[int]) -> Trip:
        trip = self._editable_trip(trip_id)
        if sorted(waypoint_ids) != sorted(trip.location_ids):
            raise ValueError("New order must contain exactly the trip's waypoints")
        by_waypoint = {e.waypoint_id: e for e in trip.entries}
        for position, wid in enumerate(waypoint_ids):
            by_waypoint[wid].position = position
        self.db.commit()
        return trip

    def get_trips_containing(self, waypoint_id: int) -> list[Trip]:
        return (
            self.db.query(Trip)
            .join(TripWaypoint, TripWaypoint.trip_id == Trip.id)
            .filter(TripWaypoint.waypoint_id == waypoint_id)
            .all()
        )

    def _editable_trip(self, trip_id: int) -> Trip:
        trip = self.get_trip(trip_id)
        if trip.end_date is not None:
            raise ValueError(f"Trip {trip_id} has ended; its waypoint list is frozen")
        return trip

    def _append(self, trip: Trip, waypoint_id: int, auto_saved: bool = False):
        next_position = (
            self.db.query(func.max(TripWaypoint.position))
            .filter(TripWaypoint.trip_id == trip.id)
            .scalar()
        )
        entry = TripWaypoint(
            trip_id=trip.id,
            waypoint_id=waypoint_id,
            position=0 if next_position is None else next_position + 1,
            auto_saved=auto_saved,
        )
        self.db.add(entry)
        self.db.flush()
        self.db.expire(trip, ["entries"])

    def _renumber(self, trip: Trip):
        for position, entry in enumerate(sorted(trip.entries, key=lambda e: e.position)):
            entry.position = position

    # ---------------------------------------------------------------------
    # Waypoints
    # ---------------------------------------------------------------------

    def get_waypoint(self, waypoint_id: int) -> Waypoint:
        waypoint = self.db.query(Waypoint).filter(Waypoint.id == waypoint_id).first()
        if waypoint is None:
            raise NotFoundError(f"Waypoint {waypoint_id} not found")
        return waypoint

    def list_waypoints(self) -> list[Waypoint]:
        return self.db.query(Waypoint).order_by(Waypoint.timestamp.asc()).all()

    def update_waypoint(
        self,
        waypoint_id: int,
        comment: str | None = None,
        photo_identifiers: list[str] | None = None,
    ) -> Waypoint:
        """Edit the mutable parts of a waypoint: its comment and attached media."""
        waypoint = self.get_waypoint(waypoint_id)
        if comment is not None:
            waypoint.comment = comment or None
        if photo_identifiers is not None:
            waypoint.photo_identifiers = list(photo_identifiers)
        self.db.commit()
        return waypoint

    def delete_waypoint(self, waypoint_id: int):
        """Delete a waypoint and drop it from every trip that references it."""
        waypoint = self.get_waypoint(waypoint_id)
        trips = self.get_trips_containing(waypoint_id)
        self.db.delete(waypoint)
        self.db.flush()
        for trip in trips:
            self.db.expire(trip, ["entries"])
            self._renumber(trip)
        self.db.commit()
        logger.info("Deleted waypoint id=%d (referenced by %d trips)", waypoint_id, len(trips))

    # ---------------------------------------------------------------------
    # Counts
    # ---------------------------------------------------------------------

    def trip_counts(self) -> dict:
        total = self.db.query(Trip).count()
        active = self.db.query(Trip).filter(Trip.is_active.is_(True)).count()
        return {"total": total, "active": active, "completed": total - active}
