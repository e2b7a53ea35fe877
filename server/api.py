"""REST API endpoints for the phone app (trips, auto-save policy, sample uploads, waypoints)."""

import datetime
import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field, field_validator
from sqlalchemy.orm import Session

from autosave import INTERVAL_SECOND_STEPS, AutoSaveConfiguration, TripType
from database import get_db, get_settings
from models import Trip, TripColor, Waypoint
from processing import Decision, LocationSample, process_samples
from store import NotFoundError, TripStore
from trip_stats import format_duration, suggest_trips, trip_statistics

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api")


# ---------------------------------------------------------------------------
# Pydantic schemas
# ---------------------------------------------------------------------------

class AutoSaveResponse(BaseModel):
    is_enabled: bool
    trip_type: TripType
    trigger_mode: str
    save_on_road_change: bool
    minimum_distance_meters: float
    save_on_time_interval: bool
    time_interval_minutes: int
    time_interval_seconds: int
    total_interval_seconds: int
    is_valid_time_interval: bool


class AutoSaveUpdate(BaseModel):
    """Partial update of a trip's auto-save policy.

    ``preset`` replaces the thresholds with a named preset first; any explicit
    fields are applied on top and the preset label is recomputed.
    """
    preset: Optional[TripType] = None
    is_enabled: Optional[bool] = None
    save_on_road_change: Optional[bool] = None
    minimum_distance_meters: Optional[float] = Field(None, ge=50, le=1000)
    save_on_time_interval: Optional[bool] = None
    time_interval_minutes: Optional[int] = Field(None, ge=0, le=59)
    time_interval_seconds: Optional[int] = None

    @field_validator("time_interval_seconds")
    @classmethod
    def _seconds_step(cls, v):
        if v is not None and v not in INTERVAL_SECOND_STEPS:
            raise ValueError(f"time_interval_seconds must be one of {INTERVAL_SECOND_STEPS}")
        return v


class TripCreate(BaseModel):
    name: str
    description: Optional[str] = None
    color: TripColor = TripColor.GREEN
    auto_save: Optional[AutoSaveUpdate] = None


class TripUpdate(BaseModel):
    name: Optional[str] = None
    description: Optional[str] = None
    color: Optional[TripColor] = None
    cover_photo_identifier: Optional[str] = None


class RetrospectiveTripCreate(BaseModel):
    name: str
    waypoint_ids: list[int]
    description: Optional[str] = None
    color: TripColor = TripColor.GREEN


class TripResponse(BaseModel):
    id: int
    name: str
    description: Optional[str] = None
    start_date: str
    end_date: Optional[str] = None
    is_active: bool
    status: str
    color: str
    color_name: str
    cover_photo_identifier: Optional[str] = None
    location_ids: list[int]
    duration: str
    auto_save: AutoSaveResponse


class WaypointOrder(BaseModel):
    waypoint_ids: list[int]


class SamplePoint(BaseModel):
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    altitude: Optional[float] = None
    road_name: Optional[str] = None
    address: Optional[str] = None
    timestamp: Optional[str] = Field(None, description="ISO 8601 timestamp from the device")


class SampleBatch(BaseModel):
    samples: list[SamplePoint]


class DecisionResponse(BaseModel):
    accepted: bool
    reason: str
    waypoint_id: Optional[int] = None
    distance_m: Optional[float] = None
    elapsed_s: Optional[float] = None


class BatchDecisionResponse(BaseModel):
    received: int
    accepted: int
    decisions: list[DecisionResponse]


class WaypointResponse(BaseModel):
    id: int
    address: str
    latitude: float
    longitude: float
    altitude: float
    road_name: Optional[str] = None
    timestamp: str
    comment: Optional[str] = None
    photo_identifiers: list[str]


class WaypointUpdate(BaseModel):
    comment: Optional[str] = None
    photo_identifiers: Optional[list[str]] = None


class StatisticsResponse(BaseModel):
    total_locations: int
    total_photos: int
    average_altitude: float
    distance_covered_m: float
    location_spread_m: float
    duration: str


class SuggestionResponse(BaseModel):
    suggested_name: str
    waypoint_ids: list[int]
    date: str
    type: str


class TripCountsResponse(BaseModel):
    total: int
    active: int
    completed: int


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _auto_save_response(config: AutoSaveConfiguration) -> AutoSaveResponse:
    return AutoSaveResponse(
        is_enabled=config.is_enabled,
        trip_type=config.trip_type,
        trigger_mode=config.trigger_mode.value,
        save_on_road_change=config.save_on_road_change,
        minimum_distance_meters=config.minimum_distance_meters,
        save_on_time_interval=config.save_on_time_interval,
        time_interval_minutes=config.time_interval_minutes,
        time_interval_seconds=config.time_interval_seconds,
        total_interval_seconds=config.total_interval_seconds,
        is_valid_time_interval=config.is_valid_time_interval,
    )


def _trip_response(trip: Trip) -> TripResponse:
    return TripResponse(
        id=trip.id,
        name=trip.name,
        description=trip.description,
        start_date=trip.start_date.isoformat(),
        end_date=trip.end_date.isoformat() if trip.end_date else None,
        is_active=trip.is_active,
        status=trip.status,
        color=trip.color,
        color_name=TripColor(trip.color).display_name,
        cover_photo_identifier=trip.cover_photo_identifier,
        location_ids=trip.location_ids,
        duration=format_duration(trip.duration_seconds),
        auto_save=_auto_save_response(trip.auto_save),
    )


def _waypoint_response(w: Waypoint) -> WaypointResponse:
    return WaypointResponse(
        id=w.id,
        address=w.address,
        latitude=w.latitude,
        longitude=w.longitude,
        altitude=w.altitude,
        road_name=w.road_name,
        timestamp=w.timestamp.isoformat(),
        comment=w.comment,
        photo_identifiers=list(w.photo_identifiers or []),
    )


def _decision_response(d: Decision) -> DecisionResponse:
    return DecisionResponse(
        accepted=d.accepted,
        reason=d.reason.value,
        waypoint_id=d.waypoint_id,
        distance_m=d.distance_m,
        elapsed_s=d.elapsed_s,
    )


def _apply_auto_save(current: AutoSaveConfiguration, req: AutoSaveUpdate) -> AutoSaveConfiguration:
    config = current
    if req.preset is not None:
        if req.preset is TripType.CUSTOM:
            raise HTTPException(status_code=422, detail="custom is not a preset; send explicit values instead")
        config = AutoSaveConfiguration.for_trip_type(req.preset).with_changes(is_enabled=current.is_enabled)
    changes = req.model_dump(exclude_unset=True, exclude={"preset"})
    changes = {k: v for k, v in changes.items() if v is not None}
    return config.with_changes(**changes) if changes else config


def _parse_timestamp(value: Optional[str]) -> Optional[datetime.datetime]:
    """Parse an ISO 8601 timestamp into naive UTC; None if missing or invalid."""
    if not value:
        return None
    try:
        ts = datetime.datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    if ts.tzinfo is not None:
        ts = ts.astimezone(datetime.timezone.utc).replace(tzinfo=None)
    return ts


def _not_found(e: NotFoundError):
    raise HTTPException(status_code=404, detail=str(e))


def _conflict(e: ValueError):
    raise HTTPException(status_code=409, detail=str(e))


# ---------------------------------------------------------------------------
# Preset endpoints
# ---------------------------------------------------------------------------

@router.get("/presets", response_model=list[AutoSaveResponse])
def list_presets():
    return [
        _auto_save_response(AutoSaveConfiguration.for_trip_type(t))
        for t in (TripType.WALKING, TripType.BICYCLE, TripType.CAR)
    ]


# ---------------------------------------------------------------------------
# Trip endpoints
# ---------------------------------------------------------------------------

@router.post("/trips", response_model=TripResponse, status_code=201)
def start_trip(req: TripCreate, db: Session = Depends(get_db)):
    settings = get_settings(db)
    try:
        config = AutoSaveConfiguration.default(settings["default_trip_type"])
    except ValueError:
        logger.warning("Ignoring invalid default_trip_type setting %r", settings["default_trip_type"])
        config = AutoSaveConfiguration.default()
    if req.auto_save is not None:
        config = _apply_auto_save(config, req.auto_save)

    trip = TripStore(db).start_trip(req.name, req.description, req.color, config)
    return _trip_response(trip)


@router.get("/trips", response_model=list[TripResponse])
def list_trips(db: Session = Depends(get_db)):
    return [_trip_response(t) for t in TripStore(db).list_trips()]


@router.get("/trips/active", response_model=TripResponse)
def get_active_trip(db: Session = Depends(get_db)):
    trip = TripStore(db).get_active_trip()
    if trip is None:
        raise HTTPException(status_code=404, detail="No active trip")
    return _trip_response(trip)


@router.get("/trips/counts", response_model=TripCountsResponse)
def trip_counts(db: Session = Depends(get_db)):
    return TripCountsResponse(**TripStore(db).trip_counts())


@router.get("/trips/suggestions", response_model=list[SuggestionResponse])
def get_trip_suggestions(db: Session = Depends(get_db)):
    """Suggest day trips from waypoints saved on the same day."""
    suggestions = suggest_trips(TripStore(db).list_waypoints())
    return [
        SuggestionResponse(
            suggested_name=s["suggested_name"],
            waypoint_ids=s["waypoint_ids"],
            date=s["date"].isoformat(),
            type=s["type"],
        )
        for s in suggestions
    ]


@router.post("/trips/from-waypoints", response_model=TripResponse, status_code=201)
def create_trip_from_waypoints(req: RetrospectiveTripCreate, db: Session = Depends(get_db)):
    try:
        trip = TripStore(db).create_trip_from_waypoints(req.name, req.waypoint_ids, req.description, req.color)
    except NotFoundError as e:
        _not_found(e)
    return _trip_response(trip)


@router.get("/trips/{trip_id}", response_model=TripResponse)
def get_trip(trip_id: int, db: Session = Depends(get_db)):
    try:
        return _trip_response(TripStore(db).get_trip(trip_id))
    except NotFoundError as e:
        _not_found(e)


@router.put("/trips/{trip_id}", response_model=TripResponse)
def update_trip(trip_id: int, req: TripUpdate, db: Session = Depends(get_db)):
    try:
        trip = TripStore(db).update_trip(
            trip_id,
            name=req.name,
            description=req.description,
            color=req.color,
            cover_photo_identifier=req.cover_photo_identifier,
        )
    except NotFoundError as e:
        _not_found(e)
    return _trip_response(trip)


@router.post("/trips/{trip_id}/end", response_model=TripResponse)
def end_trip(trip_id: int, db: Session = Depends(get_db)):
    try:
        return _trip_response(TripStore(db).end_trip(trip_id))
    except NotFoundError as e:
        _not_found(e)


@router.delete("/trips/{trip_id}", status_code=204)
def delete_trip(trip_id: int, db: Session = Depends(get_db)):
    try:
        TripStore(db).delete_trip(trip_id)
    except NotFoundError as e:
        _not_found(e)


@router.put("/trips/{trip_id}/autosave", response_model=TripResponse)
def update_auto_save(trip_id: int, req: AutoSaveUpdate, db: Session = Depends(get_db)):
    store = TripStore(db)
    try:
        trip = store.get_trip(trip_id)
        config = _apply_auto_save(trip.auto_save, req)
        trip = store.update_auto_save_config(trip_id, config)
    except NotFoundError as e:
        _not_found(e)
    except ValueError as e:
        _conflict(e)
    return _trip_response(trip)


@router.get("/trips/{trip_id}/statistics", response_model=StatisticsResponse)
def get_trip_statistics(trip_id: int, db: Session = Depends(get_db)):
    store = TripStore(db)
    try:
        trip = store.get_trip(trip_id)
    except NotFoundError as e:
        _not_found(e)
    stats = trip_statistics(store.get_waypoints(trip_id))
    return StatisticsResponse(**stats, duration=format_duration(trip.duration_seconds))


# ---------------------------------------------------------------------------
# Trip waypoint endpoints
# ---------------------------------------------------------------------------

@router.get("/trips/{trip_id}/waypoints", response_model=list[WaypointResponse])
def get_trip_waypoints(trip_id: int, chronological: bool = False, db: Session = Depends(get_db)):
    try:
        waypoints = TripStore(db).get_waypoints(trip_id, chronological=chronological)
    except NotFoundError as e:
        _not_found(e)
    return [_waypoint_response(w) for w in waypoints]


@router.put("/trips/{trip_id}/waypoints/order", response_model=TripResponse)
def reorder_trip_waypoints(trip_id: int, req: WaypointOrder, db: Session = Depends(get_db)):
    try:
        trip = TripStore(db).reorder_waypoints(trip_id, req.waypoint_ids)
    except NotFoundError as e:
        _not_found(e)
    except ValueError as e:
        _conflict(e)
    return _trip_response(trip)


@router.post("/trips/{trip_id}/waypoints/{waypoint_id}", response_model=TripResponse)
def add_waypoint_to_trip(trip_id: int, waypoint_id: int, db: Session = Depends(get_db)):
    try:
        trip = TripStore(db).add_waypoint_to_trip(waypoint_id, trip_id)
    except NotFoundError as e:
        _not_found(e)
    except ValueError as e:
        _conflict(e)
    return _trip_response(trip)


@router.delete("/trips/{trip_id}/waypoints/{waypoint_id}", response_model=TripResponse)
def remove_waypoint_from_trip(trip_id: int, waypoint_id: int, db: Session = Depends(get_db)):
    try:
        trip = TripStore(db).remove_waypoint_from_trip(waypoint_id, trip_id)
    except NotFoundError as e:
        _not_found(e)
    except ValueError as e:
        _conflict(e)
    return _trip_response(trip)


# ---------------------------------------------------------------------------
# Sample upload
# ---------------------------------------------------------------------------

@router.post("/samples", response_model=BatchDecisionResponse)
def upload_samples(batch: SampleBatch, db: Session = Depends(get_db)):
    """Run live location samples through the active trip's auto-save policy."""
    samples = [
        LocationSample(
            latitude=pt.latitude,
            longitude=pt.longitude,
            altitude=pt.altitude,
            timestamp=_parse_timestamp(pt.timestamp),
            road_name=pt.road_name,
            address=pt.address,
        )
        for pt in batch.samples
    ]
    decisions = process_samples(db, samples)
    return BatchDecisionResponse(
        received=len(samples),
        accepted=sum(1 for d in decisions if d.accepted),
        decisions=[_decision_response(d) for d in decisions],
    )


# ---------------------------------------------------------------------------
# Waypoint endpoints
# ---------------------------------------------------------------------------

@router.get("/waypoints/{waypoint_id}", response_model=WaypointResponse)
def get_waypoint(waypoint_id: int, db: Session = Depends(get_db)):
    try:
        return _waypoint_response(TripStore(db).get_waypoint(waypoint_id))
    except NotFoundError as e:
        _not_found(e)


@router.put("/waypoints/{waypoint_id}", response_model=WaypointResponse)
def update_waypoint(waypoint_id: int, req: WaypointUpdate, db: Session = Depends(get_db)):
    try:
        waypoint = TripStore(db).update_waypoint(
            waypoint_id, comment=req.comment, photo_identifiers=req.photo_identifiers,
        )
    except NotFoundError as e:
        _not_found(e)
    return _waypoint_response(waypoint)


@router.delete("/waypoints/{waypoint_id}", status_code=204)
def delete_waypoint(waypoint_id: int, db: Session = Depends(get_db)):
    try:
        TripStore(db).delete_waypoint(waypoint_id)
    except NotFoundError as e:
        _not_found(e)
