"""Trip auto-save engine: decides which live location samples become waypoints.

Pipeline for each sample streamed by the phone:
1. Look up the active trip and its last accepted waypoint
2. Optionally resolve the sample's road name via Nominatim
3. Evaluate the sample against the trip's auto-save policy (pure, no I/O)
4. On accept, reverse-geocode an address and commit the waypoint to the trip
"""

import dataclasses
import datetime
import enum
import logging
import math
import os
import threading
import time
from dataclasses import dataclass
from typing import Optional

import requests
from sqlalchemy.orm import Session

from autosave import MAX_INTERVAL_S, MIN_INTERVAL_S, AutoSaveConfiguration
from database import get_settings, setting_enabled
from store import TripStore

logger = logging.getLogger(__name__)

UNKNOWN_ADDRESS = "Unknown Address"

NOMINATIM_URL = os.environ.get("NOMINATIM_URL", "https://nominatim.openstreetmap.org/reverse")

# Nominatim rate limiting (max 1 req/sec per OSM policy)
_last_nominatim_call = 0.0

# One lock per trip so its last-accepted reference advances atomically
_trip_locks: dict[int, threading.Lock] = {}
_trip_locks_guard = threading.Lock()


# ---------------------------------------------------------------------------
# Value types
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class LocationSample:
    """One reading from the phone's location service."""

    latitude: Optional[float]
    longitude: Optional[float]
    altitude: Optional[float]
    timestamp: Optional[datetime.datetime]
    road_name: Optional[str] = None
    address: Optional[str] = None


@dataclass(frozen=True)
class WaypointData:
    """Waypoint fields derived from an accepted sample, ready to persist."""

    latitude: float
    longitude: float
    altitude: float
    timestamp: datetime.datetime
    road_name: Optional[str] = None
    address: Optional[str] = None


class DecisionReason(str, enum.Enum):
    # accepted
    TRIP_START = "trip_start"
    ROAD_CHANGE = "road_change"
    TIME_INTERVAL = "time_interval"
    # rejected
    AUTO_SAVE_DISABLED = "auto_save_disabled"
    TRIP_ENDED = "trip_ended"
    MALFORMED_SAMPLE = "malformed_sample"
    STALE_SAMPLE = "stale_sample"
    INVALID_CONFIGURATION = "invalid_configuration"
    NO_TRIGGER_ENABLED = "no_trigger_enabled"
    NO_TRIGGER_MATCHED = "no_trigger_matched"
    NO_ACTIVE_TRIP = "no_active_trip"


@dataclass(frozen=True)
class Decision:
    accepted: bool
    reason: DecisionReason
    waypoint: Optional[WaypointData] = None
    distance_m: Optional[float] = None
    elapsed_s: Optional[float] = None
    waypoint_id: Optional[int] = None

    @classmethod
    def accept(cls, reason, waypoint, distance_m=None, elapsed_s=None):
        return cls(True, reason, waypoint, distance_m, elapsed_s)

    @classmethod
    def reject(cls, reason, distance_m=None, elapsed_s=None):
        return cls(False, reason, None, distance_m, elapsed_s)


# ---------------------------------------------------------------------------
# Geo math
# ---------------------------------------------------------------------------

def haversine_m(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Distance in metres between two WGS-84 points."""
    R = 6_371_000  # Earth radius in metres
    rlat1, rlat2 = math.radians(lat1), math.radians(lat2)
    dlat = math.radians(lat2 - lat1)
    dlon = math.radians(lon2 - lon1)
    a = math.sin(dlat / 2) ** 2 + math.cos(rlat1) * math.cos(rlat2) * math.sin(dlon / 2) ** 2
    return R * 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))


# ---------------------------------------------------------------------------
# Sample checks
# ---------------------------------------------------------------------------

def _is_finite(value) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool) and math.isfinite(value)


def malformed_fields(sample) -> list[str]:
    """Names of the fields that make a sample unusable (empty if it is fine)."""
    if sample is None:
        return ["sample"]
    bad = []
    lat = getattr(sample, "latitude", None)
    lon = getattr(sample, "longitude", None)
    if not _is_finite(lat) or abs(lat) > 90:
        bad.append("latitude")
    if not _is_finite(lon) or abs(lon) > 180:
        bad.append("longitude")
    if not _is_finite(getattr(sample, "altitude", None)):
        bad.append("altitude")
    if not isinstance(getattr(sample, "timestamp", None), datetime.datetime):
        bad.append("timestamp")
    return bad


def _as_utc_naive(ts: datetime.datetime) -> datetime.datetime:
    if ts.tzinfo is not None:
        return ts.astimezone(datetime.timezone.utc).replace(tzinfo=None)
    return ts


def _road(name: Optional[str]) -> Optional[str]:
    # Unresolved and empty road names are the same "unknown road" value
    return name or None


# ---------------------------------------------------------------------------
# Decision engine
# ---------------------------------------------------------------------------

def evaluate(sample: LocationSample, trip, last_accepted) -> Decision:
    """Decide whether ``sample`` becomes the next waypoint of ``trip``.

    ``trip`` is anything exposing ``auto_save`` (an AutoSaveConfiguration) and
    ``end_date``; ``last_accepted`` is the trip's latest waypoint, or None for
    the first sample of the trip, which is always accepted.

    Triggers are independent: road change is tried first, then the time
    interval; the first one that fires wins. Both thresholds are inclusive.
    The function has no side effects and returns the same decision for the
    same inputs.
    """
    if trip is None:
        raise ValueError("evaluate() requires a trip")

    config: AutoSaveConfiguration = trip.auto_save
    if getattr(trip, "end_date", None) is not None:
        return Decision.reject(DecisionReason.TRIP_ENDED)
    if not config.is_enabled:
        return Decision.reject(DecisionReason.AUTO_SAVE_DISABLED)

    bad = malformed_fields(sample)
    if bad:
        logger.warning("Rejecting malformed sample for trip %s: bad %s", getattr(trip, "id", None), ", ".join(bad))
        return Decision.reject(DecisionReason.MALFORMED_SAMPLE)

    waypoint = WaypointData(
        latitude=float(sample.latitude),
        longitude=float(sample.longitude),
        altitude=float(sample.altitude),
        timestamp=_as_utc_naive(sample.timestamp),
        road_name=_road(sample.road_name),
        address=sample.address or None,
    )

    if last_accepted is None:
        return Decision.accept(DecisionReason.TRIP_START, waypoint)

    elapsed = (_as_utc_naive(sample.timestamp) - _as_utc_naive(last_accepted.timestamp)).total_seconds()
    if elapsed < 0:
        logger.warning(
            "Rejecting stale sample for trip %s: %s precedes last accepted %s",
            getattr(trip, "id", None), sample.timestamp.isoformat(), last_accepted.timestamp.isoformat(),
        )
        return Decision.reject(DecisionReason.STALE_SAMPLE, elapsed_s=elapsed)

    distance = haversine_m(last_accepted.latitude, last_accepted.longitude, sample.latitude, sample.longitude)

    time_trigger = config.save_on_time_interval
    if time_trigger and not config.is_valid_time_interval:
        logger.warning(
            "Trip %s time interval of %ds is outside %d-%ds; time trigger ignored",
            getattr(trip, "id", None), config.total_interval_seconds, MIN_INTERVAL_S, MAX_INTERVAL_S,
        )
        time_trigger = False

    if config.save_on_road_change:
        if _road(sample.road_name) != _road(last_accepted.road_name) and distance >= config.minimum_distance_meters:
            logger.info("Road change %r -> %r after %.0fm", last_accepted.road_name, sample.road_name, distance)
            return Decision.accept(DecisionReason.ROAD_CHANGE, waypoint, distance, elapsed)

    if time_trigger and elapsed >= config.total_interval_seconds:
        logger.info("Time interval reached after %.0fs", elapsed)
        return Decision.accept(DecisionReason.TIME_INTERVAL, waypoint, distance, elapsed)

    if not config.save_on_road_change and not time_trigger:
        reason = (
            DecisionReason.INVALID_CONFIGURATION
            if config.save_on_time_interval
            else DecisionReason.NO_TRIGGER_ENABLED
        )
        return Decision.reject(reason, distance, elapsed)

    logger.debug("No trigger fired (%.0fm, %.0fs)", distance, elapsed)
    return Decision.reject(DecisionReason.NO_TRIGGER_MATCHED, distance, elapsed)


# ---------------------------------------------------------------------------
# Reverse geocoding (Nominatim / OpenStreetMap)
# ---------------------------------------------------------------------------

def format_address(details: dict) -> str:
    """Format as "street, city, state, postcode", skipping missing parts."""
    street = " ".join(p for p in (details.get("house_number"), details.get("road")) if p)
    city = details.get("city") or details.get("town") or details.get("village")
    components = [
        street,
        city,
        details.get("state"),
        details.get("postcode"),
    ]
    components = [c for c in components if c]
    return ", ".join(components) if components else UNKNOWN_ADDRESS


def reverse_geocode(lat: float, lon: float) -> Optional[dict]:
    """Look up address and road name using Nominatim (free, 1 req/s).

    Returns {"address": str, "road": str | None}, or None on failure.
    """
    global _last_nominatim_call

    # Rate limit
    elapsed = time.time() - _last_nominatim_call
    if elapsed < 1.1:
        time.sleep(1.1 - elapsed)

    try:
        resp = requests.get(
            NOMINATIM_URL,
            params={
                "lat": lat,
                "lon": lon,
                "format": "jsonv2",
                "zoom": 18,
                "addressdetails": 1,
            },
            headers={"User-Agent": "TripJournal/1.0"},
            timeout=10,
        )
        _last_nominatim_call = time.time()

        if resp.status_code == 200:
            details = resp.json().get("address") or {}
            return {"address": format_address(details), "road": details.get("road")}
        logger.warning("Nominatim returned status %d", resp.status_code)
    except (requests.RequestException, ValueError) as e:
        logger.warning(f"Nominatim reverse geocode failed: {e}")

    return None


# ---------------------------------------------------------------------------
# Sample pipeline: engine + store
# ---------------------------------------------------------------------------

def _id(row) -> Optional[int]:
    return None if row is None else row.id


def _trip_lock(trip_id: int) -> threading.Lock:
    with _trip_locks_guard:
        # Only the active trip takes samples; forget idle locks of other trips
        for other in [tid for tid, lock in _trip_locks.items() if tid != trip_id and not lock.locked()]:
            del _trip_locks[other]
        return _trip_locks.setdefault(trip_id, threading.Lock())


def process_sample(db: Session, sample: LocationSample, settings: dict | None = None) -> Decision:
    """Evaluate one sample against the active trip and commit it if accepted."""
    store = TripStore(db)
    trip = store.get_active_trip()
    if trip is None:
        return Decision.reject(DecisionReason.NO_ACTIVE_TRIP)

    if settings is None:
        settings = get_settings(db)

    config = trip.auto_save
    if (
        config.is_enabled
        and config.save_on_road_change
        and not sample.road_name
        and not malformed_fields(sample)
        and setting_enabled(settings, "resolve_road_names")
    ):
        geo = reverse_geocode(sample.latitude, sample.longitude)
        if geo:
            sample = dataclasses.replace(sample, road_name=geo["road"], address=sample.address or geo["address"])

    last = store.get_last_accepted_waypoint(trip.id)
    decision = evaluate(sample, trip, last)
    if not decision.accepted:
        return decision

    # Address lookup runs outside the trip lock
    address = decision.waypoint.address
    if not address and setting_enabled(settings, "reverse_geocode"):
        geo = reverse_geocode(decision.waypoint.latitude, decision.waypoint.longitude)
        address = geo["address"] if geo else None

    with _trip_lock(trip.id):
        db.refresh(trip)
        current = store.get_last_accepted_waypoint(trip.id)
        if trip.end_date is not None or _id(current) != _id(last):
            # Another sample was committed, or the trip ended, in the meantime
            decision = evaluate(sample, trip, current)
            if not decision.accepted:
                return decision
        waypoint = dataclasses.replace(decision.waypoint, address=address or UNKNOWN_ADDRESS)
        committed = store.commit_waypoint(trip.id, waypoint)

    logger.info(
        "Trip id=%d accepted waypoint id=%d (%s)",
        trip.id, committed.id, decision.reason.value,
    )
    return dataclasses.replace(decision, waypoint=waypoint, waypoint_id=committed.id)


def process_samples(db: Session, samples: list[LocationSample]) -> list[Decision]:
    """Run a batch through ``process_sample`` in arrival order."""
    settings = get_settings(db)
    decisions = [process_sample(db, s, settings) for s in samples]
    accepted = sum(1 for d in decisions if d.accepted)
    logger.info("Processed %d samples: %d accepted", len(decisions), accepted)
    return decisions
