"""Trip summaries: statistics, duration labels, and suggested trips."""

import datetime
import itertools
import math
from collections import defaultdict

from processing import haversine_m


def trip_statistics(waypoints: list) -> dict:
    """Summarise a trip's waypoints (in trip order).

    Distance covered is the sum of the legs between consecutive waypoints;
    spread is the largest distance between any two of them.
    """
    altitudes = [w.altitude for w in waypoints if w.altitude is not None and math.isfinite(w.altitude)]

    covered = sum(
        haversine_m(a.latitude, a.longitude, b.latitude, b.longitude)
        for a, b in zip(waypoints, waypoints[1:])
    )
    spread = max(
        (
            haversine_m(a.latitude, a.longitude, b.latitude, b.longitude)
            for a, b in itertools.combinations(waypoints, 2)
        ),
        default=0.0,
    )

    return {
        "total_locations": len(waypoints),
        "total_photos": sum(len(w.photo_identifiers or []) for w in waypoints),
        "average_altitude": sum(altitudes) / len(altitudes) if altitudes else 0.0,
        "distance_covered_m": covered,
        "location_spread_m": spread,
    }


def format_duration(seconds: float) -> str:
    """Format a trip duration: "42 min", "3h 5m", "2d 4h"."""
    seconds = max(0, int(seconds))
    if seconds < 3600:
        return f"{seconds // 60} min"
    if seconds < 86400:
        hours, minutes = seconds // 3600, (seconds % 3600) // 60
        return f"{hours}h {minutes}m" if minutes else f"{hours}h"
    days, hours = seconds // 86400, (seconds % 86400) // 3600
    return f"{days}d {hours}h" if hours else f"{days}d"


def _city(address: str | None) -> str | None:
    if not address:
        return None
    parts = [p.strip() for p in address.split(",")]
    return parts[1] if len(parts) > 1 and parts[1] else None


def suggest_trip_name(waypoints: list, date: datetime.date) -> str:
    cities = {c for c in (_city(w.address) for w in waypoints) if c}
    if len(cities) == 1:
        return f"{cities.pop()} Trip"
    if len(cities) > 1:
        return "Multi-City Adventure"
    return f"Trip on {date.strftime('%b')} {date.day}, {date.year}"


def suggest_trips(waypoints: list) -> list[dict]:
    """Group waypoints saved on the same day into trip suggestions, newest first."""
    by_day = defaultdict(list)
    for w in waypoints:
        by_day[w.timestamp.date()].append(w)

    suggestions = []
    for day, day_waypoints in by_day.items():
        if len(day_waypoints) < 2:
            continue
        day_waypoints.sort(key=lambda w: w.timestamp)
        suggestions.append({
            "suggested_name": suggest_trip_name(day_waypoints, day),
            "waypoint_ids": [w.id for w in day_waypoints],
            "date": day,
            "type": "day_trip",
        })

    return sorted(suggestions, key=lambda s: s["date"], reverse=True)
