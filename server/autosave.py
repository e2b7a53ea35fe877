"""Auto-save policy for trips: trigger thresholds, named presets, JSON layout.

A configuration says when a live location sample should be captured into the
active trip: when the road changes (and the user moved far enough), when
enough time has passed, or both. Presets carry fixed thresholds; any edit that
moves a configuration away from every preset re-tags it as ``custom``.
"""

import dataclasses
import enum
from dataclasses import dataclass

# Valid total time interval, inclusive
MIN_INTERVAL_S = 30
MAX_INTERVAL_S = 3600

# Allowed ranges for user-tuned values
MIN_DISTANCE_M = 50.0
MAX_DISTANCE_M = 1000.0
MAX_INTERVAL_MINUTES = 59
INTERVAL_SECOND_STEPS = (0, 15, 30, 45)


class TripType(str, enum.Enum):
    WALKING = "walking"
    BICYCLE = "bicycle"
    CAR = "car"
    CUSTOM = "custom"


class TriggerMode(str, enum.Enum):
    NONE = "none"
    ROAD = "road"
    TIME = "time"
    BOTH = "both"


# Fields compared when deciding whether a configuration is still a preset
_TRIGGER_FIELDS = (
    "save_on_road_change",
    "minimum_distance_meters",
    "save_on_time_interval",
    "time_interval_minutes",
    "time_interval_seconds",
)

# Persisted key for each field
_JSON_KEYS = {
    "is_enabled": "isEnabled",
    "trip_type": "tripType",
    "save_on_road_change": "saveOnRoadChange",
    "minimum_distance_meters": "minimumDistanceMeters",
    "save_on_time_interval": "saveOnTimeInterval",
    "time_interval_minutes": "timeIntervalMinutes",
    "time_interval_seconds": "timeIntervalSeconds",
}


@dataclass(frozen=True)
class AutoSaveConfiguration:
    """Trigger policy for automatically saving waypoints on a trip.

    Attributes
    ----------
    is_enabled
        Master switch. A disabled configuration never accepts a sample.
    trip_type
        Preset label, or ``custom`` once the values no longer match a preset.
    save_on_road_change
        Accept a sample whose road name differs from the last accepted one,
        provided it is at least ``minimum_distance_meters`` away.
    minimum_distance_meters
        Displacement (m) required for a road-change save, 50 to 1000.
    save_on_time_interval
        Accept a sample once the configured interval has elapsed since the
        last accepted one.
    time_interval_minutes, time_interval_seconds
        Interval parts; the total must lie in [30 s, 3600 s] to be usable.
    """
    is_enabled: bool = True
    trip_type: TripType = TripType.WALKING
    save_on_road_change: bool = True
    minimum_distance_meters: float = 50.0
    save_on_time_interval: bool = True
    time_interval_minutes: int = 2
    time_interval_seconds: int = 0

    # -- presets ------------------------------------------------------------

    @classmethod
    def walking(cls):
        """Preset for walking: short distances, frequent saves."""
        return cls(
            trip_type=TripType.WALKING,
            minimum_distance_meters=50.0,
            time_interval_minutes=2,
            time_interval_seconds=0,
        )

    @classmethod
    def bicycle(cls):
        """Preset for cycling."""
        return cls(
            trip_type=TripType.BICYCLE,
            minimum_distance_meters=100.0,
            time_interval_minutes=3,
            time_interval_seconds=0,
        )

    @classmethod
    def car(cls):
        """Preset for driving: long distances, sparse saves."""
        return cls(
            trip_type=TripType.CAR,
            minimum_distance_meters=200.0,
            time_interval_minutes=5,
            time_interval_seconds=0,
        )

    @classmethod
    def for_trip_type(cls, trip_type: TripType | str) -> "AutoSaveConfiguration":
        trip_type = TripType(trip_type)
        if trip_type is TripType.CUSTOM:
            raise ValueError("custom is not a preset")
        return PRESET_FACTORIES[trip_type]()

    @classmethod
    def default(cls, trip_type: TripType | str = TripType.WALKING) -> "AutoSaveConfiguration":
        """Configuration given to new trips: preset thresholds, switched off."""
        return dataclasses.replace(cls.for_trip_type(trip_type), is_enabled=False)

    # -- derived values -------------------------------------------------------

    @property
    def total_interval_seconds(self) -> int:
        return self.time_interval_minutes * 60 + self.time_interval_seconds

    @property
    def is_valid_time_interval(self) -> bool:
        return MIN_INTERVAL_S <= self.total_interval_seconds <= MAX_INTERVAL_S

    @property
    def trigger_mode(self) -> TriggerMode:
        if self.save_on_road_change and self.save_on_time_interval:
            return TriggerMode.BOTH
        if self.save_on_road_change:
            return TriggerMode.ROAD
        if self.save_on_time_interval:
            return TriggerMode.TIME
        return TriggerMode.NONE

    # -- preset drift -------------------------------------------------------

    def matches_preset(self, other: "AutoSaveConfiguration") -> bool:
        """True if the trigger-relevant values of both configurations are equal."""
        return all(getattr(self, f) == getattr(other, f) for f in _TRIGGER_FIELDS)

    def detect_trip_type(self) -> TripType:
        for trip_type, factory in PRESET_FACTORIES.items():
            if self.matches_preset(factory()):
                return trip_type
        return TripType.CUSTOM

    def with_changes(self, **changes) -> "AutoSaveConfiguration":
        """Return a copy with ``changes`` applied and the preset tag recomputed.

        ``trip_type`` cannot be set this way; use ``for_trip_type`` to switch
        presets.
        """
        if "trip_type" in changes:
            raise TypeError("trip_type is derived; use for_trip_type() to apply a preset")
        updated = dataclasses.replace(self, **changes)
        return dataclasses.replace(updated, trip_type=updated.detect_trip_type())

    # -- serialization --------------------------------------------------------

    def to_dict(self) -> dict:
        data = {}
        for field, key in _JSON_KEYS.items():
            value = getattr(self, field)
            data[key] = value.value if isinstance(value, enum.Enum) else value
        return data

    @classmethod
    def from_dict(cls, data: dict | None) -> "AutoSaveConfiguration":
        """Build a configuration from its persisted layout.

        Missing keys fall back to the field defaults. Records written before
        the two trigger booleans existed carry a single ``triggerMode`` value
        instead.
        """
        if not data:
            return cls.default()

        kwargs = {}
        for field, key in _JSON_KEYS.items():
            if key in data and data[key] is not None:
                kwargs[field] = data[key]

        mode = data.get("triggerMode")
        if mode is not None:
            mode = TriggerMode(mode)
            kwargs.setdefault("save_on_road_change", mode in (TriggerMode.ROAD, TriggerMode.BOTH))
            kwargs.setdefault("save_on_time_interval", mode in (TriggerMode.TIME, TriggerMode.BOTH))

        if "trip_type" in kwargs:
            kwargs["trip_type"] = TripType(kwargs["trip_type"])
        if "minimum_distance_meters" in kwargs:
            kwargs["minimum_distance_meters"] = float(kwargs["minimum_distance_meters"])
        for field in ("time_interval_minutes", "time_interval_seconds"):
            if field in kwargs:
                kwargs[field] = int(kwargs[field])
        for field in ("is_enabled", "save_on_road_change", "save_on_time_interval"):
            if field in kwargs:
                kwargs[field] = bool(kwargs[field])

        config = cls(**kwargs)
        if "trip_type" not in kwargs:
            config = dataclasses.replace(config, trip_type=config.detect_trip_type())
        return config


PRESET_FACTORIES = {
    TripType.WALKING: AutoSaveConfiguration.walking,
    TripType.BICYCLE: AutoSaveConfiguration.bicycle,
    TripType.CAR: AutoSaveConfiguration.car,
}
