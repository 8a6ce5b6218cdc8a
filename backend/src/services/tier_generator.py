"""
Tier generator: maps a task's location classification to geofence specs.

Rules:
    POI category      -> approach_5mi, approach_3mi, approach_1mi
                         (categories denote many interchangeable places,
                         so there is no arrival tier)
    home / work place -> 2 mi approach (stored as the approach_5mi tier,
                         the outermost approach), arrival, post_arrival
    other place       -> approach_5mi, arrival, post_arrival

The post-arrival spec is a dwell timer on the arrival boundary, armed by an
arrival enter and fired after the dwell delay. Generation is pure and
deterministic: identical inputs always produce identical specs.
"""

from dataclasses import dataclass
from typing import Optional, Tuple

from backend.src.models import (
    GeofenceKind,
    GeofenceTier,
    LocationType,
    PlaceType,
    PoiCategory,
    Task,
)
from backend.src.services.exceptions import ValidationError
from backend.src.services.geo_utils import miles_to_meters


# Default radii (meters)
APPROACH_5MI_METERS = miles_to_meters(5)       # 8047
APPROACH_3MI_METERS = miles_to_meters(3)       # 4828
APPROACH_1MI_METERS = miles_to_meters(1)       # 1609
HOME_WORK_APPROACH_METERS = miles_to_meters(2)  # 3219
ARRIVAL_METERS = 100.0
POST_ARRIVAL_DWELL_SECONDS = 300

# Accepted ranges for user-supplied radii
MIN_APPROACH_MILES = 0.1
MAX_APPROACH_MILES = 50.0
MIN_ARRIVAL_METERS = 10.0
MAX_ARRIVAL_METERS = 1000.0


@dataclass(frozen=True)
class GeofenceSpec:
    """One geofence the device should register (or, for timers, arm)."""

    tier: GeofenceTier
    kind: GeofenceKind
    radius_m: float
    latitude: float
    longitude: float
    dwell_seconds: Optional[int] = None


@dataclass(frozen=True)
class TaskClassification:
    """Everything about a task that shapes its geofence set."""

    location_type: LocationType
    latitude: float
    longitude: float
    place_type: Optional[PlaceType] = None
    poi_category: Optional[PoiCategory] = None
    custom_approach_miles: Optional[float] = None
    custom_arrival_meters: Optional[float] = None

    @classmethod
    def from_task(cls, task: Task) -> "TaskClassification":
        return cls(
            location_type=task.location_type,
            latitude=task.latitude,
            longitude=task.longitude,
            place_type=task.place_type,
            poi_category=task.poi_category,
            custom_approach_miles=task.custom_approach_miles,
            custom_arrival_meters=task.custom_arrival_meters,
        )


def validate_custom_radii(
    location_type: LocationType,
    approach_miles: Optional[float],
    arrival_meters: Optional[float],
) -> None:
    """
    Validate user-supplied radius overrides.

    Raises:
        ValidationError: If a radius is out of range or the task is a
            category task (whose tiers are fixed)
    """
    if approach_miles is None and arrival_meters is None:
        return
    if location_type == LocationType.POI_CATEGORY:
        raise ValidationError(
            "Custom radii are only supported for place tasks",
            field="custom_approach_miles" if approach_miles is not None else "custom_arrival_meters",
        )
    if approach_miles is not None and not (
        MIN_APPROACH_MILES <= approach_miles <= MAX_APPROACH_MILES
    ):
        raise ValidationError(
            f"Approach radius must be between {MIN_APPROACH_MILES} and "
            f"{MAX_APPROACH_MILES} miles",
            field="custom_approach_miles",
        )
    if arrival_meters is not None and not (
        MIN_ARRIVAL_METERS <= arrival_meters <= MAX_ARRIVAL_METERS
    ):
        raise ValidationError(
            f"Arrival radius must be between {MIN_ARRIVAL_METERS:.0f} and "
            f"{MAX_ARRIVAL_METERS:.0f} meters",
            field="custom_arrival_meters",
        )


def default_radii(
    location_type: LocationType, place_type: Optional[PlaceType] = None
) -> dict:
    """
    Default radius (meters) per tier for a classification.

    Returns:
        Mapping of tier value to radius, ordered outermost first
    """
    if location_type == LocationType.POI_CATEGORY:
        return {
            GeofenceTier.APPROACH_5MI.value: APPROACH_5MI_METERS,
            GeofenceTier.APPROACH_3MI.value: APPROACH_3MI_METERS,
            GeofenceTier.APPROACH_1MI.value: APPROACH_1MI_METERS,
        }
    approach = (
        HOME_WORK_APPROACH_METERS
        if place_type in (PlaceType.HOME, PlaceType.WORK)
        else APPROACH_5MI_METERS
    )
    return {
        GeofenceTier.APPROACH_5MI.value: approach,
        GeofenceTier.ARRIVAL.value: ARRIVAL_METERS,
        GeofenceTier.POST_ARRIVAL.value: ARRIVAL_METERS,
    }


def generate_specs(
    classification: TaskClassification,
    dwell_seconds: int = POST_ARRIVAL_DWELL_SECONDS,
) -> Tuple[GeofenceSpec, ...]:
    """
    Generate the geofence specs for a classification.

    Args:
        classification: Task classification
        dwell_seconds: Delay before the post-arrival timer fires

    Returns:
        Specs ordered outermost tier first

    Raises:
        ValidationError: If the classification is incomplete or radii are invalid
    """
    c = classification
    if c.latitude is None or c.longitude is None:
        raise ValidationError("Task location is required", field="latitude")
    if not (-90.0 <= c.latitude <= 90.0) or not (-180.0 <= c.longitude <= 180.0):
        raise ValidationError("Task location is out of range", field="latitude")

    validate_custom_radii(c.location_type, c.custom_approach_miles, c.custom_arrival_meters)

    def boundary(tier: GeofenceTier, radius: float) -> GeofenceSpec:
        return GeofenceSpec(
            tier=tier,
            kind=GeofenceKind.BOUNDARY,
            radius_m=float(radius),
            latitude=c.latitude,
            longitude=c.longitude,
        )

    if c.location_type == LocationType.POI_CATEGORY:
        if c.poi_category is None:
            raise ValidationError("Category tasks require a POI category", field="poi_category")
        return tuple(
            boundary(GeofenceTier(tier), radius)
            for tier, radius in default_radii(c.location_type).items()
        )

    if c.location_type != LocationType.PLACE:
        raise ValidationError(f"Unknown location type: {c.location_type}", field="location_type")
    if c.place_type is None:
        raise ValidationError("Place tasks require a place type", field="place_type")

    radii = default_radii(c.location_type, c.place_type)
    approach = (
        miles_to_meters(c.custom_approach_miles)
        if c.custom_approach_miles is not None
        else radii[GeofenceTier.APPROACH_5MI.value]
    )
    arrival = (
        float(c.custom_arrival_meters)
        if c.custom_arrival_meters is not None
        else radii[GeofenceTier.ARRIVAL.value]
    )

    return (
        boundary(GeofenceTier.APPROACH_5MI, approach),
        boundary(GeofenceTier.ARRIVAL, arrival),
        GeofenceSpec(
            tier=GeofenceTier.POST_ARRIVAL,
            kind=GeofenceKind.DWELL_TIMER,
            radius_m=arrival,
            latitude=c.latitude,
            longitude=c.longitude,
            dwell_seconds=int(dwell_seconds),
        ),
    )


def generate_for_task(
    task: Task, dwell_seconds: int = POST_ARRIVAL_DWELL_SECONDS
) -> Tuple[GeofenceSpec, ...]:
    """Generate the geofence specs for a persisted task."""
    return generate_specs(TaskClassification.from_task(task), dwell_seconds)
