"""
Unit tests for the tier generator.

Tests mapping from task classification to geofence specs:
- POI categories get three approach tiers and no arrival
- Home/work get a 2 mi approach, arrival and post-arrival timer
- Custom places honor radius overrides within range
- Invalid classifications are rejected
"""

import pytest

from backend.src.models import GeofenceKind, GeofenceTier, LocationType, PlaceType, PoiCategory
from backend.src.services.exceptions import ValidationError
from backend.src.services.tier_generator import (
    TaskClassification,
    default_radii,
    generate_specs,
)


LAT, LON = 37.7749, -122.4194


def place(place_type, **kwargs):
    return TaskClassification(
        location_type=LocationType.PLACE,
        latitude=LAT,
        longitude=LON,
        place_type=place_type,
        **kwargs
    )


def category(poi_category=PoiCategory.PHARMACY, **kwargs):
    return TaskClassification(
        location_type=LocationType.POI_CATEGORY,
        latitude=LAT,
        longitude=LON,
        poi_category=poi_category,
        **kwargs
    )


class TestCategoryTiers:
    """POI category tasks."""

    def test_three_approach_tiers(self):
        specs = generate_specs(category())

        assert [s.tier for s in specs] == [
            GeofenceTier.APPROACH_5MI,
            GeofenceTier.APPROACH_3MI,
            GeofenceTier.APPROACH_1MI,
        ]
        assert [s.radius_m for s in specs] == [8047.0, 4828.0, 1609.0]
        assert all(s.kind == GeofenceKind.BOUNDARY for s in specs)

    def test_no_arrival_tier(self):
        tiers = {s.tier for s in generate_specs(category(PoiCategory.GAS))}
        assert GeofenceTier.ARRIVAL not in tiers
        assert GeofenceTier.POST_ARRIVAL not in tiers

    def test_centered_on_anchor(self):
        for spec in generate_specs(category()):
            assert (spec.latitude, spec.longitude) == (LAT, LON)

    def test_custom_radii_rejected(self):
        with pytest.raises(ValidationError) as exc_info:
            generate_specs(category(custom_approach_miles=2.0))
        assert exc_info.value.field == "custom_approach_miles"

    def test_missing_category_rejected(self):
        with pytest.raises(ValidationError):
            generate_specs(category(poi_category=None))


class TestPlaceTiers:
    """Place-bound tasks."""

    @pytest.mark.parametrize("place_type", [PlaceType.HOME, PlaceType.WORK])
    def test_home_and_work(self, place_type):
        specs = generate_specs(place(place_type))

        assert [(s.tier, s.radius_m) for s in specs] == [
            (GeofenceTier.APPROACH_5MI, 3219.0),
            (GeofenceTier.ARRIVAL, 100.0),
            (GeofenceTier.POST_ARRIVAL, 100.0),
        ]

    def test_post_arrival_is_dwell_timer(self):
        timer = generate_specs(place(PlaceType.HOME))[-1]

        assert timer.kind == GeofenceKind.DWELL_TIMER
        assert timer.dwell_seconds == 300

    def test_dwell_delay_is_configurable(self):
        timer = generate_specs(place(PlaceType.HOME), dwell_seconds=120)[-1]
        assert timer.dwell_seconds == 120

    def test_custom_place_uses_five_mile_approach(self):
        specs = generate_specs(place(PlaceType.CUSTOM))
        assert specs[0].radius_m == 8047.0

    def test_custom_radii(self):
        specs = generate_specs(
            place(PlaceType.CUSTOM, custom_approach_miles=1.5, custom_arrival_meters=50)
        )

        assert specs[0].radius_m == 2414.0
        assert specs[1].radius_m == 50.0
        assert specs[2].radius_m == 50.0

    @pytest.mark.parametrize("arrival", [5.0, 1500.0])
    def test_arrival_radius_out_of_range(self, arrival):
        with pytest.raises(ValidationError) as exc_info:
            generate_specs(place(PlaceType.CUSTOM, custom_arrival_meters=arrival))
        assert exc_info.value.field == "custom_arrival_meters"

    def test_approach_radius_out_of_range(self):
        with pytest.raises(ValidationError):
            generate_specs(place(PlaceType.CUSTOM, custom_approach_miles=75))

    def test_missing_place_type_rejected(self):
        with pytest.raises(ValidationError) as exc_info:
            generate_specs(place(None))
        assert exc_info.value.field == "place_type"

    def test_location_out_of_range(self):
        classification = TaskClassification(
            location_type=LocationType.PLACE,
            latitude=120.0,
            longitude=LON,
            place_type=PlaceType.HOME,
        )
        with pytest.raises(ValidationError):
            generate_specs(classification)


class TestDeterminism:
    """Generation is a pure function of the classification."""

    def test_identical_inputs_identical_specs(self):
        assert generate_specs(place(PlaceType.HOME)) == generate_specs(place(PlaceType.HOME))

    def test_default_radii_outermost_first(self):
        radii = list(default_radii(LocationType.POI_CATEGORY).values())
        assert radii == sorted(radii, reverse=True)
