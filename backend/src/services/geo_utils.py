"""
Geospatial utility functions for distance calculations.

Provides haversine distance computation used for bundling proximity and
reminder copy.
"""

import math
from typing import Tuple

from backend.src.utils.formatting import METERS_PER_MILE


# Earth's mean radius in meters
EARTH_RADIUS_METERS = 6371008.8


def haversine_meters(
    point_a: Tuple[float, float],
    point_b: Tuple[float, float],
) -> float:
    """
    Calculate the great-circle distance between two points on Earth.

    Args:
        point_a: (latitude, longitude) in decimal degrees
        point_b: (latitude, longitude) in decimal degrees

    Returns:
        Distance in meters
    """
    lat1, lon1 = math.radians(point_a[0]), math.radians(point_a[1])
    lat2, lon2 = math.radians(point_b[0]), math.radians(point_b[1])

    dlat = lat2 - lat1
    dlon = lon2 - lon1

    a = (
        math.sin(dlat / 2) ** 2
        + math.cos(lat1) * math.cos(lat2) * math.sin(dlon / 2) ** 2
    )
    c = 2 * math.asin(math.sqrt(a))

    return EARTH_RADIUS_METERS * c


def miles_to_meters(miles: float) -> float:
    """Convert statute miles to meters, rounded to the nearest meter."""
    return float(round(miles * METERS_PER_MILE))
