"""
Formatting utilities for human-readable output.

Provides functions for formatting:
- Distances in notification copy (meters → miles)
"""

METERS_PER_MILE = 1609.344


def meters_to_miles(meters: float) -> float:
    """Convert meters to statute miles."""
    return meters / METERS_PER_MILE


def format_distance(meters: float) -> str:
    """
    Convert a distance in meters to reminder copy.

    Distances above one mile are shown with one decimal; anything closer
    collapses to None so callers can switch to "close to" wording.

    Args:
        meters: Distance in meters

    Returns:
        Human-readable string (e.g., "5 miles", "2.5 miles") or None

    Examples:
        >>> format_distance(8047)
        '5 miles'
        >>> format_distance(4023)
        '2.5 miles'
        >>> format_distance(100) is None
        True
    """
    if meters is None or meters <= 0:
        return None

    miles = meters_to_miles(meters)
    if miles <= 1.0:
        return None

    rounded = round(miles, 1)
    if rounded == int(rounded):
        return f"{int(rounded)} miles"
    return f"{rounded} miles"
