"""
Unit conversions used when normalizing provider activities.
"""

METERS_TO_MILES = 0.000621371
METERS_TO_FEET = 3.28084


def meters_to_miles(meters: float | None) -> float:
    """Distance in miles; missing distance counts as 0."""
    if not meters:
        return 0.0
    return meters * METERS_TO_MILES


def meters_to_feet(meters: float | None) -> float:
    """Elevation in feet; missing elevation counts as 0."""
    if not meters:
        return 0.0
    return meters * METERS_TO_FEET
