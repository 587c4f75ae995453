"""
Ride location helpers.

A display location is derived from whatever the provider sends: city,
state, country, or only coordinates. User-edited locations win over
auto-derived ones on re-ingestion.
"""

import math
from typing import Optional


def build_location_string(parts: list[Optional[str]]) -> Optional[str]:
    """Join the non-blank parts with ', ' (None if nothing is left)."""
    cleaned = [p.strip() for p in parts if isinstance(p, str) and p.strip()]
    return ", ".join(cleaned) if cleaned else None


def format_lat_lon(lat: Optional[float], lon: Optional[float]) -> Optional[str]:
    """'Lat 37.775, Lon -122.419' or None when either coordinate is missing."""
    if lat is None or lon is None:
        return None
    try:
        lat, lon = float(lat), float(lon)
    except (TypeError, ValueError):
        return None
    if not (math.isfinite(lat) and math.isfinite(lon)):
        return None
    return f"Lat {lat:.3f}, Lon {lon:.3f}"


def derive_location(
    city: Optional[str] = None,
    state: Optional[str] = None,
    country: Optional[str] = None,
    fallback: Optional[str] = None,
    lat: Optional[float] = None,
    lon: Optional[float] = None,
) -> Optional[str]:
    """
    Pick the best available location.

    Order: city+state, city+country, state+country, any single value,
    then formatted coordinates.
    """
    single = next((v for v in (city, state, country, fallback) if v is not None), None)
    return (
        build_location_string([city, state])
        or build_location_string([city, country])
        or build_location_string([state, country])
        or (single.strip() if isinstance(single, str) and single.strip() else None)
        or format_lat_lon(lat, lon)
    )
