"""
Rides feature - normalization, storage and duplicate detection.
"""

from .models import Ride
from .normalize import RideCandidate, normalize_activity
from .repository import RideRepository

__all__ = [
    "Ride",
    "RideCandidate",
    "normalize_activity",
    "RideRepository",
]
