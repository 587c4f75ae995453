"""
Cross-provider duplicate detection.

The same ride recorded on a Garmin device and uploaded to Strava arrives
twice. Rides are bucketed by start time (10 minute buckets); a candidate
is compared only with rides in its own bucket and the two neighbours.
Matching is first-match-wins and every existing ride absorbs at most one
duplicate per scan.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional, Iterable

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from ridesync.shared.timeutils import to_epoch_seconds
from .models import Ride

logger = logging.getLogger(__name__)


BUCKET_SECONDS = 10 * 60

DISTANCE_TOLERANCE = 0.05
DISTANCE_MIN_MILES = 0.1
ELEVATION_TOLERANCE = 0.05
ELEVATION_MIN_FEET = 100.0
DURATION_TOLERANCE = 0.10
DURATION_MIN_SECONDS = 600


@dataclass(frozen=True)
class RideFingerprint:
    """The fields the matcher compares."""

    id: Optional[str]
    providers: tuple[str, ...]
    start_time: datetime
    duration_seconds: int
    distance_miles: float
    elevation_gain_feet: float

    @classmethod
    def from_ride(cls, ride: Ride) -> "RideFingerprint":
        providers = tuple(
            name for name, value in (
                ("garmin", ride.garmin_activity_id),
                ("strava", ride.strava_activity_id),
                ("whoop", ride.whoop_workout_id),
            ) if value
        )
        return cls(
            id=ride.id,
            providers=providers,
            start_time=ride.start_time,
            duration_seconds=ride.duration_seconds or 0,
            distance_miles=ride.distance_miles or 0.0,
            elevation_gain_feet=ride.elevation_gain_feet or 0.0,
        )

    @classmethod
    def from_candidate(cls, candidate) -> "RideFingerprint":
        """From a normalize.RideCandidate."""
        return cls(
            id=None,
            providers=(candidate.provider,),
            start_time=candidate.start_time,
            duration_seconds=candidate.duration_seconds,
            distance_miles=candidate.distance_miles,
            elevation_gain_feet=candidate.elevation_gain_feet,
        )

    @property
    def bucket(self) -> int:
        return time_bucket(self.start_time)


def time_bucket(start_time: datetime) -> int:
    return to_epoch_seconds(start_time) // BUCKET_SECONDS


def _within(value: float, reference: float, relative: float, absolute: float) -> bool:
    return abs(value - reference) <= max(abs(reference) * relative, absolute)


def is_same_activity(candidate: RideFingerprint, existing: RideFingerprint) -> bool:
    """
    True when both rides describe the same physical activity.

    Each ride must come from exactly one provider and the providers must
    differ; start buckets must be equal or adjacent; duration, distance and
    elevation must each fall within max(relative, absolute) of the
    existing ride.
    """
    if len(candidate.providers) != 1 or len(existing.providers) != 1:
        return False
    if candidate.providers == existing.providers:
        return False
    if abs(candidate.bucket - existing.bucket) > 1:
        return False
    return (
        _within(candidate.duration_seconds, existing.duration_seconds, DURATION_TOLERANCE, DURATION_MIN_SECONDS)
        and _within(candidate.distance_miles, existing.distance_miles, DISTANCE_TOLERANCE, DISTANCE_MIN_MILES)
        and _within(candidate.elevation_gain_feet, existing.elevation_gain_feet, ELEVATION_TOLERANCE, ELEVATION_MIN_FEET)
    )


class BucketIndex:
    """Rides indexed by start bucket."""

    def __init__(self, rides: Iterable[RideFingerprint] = ()):
        self._buckets: dict[int, list[RideFingerprint]] = {}
        for ride in rides:
            self.add(ride)

    def add(self, ride: RideFingerprint) -> None:
        self._buckets.setdefault(ride.bucket, []).append(ride)

    def neighbours(self, bucket: int) -> list[RideFingerprint]:
        found = []
        for b in (bucket - 1, bucket, bucket + 1):
            found.extend(self._buckets.get(b, ()))
        return sorted(found, key=lambda r: r.start_time)

    def find_match(self, candidate: RideFingerprint, matched: set) -> Optional[RideFingerprint]:
        """First unmatched ride that is the same activity as `candidate`."""
        for existing in self.neighbours(candidate.bucket):
            if existing.id is not None and existing.id in matched:
                continue
            if existing.id is not None and existing.id == candidate.id:
                continue
            if is_same_activity(candidate, existing):
                return existing
        return None


def match_duplicates(rides: list[RideFingerprint]) -> list[tuple[RideFingerprint, RideFingerprint]]:
    """
    Pair up duplicates in arrival order.

    Args:
        rides: Fingerprints ordered by arrival (earliest first)

    Returns:
        (duplicate, original) pairs; the later arrival is the duplicate
    """
    index = BucketIndex()
    matched: set = set()
    pairs = []
    for ride in rides:
        original = index.find_match(ride, matched)
        if original is not None:
            matched.add(original.id)
            matched.add(ride.id)
            pairs.append((ride, original))
            continue
        index.add(ride)
    return pairs


# =============================================================================
# Database-backed lookups
# =============================================================================

def _bucket_range(start_time: datetime) -> tuple[datetime, datetime]:
    """Earliest and latest start time covered by the bucket and its neighbours."""
    bucket = time_bucket(start_time)
    low = datetime(1970, 1, 1) + timedelta(seconds=(bucket - 1) * BUCKET_SECONDS)
    high = datetime(1970, 1, 1) + timedelta(seconds=(bucket + 2) * BUCKET_SECONDS)
    return low, high


async def find_potential_duplicate(db: AsyncSession, user_id: str, candidate) -> Optional[Ride]:
    """
    Existing ride that `candidate` duplicates, if any.

    Args:
        db: Database session
        user_id: Owner of the rides
        candidate: normalize.RideCandidate

    Returns:
        The first matching ride, or None
    """
    low, high = _bucket_range(candidate.start_time)
    result = await db.execute(
        select(Ride)
        .where(
            Ride.user_id == user_id,
            Ride.start_time >= low,
            Ride.start_time < high,
            Ride.is_duplicate.is_(False),
            Ride.deleted_at.is_(None),
        )
        .order_by(Ride.start_time)
    )
    rides = {ride.id: ride for ride in result.scalars().all()}
    match = BucketIndex(RideFingerprint.from_ride(r) for r in rides.values()).find_match(
        RideFingerprint.from_candidate(candidate), matched=set()
    )
    return rides[match.id] if match is not None else None


async def scan_duplicates(db: AsyncSession, user_id: str) -> list[tuple[str, str]]:
    """
    Flag duplicates among all of a user's rides.

    The copy that arrived later is marked is_duplicate with duplicate_of_id
    pointing at the earlier one. Rides already flagged are left alone.
    The caller commits.

    Returns:
        (duplicate_id, original_id) pairs flagged by this scan
    """
    result = await db.execute(
        select(Ride)
        .where(
            Ride.user_id == user_id,
            Ride.is_duplicate.is_(False),
            Ride.deleted_at.is_(None),
        )
        .order_by(Ride.created_at, Ride.start_time)
    )
    rides = {ride.id: ride for ride in result.scalars().all()}
    pairs = match_duplicates([RideFingerprint.from_ride(r) for r in rides.values()])

    flagged = []
    for duplicate, original in pairs:
        ride = rides[duplicate.id]
        ride.is_duplicate = True
        ride.duplicate_of_id = original.id
        flagged.append((duplicate.id, original.id))
    await db.flush()

    if flagged:
        logger.info(f"Duplicate scan for user {user_id}: flagged {len(flagged)} rides")
    return flagged
