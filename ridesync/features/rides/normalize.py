"""
Provider activity normalization.

Turns provider activity JSON into a RideCandidate with imperial units.
Non-cycling activities normalize to None (skipped, not an error).
"""

import re
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from ridesync.shared.errors import InvalidPayload
from ridesync.shared.timeutils import from_epoch_seconds, parse_iso8601
from ridesync.shared.units import meters_to_miles, meters_to_feet
from .location import derive_location


STRAVA_CYCLING_TYPES = frozenset({
    "Ride",
    "MountainBikeRide",
    "GravelRide",
    "VirtualRide",
    "EBikeRide",
    "EMountainBikeRide",
    "Handcycle",
})

GARMIN_CYCLING_TYPES = frozenset({
    "cycling",
    "bmx",
    "cyclocross",
    "downhill_biking",
    "e_bike_fitness",
    "e_bike_mountain",
    "e_enduro_mtb",
    "enduro_mtb",
    "gravel_cycling",
    "indoor_cycling",
    "mountain_biking",
    "recumbent_cycling",
    "road_biking",
    "track_cycling",
    "virtual_ride",
    "handcycling",
    "indoor_handcycling",
})

# 1 = Cycling
WHOOP_CYCLING_SPORT_IDS = frozenset({1})

# Workouts WHOOP could not score carry no usable metrics
WHOOP_UNSCORABLE = "UNSCORABLE"


@dataclass
class RideCandidate:
    """Provider-independent ride ready for duplicate check and upsert."""

    provider: str
    provider_activity_id: str
    start_time: datetime
    duration_seconds: int
    distance_miles: float
    elevation_gain_feet: float
    average_hr: Optional[int] = None
    ride_type: Optional[str] = None
    notes: Optional[str] = None
    location: Optional[str] = None


def normalize_garmin_type(activity_type: str) -> str:
    return re.sub(r"\s+", "_", activity_type.lower())


def _round_hr(value) -> Optional[int]:
    return round(value) if value else None


def _first(*values):
    return next((v for v in values if v is not None), None)


# Raised by field conversions on values of the wrong type or shape
MALFORMED_FIELD_ERRORS = (KeyError, TypeError, ValueError, AttributeError, OverflowError, OSError)


def from_garmin(activity: dict) -> Optional[RideCandidate]:
    """Garmin activity summary -> RideCandidate (None if not cycling)."""
    try:
        summary_id = str(activity["summaryId"])
        activity_type = activity["activityType"]
        if normalize_garmin_type(activity_type) not in GARMIN_CYCLING_TYPES:
            return None

        elevation = _first(activity.get("totalElevationGainInMeters"), activity.get("elevationGainInMeters"))
        return RideCandidate(
            provider="garmin",
            provider_activity_id=summary_id,
            start_time=from_epoch_seconds(int(activity["startTimeInSeconds"])),
            duration_seconds=int(activity.get("durationInSeconds") or 0),
            distance_miles=meters_to_miles(activity.get("distanceInMeters")),
            elevation_gain_feet=meters_to_feet(elevation),
            average_hr=_round_hr(activity.get("averageHeartRateInBeatsPerMinute")),
            ride_type=activity_type,
            notes=activity.get("activityName") or None,
            location=derive_location(
                city=activity.get("locationName"),
                lat=_first(activity.get("startLatitudeInDegrees"), activity.get("beginLatitude")),
                lon=_first(activity.get("startLongitudeInDegrees"), activity.get("beginLongitude")),
            ),
        )
    except MALFORMED_FIELD_ERRORS as e:
        raise InvalidPayload(f"Garmin activity has a missing or malformed field: {e!r}") from e


def from_strava(activity: dict) -> Optional[RideCandidate]:
    """Strava DetailedActivity -> RideCandidate (None if not cycling)."""
    try:
        activity_id = str(activity["id"])
        sport_type = activity["sport_type"]
        start = parse_iso8601(activity["start_date"])
        if sport_type not in STRAVA_CYCLING_TYPES:
            return None

        latlng = activity.get("start_latlng") or [None, None]
        if len(latlng) < 2:
            latlng = [None, None]

        return RideCandidate(
            provider="strava",
            provider_activity_id=activity_id,
            start_time=start,
            duration_seconds=int(activity.get("moving_time") or activity.get("elapsed_time") or 0),
            distance_miles=meters_to_miles(activity.get("distance")),
            elevation_gain_feet=meters_to_feet(activity.get("total_elevation_gain")),
            average_hr=_round_hr(activity.get("average_heartrate")),
            ride_type=sport_type,
            notes=activity.get("name") or None,
            location=derive_location(
                city=activity.get("location_city"),
                state=activity.get("location_state"),
                country=activity.get("location_country"),
                lat=latlng[0],
                lon=latlng[1],
            ),
        )
    except MALFORMED_FIELD_ERRORS as e:
        raise InvalidPayload(f"Strava activity has a missing or malformed field: {e!r}") from e


def from_whoop(workout: dict) -> Optional[RideCandidate]:
    """WHOOP workout -> RideCandidate (None if not cycling or unscorable)."""
    try:
        workout_id = str(workout["id"])
        if int(workout["sport_id"]) not in WHOOP_CYCLING_SPORT_IDS:
            return None
        if workout.get("score_state") == WHOOP_UNSCORABLE:
            return None

        start = parse_iso8601(workout["start"])
        end = parse_iso8601(workout["end"])
        score = workout.get("score") or {}
        return RideCandidate(
            provider="whoop",
            provider_activity_id=workout_id,
            start_time=start,
            # No explicit duration field; derived from the timestamps
            duration_seconds=max(0, round((end - start).total_seconds())),
            distance_miles=meters_to_miles(score.get("distance_meter")),
            elevation_gain_feet=meters_to_feet(score.get("altitude_gain_meter")),
            average_hr=_round_hr(score.get("average_heart_rate")),
            ride_type="Cycling",
        )
    except MALFORMED_FIELD_ERRORS as e:
        raise InvalidPayload(f"WHOOP workout has a missing or malformed field: {e!r}") from e


NORMALIZERS = {
    "garmin": from_garmin,
    "strava": from_strava,
    "whoop": from_whoop,
}


def normalize_activity(provider: str, activity: dict) -> Optional[RideCandidate]:
    """
    Normalize one provider activity.

    Raises:
        InvalidPayload: Required fields missing or unknown provider
    """
    normalizer = NORMALIZERS.get(provider)
    if normalizer is None:
        raise InvalidPayload(f"Unknown provider: {provider}")
    if not isinstance(activity, dict):
        raise InvalidPayload(f"{provider} activity is not an object")
    return normalizer(activity)
