"""
Webhook payload schemas.

Provider payloads are validated at the boundary and normalized into
ActivityNotification before entering the pipeline. The Garmin activities
endpoint receives two shapes (activity summaries or callback URLs); the
shape is resolved explicitly by which array is present.
"""

from dataclasses import dataclass
from typing import Optional, Union

from pydantic import BaseModel, ConfigDict, ValidationError

from ridesync.shared.errors import InvalidPayload


class _Payload(BaseModel):
    # Provider ids arrive as numbers or strings
    model_config = ConfigDict(extra="allow", coerce_numbers_to_str=True)


# =============================================================================
# Internal representation
# =============================================================================

@dataclass(frozen=True)
class ActivityNotification:
    """One activity to fetch (activity_id) or one callback to pull (callback_url)."""

    provider: str
    provider_user_id: str
    activity_id: Optional[str] = None
    callback_url: Optional[str] = None

    @property
    def is_callback(self) -> bool:
        return self.callback_url is not None


# =============================================================================
# Garmin
# =============================================================================

class GarminActivityDetail(_Payload):
    userId: str
    summaryId: str


class GarminActivityCallback(_Payload):
    userId: str
    callbackURL: str


class GarminActivityDetailsPing(_Payload):
    activityDetails: list[GarminActivityDetail]

    def notifications(self) -> list[ActivityNotification]:
        return [
            ActivityNotification("garmin", item.userId, activity_id=item.summaryId)
            for item in self.activityDetails
        ]


class GarminCallbackPing(_Payload):
    activities: list[GarminActivityCallback]

    def notifications(self) -> list[ActivityNotification]:
        return [
            ActivityNotification("garmin", item.userId, callback_url=item.callbackURL)
            for item in self.activities
        ]


GarminActivitiesPing = Union[GarminCallbackPing, GarminActivityDetailsPing]


def parse_garmin_ping(body) -> GarminActivitiesPing:
    """
    Resolve which Garmin activities shape was sent.

    `activities` (callback URLs) is checked before `activityDetails`.

    Raises:
        InvalidPayload: Neither array present, or items lack identifiers
    """
    if not isinstance(body, dict):
        raise InvalidPayload("Invalid activities payload")
    try:
        if isinstance(body.get("activities"), list):
            return GarminCallbackPing.model_validate(body)
        if isinstance(body.get("activityDetails"), list):
            return GarminActivityDetailsPing.model_validate(body)
    except ValidationError as e:
        raise InvalidPayload(f"Invalid activities payload: {e.error_count()} errors") from e
    raise InvalidPayload("Invalid activities payload")


class GarminUserRef(_Payload):
    userId: str


class GarminDeregistrationPing(_Payload):
    deregistrations: list[GarminUserRef]


class GarminPermissionChange(_Payload):
    userId: str
    permissions: list[str] = []


class GarminPermissionsPing(_Payload):
    userPermissionsChange: list[GarminPermissionChange]


# =============================================================================
# WHOOP
# =============================================================================

WHOOP_WORKOUT_CREATED = "workout.created"
WHOOP_WORKOUT_UPDATED = "workout.updated"
WHOOP_WORKOUT_DELETED = "workout.deleted"


class WhoopWebhookEvent(_Payload):
    user_id: str
    id: str
    event_type: str


# =============================================================================
# Strava
# =============================================================================

class StravaWebhookEvent(_Payload):
    object_type: str
    object_id: str
    aspect_type: str
    owner_id: str
    updates: Optional[dict] = None
    event_time: Optional[int] = None

    @property
    def is_deauthorization(self) -> bool:
        return (
            self.object_type == "athlete"
            and str((self.updates or {}).get("authorized", "")).lower() == "false"
        )


def parse_payload(model: type[BaseModel], body) -> BaseModel:
    """
    Validate a body against a schema.

    Raises:
        InvalidPayload: Validation failed
    """
    try:
        return model.model_validate(body)
    except ValidationError as e:
        raise InvalidPayload(f"Invalid {model.__name__} payload: {e.error_count()} errors") from e
