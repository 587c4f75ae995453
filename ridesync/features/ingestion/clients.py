"""
Provider activity fetch clients.

One GET per activity detail (or callback URL), or a paged history
listing for a backfill window. Non-2xx answers and network errors
raise ProviderRequestFailed so the job can be retried.
"""

import logging
from datetime import datetime
from typing import Optional

import httpx

from ridesync.config import Settings
from ridesync.features.tokens.providers import GARMIN, STRAVA, WHOOP, STRAVA_API_BASE, WHOOP_API_BASE
from ridesync.shared.errors import ProviderRequestFailed, InvalidPayload
from ridesync.shared.timeutils import to_epoch_seconds

logger = logging.getLogger(__name__)


# History listing pages; both providers are walked until exhausted or MAX_PAGES
STRAVA_PAGE_SIZE = 50
WHOOP_PAGE_SIZE = 25
MAX_PAGES = 50


class ActivityClient:
    """
    Usage:
        client = ActivityClient(settings)
        activity = await client.fetch_activity("strava", access_token, "123456")
    """

    def __init__(
        self,
        settings: Settings,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        timeout: float = 30.0,
    ):
        self.garmin_api_base = settings.garmin_api_base.rstrip("/")
        self._transport = transport
        self._timeout = timeout

    def activity_url(self, provider: str, activity_id: str) -> str:
        if provider == GARMIN:
            return f"{self.garmin_api_base}/rest/activityFile/{activity_id}"
        if provider == STRAVA:
            return f"{STRAVA_API_BASE}/activities/{activity_id}"
        if provider == WHOOP:
            return f"{WHOOP_API_BASE}/activity/workout/{activity_id}"
        raise ValueError(f"Unknown provider: {provider}")

    async def _get_json(self, url: str, access_token: str, params: Optional[dict] = None):
        try:
            async with httpx.AsyncClient(transport=self._transport, timeout=self._timeout) as client:
                response = await client.get(
                    url,
                    params=params,
                    headers={
                        "Authorization": f"Bearer {access_token}",
                        "Accept": "application/json",
                    },
                )
        except httpx.HTTPError as e:
            raise ProviderRequestFailed(None, str(e)) from e

        if response.status_code != 200:
            logger.error(f"GET {url} failed: {response.status_code} {response.text}")
            raise ProviderRequestFailed(response.status_code, response.text)

        try:
            return response.json()
        except ValueError as e:
            raise InvalidPayload(f"Non-JSON response from {url}") from e

    async def fetch_activity(self, provider: str, access_token: str, activity_id: str) -> dict:
        """
        Fetch one activity's detail.

        Raises:
            ProviderRequestFailed: Non-200 answer or network error
            InvalidPayload: Body is not a JSON object
        """
        data = await self._get_json(self.activity_url(provider, activity_id), access_token)
        if not isinstance(data, dict):
            raise InvalidPayload(f"Unexpected {provider} activity format for {activity_id}")
        return data

    async def fetch_callback(self, callback_url: str, access_token: str) -> list:
        """
        Fetch a Garmin callback URL (returns an array of activity summaries).

        Raises:
            ProviderRequestFailed: Non-200 answer or network error
            InvalidPayload: Body is not a JSON array
        """
        data = await self._get_json(callback_url, access_token)
        if not isinstance(data, list):
            raise InvalidPayload("Unexpected response format from callback URL")
        return data

    # =========================================================================
    # History listing (pull backfill)
    # =========================================================================

    async def list_activities(self, provider: str, access_token: str, start: datetime, end: datetime) -> list:
        """
        All activities of a provider that started inside [start, end].

        Raises:
            ValueError: Provider has no history listing
            ProviderRequestFailed: A page failed
            InvalidPayload: A page had an unexpected shape
        """
        if provider == STRAVA:
            return await self._list_strava(access_token, start, end)
        if provider == WHOOP:
            return await self._list_whoop(access_token, start, end)
        raise ValueError(f"No activity history listing for {provider}")

    async def _list_strava(self, access_token: str, start: datetime, end: datetime) -> list:
        activities = []
        for page in range(1, MAX_PAGES + 1):
            batch = await self._get_json(
                f"{STRAVA_API_BASE}/athlete/activities",
                access_token,
                params={
                    "after": to_epoch_seconds(start),
                    "before": to_epoch_seconds(end),
                    "page": page,
                    "per_page": STRAVA_PAGE_SIZE,
                },
            )
            if not isinstance(batch, list):
                raise InvalidPayload("Unexpected Strava activity list format")
            activities.extend(batch)
            logger.debug(f"Strava history page {page}: {len(batch)} activities")
            if len(batch) < STRAVA_PAGE_SIZE:
                return activities

        logger.warning(f"Strava history reached the {MAX_PAGES} page limit, stopping")
        return activities

    async def _list_whoop(self, access_token: str, start: datetime, end: datetime) -> list:
        workouts = []
        next_token = None
        for page in range(1, MAX_PAGES + 1):
            params = {
                "start": _whoop_timestamp(start),
                "end": _whoop_timestamp(end),
                "limit": WHOOP_PAGE_SIZE,
            }
            if next_token:
                params["nextToken"] = next_token
            body = await self._get_json(f"{WHOOP_API_BASE}/activity/workout", access_token, params=params)
            if not isinstance(body, dict) or not isinstance(body.get("records"), list):
                raise InvalidPayload("Unexpected WHOOP workout page format")
            workouts.extend(body["records"])
            logger.debug(f"WHOOP history page {page}: {len(body['records'])} workouts")
            next_token = body.get("next_token")
            if not next_token:
                return workouts

        logger.warning(f"WHOOP history reached the {MAX_PAGES} page limit, stopping")
        return workouts


def _whoop_timestamp(dt: datetime) -> str:
    return dt.strftime("%Y-%m-%dT%H:%M:%S.000Z")
