"""
Garmin backfill trigger client.

Garmin answers a backfill request asynchronously: activities for the
window arrive later through the activities webhook.
"""

import enum
import logging
from datetime import datetime
from typing import Optional

import httpx

from ridesync.config import Settings
from ridesync.shared.errors import ProviderRequestFailed, ProviderRangeRejected
from ridesync.shared.timeutils import to_epoch_seconds
from .windows import extract_min_start

logger = logging.getLogger(__name__)


class ChunkResult(str, enum.Enum):
    ACCEPTED = "accepted"  # 202
    DUPLICATE = "duplicate"  # 409, window already requested before


class GarminBackfillClient:
    """
    Usage:
        client = GarminBackfillClient(settings)
        result = await client.request_backfill(access_token, start, end)
    """

    def __init__(
        self,
        settings: Settings,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        timeout: float = 30.0,
    ):
        self.api_base = settings.garmin_api_base.rstrip("/")
        self._transport = transport
        self._timeout = timeout

    async def request_backfill(self, access_token: str, start: datetime, end: datetime) -> ChunkResult:
        """
        Trigger the backfill endpoint for one chunk.

        Raises:
            ProviderRangeRejected: 400 naming a minimum start time
            ProviderRequestFailed: Any other non-202/409 answer or network error
        """
        params = {
            "summaryStartTimeInSeconds": to_epoch_seconds(start),
            "summaryEndTimeInSeconds": to_epoch_seconds(end),
        }
        try:
            async with httpx.AsyncClient(transport=self._transport, timeout=self._timeout) as client:
                response = await client.get(
                    f"{self.api_base}/rest/backfill/activities",
                    params=params,
                    headers={
                        "Authorization": f"Bearer {access_token}",
                        "Accept": "application/json",
                    },
                )
        except httpx.HTTPError as e:
            raise ProviderRequestFailed(None, str(e)) from e

        if response.status_code == 202:
            return ChunkResult.ACCEPTED
        if response.status_code == 409:
            return ChunkResult.DUPLICATE

        if response.status_code == 400:
            min_start = extract_min_start(response.text)
            if min_start is not None:
                raise ProviderRangeRejected(min_start, response.text)

        logger.error(f"Garmin backfill chunk failed: {response.status_code} {response.text}")
        raise ProviderRequestFailed(response.status_code, response.text)
