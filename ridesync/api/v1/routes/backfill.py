"""
Backfill routes.

Endpoints:
- GET /garmin/backfill/fetch?year=2023|ytd - backfill one year key now
- GET /garmin/backfill/fetch?days=90 - untracked backfill of recent days
- POST /garmin/backfill/batch - queue several years
- GET /strava/backfill/fetch?year=2023|ytd - list and import one year key now
- GET /whoop/backfill/fetch?year=2023|ytd - list and import one year key now
- GET /backfill/history - backfill requests of the current user
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel
from sqlalchemy.exc import SQLAlchemyError

from ridesync.api.deps import get_services, get_current_user_id, to_http_error
from ridesync.features.tokens.providers import GARMIN, STRAVA, WHOOP
from ridesync.services import Services
from ridesync.shared.errors import (
    RideSyncError,
    PersistenceError,
    ProviderRequestFailed,
    InvalidPayload,
)

logger = logging.getLogger(__name__)

router = APIRouter()


# =============================================================================
# Schemas
# =============================================================================

class BatchBackfillRequest(BaseModel):
    years: list[str]


# =============================================================================
# Endpoints
# =============================================================================

@router.get("/garmin/backfill/fetch")
async def garmin_backfill_fetch(
    year: Optional[str] = Query(None, description="Four digit year or 'ytd'"),
    days: Optional[int] = Query(None, ge=1, le=365),
    user_id: str = Depends(get_current_user_id),
    services: Services = Depends(get_services),
):
    if year is None and days is None:
        raise HTTPException(status_code=400, detail="Provide year or days")

    try:
        if year is not None:
            outcome = await services.orchestrator.trigger_backfill(user_id, GARMIN, year)
        else:
            outcome = await services.orchestrator.trigger_days(user_id, GARMIN, days)
    except RideSyncError as e:
        logger.info(f"Backfill rejected for user {user_id}: {e}")
        raise to_http_error(e)
    except SQLAlchemyError as e:
        logger.error(f"Backfill failed for user {user_id}: {e}")
        raise to_http_error(PersistenceError(str(e)))

    return outcome.to_dict()


@router.post("/garmin/backfill/batch")
async def garmin_backfill_batch(
    request: BatchBackfillRequest,
    user_id: str = Depends(get_current_user_id),
    services: Services = Depends(get_services),
):
    try:
        result = await services.orchestrator.queue_backfills(user_id, GARMIN, request.years)
    except RideSyncError as e:
        logger.info(f"Batch backfill rejected for user {user_id}: {e}")
        raise to_http_error(e)
    except SQLAlchemyError as e:
        logger.error(f"Batch backfill failed for user {user_id}: {e}")
        raise to_http_error(PersistenceError(str(e)))

    return result.to_dict()


@router.get("/backfill/history")
async def backfill_history(
    provider: Optional[str] = Query(None),
    user_id: str = Depends(get_current_user_id),
    services: Services = Depends(get_services),
):
    requests = await services.orchestrator.history(user_id, provider)
    return {"success": True, "requests": [r.to_summary() for r in requests]}


async def _pull_backfill(provider: str, year: str, user_id: str, services: Services) -> dict:
    try:
        outcome = await services.pull_backfill.pull_backfill(user_id, provider, year)
    except (ProviderRequestFailed, InvalidPayload) as e:
        logger.error(f"{provider} backfill failed for user {user_id}: {e}")
        raise HTTPException(status_code=500, detail=f"Failed to fetch activities from {provider}.")
    except RideSyncError as e:
        logger.info(f"{provider} backfill rejected for user {user_id}: {e}")
        raise to_http_error(e)
    except SQLAlchemyError as e:
        logger.error(f"{provider} backfill failed for user {user_id}: {e}")
        raise to_http_error(PersistenceError(str(e)))

    return outcome.to_dict()


@router.get("/strava/backfill/fetch")
async def strava_backfill_fetch(
    year: str = Query(..., description="Four digit year or 'ytd'"),
    user_id: str = Depends(get_current_user_id),
    services: Services = Depends(get_services),
):
    return await _pull_backfill(STRAVA, year, user_id, services)


@router.get("/whoop/backfill/fetch")
async def whoop_backfill_fetch(
    year: str = Query(..., description="Four digit year or 'ytd'"),
    user_id: str = Depends(get_current_user_id),
    services: Services = Depends(get_services),
):
    return await _pull_backfill(WHOOP, year, user_id, services)
