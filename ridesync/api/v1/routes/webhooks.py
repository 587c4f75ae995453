"""
Provider webhook routes.

Endpoints:
- POST /webhooks/garmin/activities-ping - activity summaries or callback URLs
- POST /webhooks/garmin/deregistration - user removed the app in Garmin Connect
- POST /webhooks/garmin/permissions - user changed shared permissions
- GET|POST /webhooks/whoop - challenge echo / workout events
- GET|POST /webhooks/strava - subscription verification / activity events

Payloads are validated before answering; everything else runs after the
response is sent.
"""

import json
import logging

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Query, Request
from fastapi.responses import PlainTextResponse

from ridesync.api.deps import get_services
from ridesync.features.ingestion.schemas import (
    parse_garmin_ping,
    parse_payload,
    GarminDeregistrationPing,
    GarminPermissionsPing,
    WhoopWebhookEvent,
    StravaWebhookEvent,
)
from ridesync.services import Services
from ridesync.shared.errors import InvalidPayload

logger = logging.getLogger(__name__)

router = APIRouter()


async def _json_body(request: Request):
    try:
        return await request.json()
    except (json.JSONDecodeError, UnicodeDecodeError):
        raise HTTPException(status_code=400, detail="Body must be JSON")


# =============================================================================
# Garmin
# =============================================================================

@router.post("/garmin/activities-ping")
async def garmin_activities_ping(
    request: Request,
    background_tasks: BackgroundTasks,
    services: Services = Depends(get_services),
):
    """Acknowledge immediately; one job per activity or callback URL is queued afterwards."""
    body = await _json_body(request)
    try:
        ping = parse_garmin_ping(body)
    except InvalidPayload as e:
        logger.warning(f"Rejected Garmin activities ping: {e}")
        raise HTTPException(status_code=400, detail="Invalid activities payload")

    notifications = ping.notifications()
    logger.info(f"Garmin activities ping with {len(notifications)} notifications")
    background_tasks.add_task(services.dispatcher.dispatch, notifications)
    return PlainTextResponse("OK")


@router.post("/garmin/deregistration")
async def garmin_deregistration(
    request: Request,
    background_tasks: BackgroundTasks,
    services: Services = Depends(get_services),
):
    body = await _json_body(request)
    try:
        ping = parse_payload(GarminDeregistrationPing, body)
    except InvalidPayload as e:
        raise HTTPException(status_code=400, detail=str(e))

    background_tasks.add_task(services.dispatcher.handle_garmin_deregistration, ping)
    return PlainTextResponse("OK")


@router.post("/garmin/permissions")
async def garmin_permissions(
    request: Request,
    background_tasks: BackgroundTasks,
    services: Services = Depends(get_services),
):
    body = await _json_body(request)
    try:
        ping = parse_payload(GarminPermissionsPing, body)
    except InvalidPayload as e:
        raise HTTPException(status_code=400, detail=str(e))

    background_tasks.add_task(services.dispatcher.handle_garmin_permissions, ping)
    return PlainTextResponse("OK")


# =============================================================================
# WHOOP
# =============================================================================

@router.get("/whoop")
async def whoop_verify(challenge: str = Query(None)):
    """Echo the verification challenge."""
    if not challenge:
        raise HTTPException(status_code=400, detail="Missing challenge parameter")
    logger.info("WHOOP webhook verification challenge received")
    return PlainTextResponse(challenge)


@router.post("/whoop")
async def whoop_event(
    request: Request,
    background_tasks: BackgroundTasks,
    services: Services = Depends(get_services),
):
    body = await _json_body(request)
    try:
        event = parse_payload(WhoopWebhookEvent, body)
    except InvalidPayload as e:
        raise HTTPException(status_code=400, detail=str(e))

    background_tasks.add_task(services.dispatcher.handle_whoop_event, event)
    return PlainTextResponse("OK")


# =============================================================================
# Strava
# =============================================================================

@router.get("/strava")
async def strava_verify(
    hub_mode: str = Query(None, alias="hub.mode"),
    hub_verify_token: str = Query(None, alias="hub.verify_token"),
    hub_challenge: str = Query(None, alias="hub.challenge"),
    services: Services = Depends(get_services),
):
    """Subscription validation handshake."""
    expected = services.settings.strava_webhook_verify_token
    if not expected:
        logger.error("STRAVA_WEBHOOK_VERIFY_TOKEN not configured")
        raise HTTPException(status_code=500, detail="Webhook verification not configured")

    if hub_mode == "subscribe" and hub_verify_token == expected and hub_challenge:
        logger.info("Strava webhook subscription verified")
        return {"hub.challenge": hub_challenge}

    raise HTTPException(status_code=403, detail="Verification failed")


@router.post("/strava")
async def strava_event(
    request: Request,
    background_tasks: BackgroundTasks,
    services: Services = Depends(get_services),
):
    body = await _json_body(request)
    try:
        event = parse_payload(StravaWebhookEvent, body)
    except InvalidPayload as e:
        raise HTTPException(status_code=400, detail=str(e))

    background_tasks.add_task(services.dispatcher.handle_strava_event, event)
    return PlainTextResponse("EVENT_RECEIVED")
