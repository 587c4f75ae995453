"""
Import session routes.

Endpoints:
- GET /imports/active - running sessions of the current user
- GET /imports/{session_id} - one session
- POST /imports/{session_id}/acknowledge - user has seen the finished import
"""

from fastapi import APIRouter, Depends, HTTPException

from ridesync.api.deps import get_services, get_current_user_id
from ridesync.features.imports import ImportSessionStatus
from ridesync.services import Services

router = APIRouter()


@router.get("/active")
async def active_imports(
    user_id: str = Depends(get_current_user_id),
    services: Services = Depends(get_services),
):
    """Running sessions, plus completed ones the user has not acknowledged yet."""
    sessions = await services.tracker.list_for_user(user_id)
    visible = [
        s for s in sessions
        if s.status == ImportSessionStatus.RUNNING.value or not s.user_acknowledged
    ]
    return {
        "importing": any(s.status == ImportSessionStatus.RUNNING.value for s in visible),
        "sessions": [s.to_summary() for s in visible],
    }


@router.get("/{session_id}")
async def get_import(
    session_id: str,
    user_id: str = Depends(get_current_user_id),
    services: Services = Depends(get_services),
):
    session = await services.tracker.get_for_user(session_id, user_id)
    if session is None:
        raise HTTPException(status_code=404, detail="Import session not found")
    return session.to_summary()


@router.post("/{session_id}/acknowledge")
async def acknowledge_import(
    session_id: str,
    user_id: str = Depends(get_current_user_id),
    services: Services = Depends(get_services),
):
    session = await services.tracker.acknowledge(session_id, user_id)
    if session is None:
        raise HTTPException(status_code=404, detail="No completed import session with this id")
    return session.to_summary()
