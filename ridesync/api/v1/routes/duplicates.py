"""
Duplicate ride routes.
"""

import logging

from fastapi import APIRouter, Depends

from ridesync.api.deps import get_services, get_current_user_id
from ridesync.features.rides.duplicates import scan_duplicates
from ridesync.services import Services

logger = logging.getLogger(__name__)

router = APIRouter()


@router.post("/scan")
async def scan(
    user_id: str = Depends(get_current_user_id),
    services: Services = Depends(get_services),
):
    """Flag cross-provider duplicates among the user's rides."""
    async with services.session_factory() as db:
        pairs = await scan_duplicates(db, user_id)
        await db.commit()

    return {
        "success": True,
        "flagged": len(pairs),
        "duplicates": [
            {"rideId": duplicate_id, "duplicateOfId": original_id}
            for duplicate_id, original_id in pairs
        ],
    }
