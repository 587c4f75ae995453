"""
Route dependencies.

The upstream auth layer sets X-User-Id; authentication itself happens
before requests reach this service.
"""

from fastapi import Header, HTTPException, Request

from ridesync.services import Services
from ridesync.shared.errors import (
    RideSyncError,
    TokenError,
    LockUnavailable,
    DuplicateWindow,
    InvalidBackfillRequest,
    InvalidPayload,
)


def get_services(request: Request) -> Services:
    return request.app.state.services


async def get_current_user_id(x_user_id: str = Header(..., alias="X-User-Id")) -> str:
    if not x_user_id.strip():
        raise HTTPException(status_code=401, detail="Missing user")
    return x_user_id.strip()


def to_http_error(error: RideSyncError) -> HTTPException:
    """Map a domain error to the HTTP status the UI expects."""
    if isinstance(error, TokenError):
        return HTTPException(
            status_code=400,
            detail="Your account is not connected or the connection expired. Please reconnect.",
        )
    if isinstance(error, LockUnavailable):
        return HTTPException(
            status_code=409,
            detail="An import is already in progress. Please try again later.",
        )
    if isinstance(error, DuplicateWindow):
        detail = {"error": error.reason, "message": error.message}
        detail.update(error.details)
        return HTTPException(status_code=409, detail=detail)
    if isinstance(error, (InvalidBackfillRequest, InvalidPayload)):
        return HTTPException(status_code=400, detail=str(error))
    # PersistenceError and anything unexpected
    return HTTPException(status_code=500, detail="Something went wrong, please try again.")
