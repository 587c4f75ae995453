"""
Error taxonomy for the token, lock, backfill and ingestion layers.

Token and lock failures are recovered close to where they happen (a None
token, a degraded lock); per-chunk provider failures become warnings.
Only persistence failures and contract violations propagate to the caller.
"""

from datetime import datetime
from typing import Optional


class RideSyncError(Exception):
    """Base error."""
    pass


# =============================================================================
# Tokens
# =============================================================================

class TokenError(RideSyncError):
    """Token could not be produced; the user should reconnect."""
    pass


class NotConnected(TokenError):
    """No token stored for (user, provider)."""

    def __init__(self, user_id: str, provider: str):
        super().__init__(f"{provider} not connected for user {user_id}")
        self.user_id = user_id
        self.provider = provider


class MissingRefreshToken(TokenError):
    """Token expired and nothing to refresh it with."""
    pass


class TokenRefreshFailed(TokenError):
    """Provider token endpoint rejected the refresh."""

    def __init__(self, status_code: Optional[int], body: str = ""):
        super().__init__(f"Token refresh failed: {status_code} {body}".strip())
        self.status_code = status_code
        self.body = body


class ConfigMissing(TokenError):
    """Provider credentials are absent from the environment."""

    def __init__(self, provider: str, missing: list[str]):
        super().__init__(f"Missing {provider} configuration: {', '.join(missing)}")
        self.provider = provider
        self.missing = missing


# =============================================================================
# Locks
# =============================================================================

class LockUnavailable(RideSyncError):
    """Lock held by someone else. Retryable."""

    def __init__(self, lock_key: str, retry_after: float = 30.0):
        super().__init__(f"Lock not available: {lock_key}")
        self.lock_key = lock_key
        self.retry_after = retry_after


# =============================================================================
# Providers
# =============================================================================

class ProviderRequestFailed(RideSyncError):
    """Provider API answered with an unexpected status."""

    def __init__(self, status_code: Optional[int], body: str = ""):
        super().__init__(f"Provider request failed: {status_code}")
        self.status_code = status_code
        self.body = body


class ProviderRangeRejected(ProviderRequestFailed):
    """Backfill start precedes the provider's minimum start time."""

    def __init__(self, min_start: datetime, body: str = ""):
        super().__init__(400, body)
        self.min_start = min_start


# =============================================================================
# Backfill / imports
# =============================================================================

class DuplicateWindow(RideSyncError):
    """Window already imported or an import is running (a 409, not a failure)."""

    ALREADY_BACKFILLED = "already_backfilled"
    YTD_IN_PROGRESS = "ytd_in_progress"
    IMPORT_RUNNING = "import_running"
    ALL_SKIPPED = "all_skipped"

    def __init__(self, reason: str, message: str, details: Optional[dict] = None):
        super().__init__(message)
        self.reason = reason
        self.message = message
        self.details = details or {}


class InvalidBackfillRequest(RideSyncError):
    """Year key or batch shape not accepted."""
    pass


class InvalidPayload(RideSyncError):
    """Webhook body does not have a recognized shape."""
    pass


class PersistenceError(RideSyncError):
    """Database operation failed; nothing partial is visible."""
    pass
