"""
Provider OAuth calls.

Handles:
- Token refresh (form-encoded grant_type=refresh_token)
- Token revocation on disconnect
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

import httpx

from ridesync.config import Settings
from ridesync.shared.errors import TokenRefreshFailed
from ridesync.shared.timeutils import utcnow, from_epoch_seconds
from .providers import (
    GARMIN,
    WHOOP,
    STRAVA,
    WHOOP_TOKEN_URL,
    STRAVA_DEAUTHORIZE_URL,
    DEFAULT_EXPIRES_IN,
    get_credentials,
)

logger = logging.getLogger(__name__)


@dataclass
class TokenGrant:
    """Result of a successful refresh."""

    access_token: str
    expires_at: datetime
    refresh_token: Optional[str] = None  # None when the provider kept the old one


def parse_token_response(data: dict, now: Optional[datetime] = None) -> TokenGrant:
    """
    Build a TokenGrant from a token endpoint response.

    Strava answers with an absolute `expires_at`; the others with a relative
    `expires_in` (defaulting to one hour).
    """
    access_token = data.get("access_token")
    if not access_token:
        raise TokenRefreshFailed(200, "response has no access_token")

    if data.get("expires_at") is not None:
        expires_at = from_epoch_seconds(int(data["expires_at"]))
    else:
        expires_in = int(data.get("expires_in") or DEFAULT_EXPIRES_IN)
        expires_at = (now or utcnow()) + timedelta(seconds=expires_in)

    return TokenGrant(
        access_token=access_token,
        expires_at=expires_at,
        refresh_token=data.get("refresh_token") or None,
    )


class ProviderOAuth:
    """
    OAuth client for all providers.

    Usage:
        oauth = ProviderOAuth(settings)
        grant = await oauth.refresh("whoop", refresh_token)
        revoked = await oauth.revoke("garmin", access_token)
    """

    def __init__(
        self,
        settings: Settings,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        timeout: float = 15.0,
    ):
        self.settings = settings
        self._transport = transport
        self._timeout = timeout

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=self._transport, timeout=self._timeout)

    async def refresh(self, provider: str, refresh_token: str) -> TokenGrant:
        """
        Exchange a refresh token for a new access token.

        Args:
            provider: Provider name
            refresh_token: Stored refresh token

        Returns:
            TokenGrant with the new access token and expiry

        Raises:
            ConfigMissing: Credentials absent from settings
            TokenRefreshFailed: Non-2xx answer or network error
        """
        creds = get_credentials(provider, self.settings)

        data = {
            "grant_type": "refresh_token",
            "refresh_token": refresh_token,
            "client_id": creds.client_id,
        }
        if creds.client_secret:
            data["client_secret"] = creds.client_secret
        data.update(creds.extra_refresh_params)

        try:
            async with self._client() as client:
                response = await client.post(
                    creds.token_url,
                    data=data,
                    headers={"Accept": "application/json"},
                )
        except httpx.HTTPError as e:
            logger.error(f"{provider} token refresh network error: {e}")
            raise TokenRefreshFailed(None, str(e)) from e

        if not response.is_success:
            logger.error(f"{provider} token refresh failed: {response.status_code} {response.text}")
            raise TokenRefreshFailed(response.status_code, response.text)

        try:
            payload = response.json()
        except ValueError as e:
            raise TokenRefreshFailed(response.status_code, "invalid JSON") from e

        return parse_token_response(payload)

    async def revoke(self, provider: str, access_token: str) -> bool:
        """
        Revoke access on the provider side.

        Returns:
            True if revoked or already invalid (401/403), False otherwise
        """
        try:
            async with self._client() as client:
                if provider == GARMIN:
                    response = await client.delete(
                        f"{self.settings.garmin_api_base}/rest/user/registration",
                        headers={"Authorization": f"Bearer {access_token}"},
                    )
                elif provider == WHOOP:
                    response = await client.post(
                        f"{WHOOP_TOKEN_URL}/revoke",
                        data={
                            "token": access_token,
                            "token_type_hint": "access_token",
                            "client_id": self.settings.whoop_client_id or "",
                            "client_secret": self.settings.whoop_client_secret or "",
                        },
                    )
                elif provider == STRAVA:
                    response = await client.post(
                        STRAVA_DEAUTHORIZE_URL,
                        headers={"Authorization": f"Bearer {access_token}"},
                    )
                else:
                    raise ValueError(f"Unknown provider: {provider}")
        except httpx.HTTPError as e:
            logger.error(f"{provider} revoke network error: {e}")
            return False

        if response.is_success:
            logger.info(f"{provider} token revoked")
            return True

        if response.status_code in (401, 403):
            logger.info(f"{provider} token already invalid/revoked")
            return True

        logger.error(f"{provider} revoke failed: {response.status_code} {response.text}")
        return False
