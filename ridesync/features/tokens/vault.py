"""
Token vault.

Hands out valid access tokens per (user, provider), refreshing them
through a single-flight coordinator when they are expired or close to it.
"""

import logging
from datetime import datetime
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ridesync.config import Settings
from ridesync.shared.errors import (
    TokenError,
    NotConnected,
    MissingRefreshToken,
    TokenRefreshFailed,
)
from .oauth import ProviderOAuth
from .repository import OAuthTokenRepository, UserAccountRepository
from .single_flight import SingleFlight

logger = logging.getLogger(__name__)


class TokenVault:
    """
    Access token storage and refresh orchestration.

    Usage:
        vault = TokenVault(AsyncSessionLocal, InMemorySingleFlight(), settings)
        token = await vault.get_valid_token(user_id, "garmin")
        if token is None:
            ...  # ask the user to reconnect
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        single_flight: SingleFlight,
        settings: Settings,
        oauth: Optional[ProviderOAuth] = None,
    ):
        self.session_factory = session_factory
        self.single_flight = single_flight
        self.settings = settings
        self.oauth = oauth or ProviderOAuth(settings)

    async def get_valid_token(self, user_id: str, provider: str) -> Optional[str]:
        """
        Get a usable access token, or None if the user must reconnect.

        Token errors are logged and turned into None; database errors
        propagate.
        """
        try:
            return await self.require_valid_token(user_id, provider)
        except TokenError as e:
            logger.warning(f"No valid {provider} token for user {user_id}: {e}")
            return None

    async def require_valid_token(self, user_id: str, provider: str) -> str:
        """
        Same as get_valid_token, but raises the specific TokenError.

        Raises:
            NotConnected: No token stored
            MissingRefreshToken: Expired and no refresh token
            TokenRefreshFailed: Refresh did not produce a token
        """
        async with self.session_factory() as db:
            token = await OAuthTokenRepository(db).get_for_user(user_id, provider)

        if token is None:
            raise NotConnected(user_id, provider)

        if not token.expires_within(self.settings.token_refresh_skew_seconds):
            return token.access_token

        if not token.refresh_token:
            raise MissingRefreshToken(f"{provider} token expired and no refresh token stored")

        refresh_token = token.refresh_token
        access_token = await self.single_flight.run(
            f"{provider}:{user_id}",
            lambda: self._refresh(user_id, provider, refresh_token),
        )
        if access_token is None:
            raise TokenRefreshFailed(None, "refresh did not produce a token")
        return access_token

    async def _refresh(self, user_id: str, provider: str, refresh_token: str) -> Optional[str]:
        """Call the token endpoint and persist the result. None on failure."""
        logger.info(f"Refreshing {provider} token for user {user_id}")
        try:
            grant = await self.oauth.refresh(provider, refresh_token)
        except TokenError as e:
            # Stored token stays untouched
            logger.error(f"{provider} token refresh failed for user {user_id}: {e}")
            return None

        async with self.session_factory() as db:
            updated = await OAuthTokenRepository(db).apply_grant(user_id, provider, grant)
            await db.commit()

        if not updated:
            logger.warning(f"{provider} token for user {user_id} disappeared during refresh")
            return None

        logger.info(f"{provider} token refreshed for user {user_id}, expires {grant.expires_at.isoformat()}Z")
        return grant.access_token

    # =========================================================================
    # Connect / disconnect
    # =========================================================================

    async def store_token(
        self,
        user_id: str,
        provider: str,
        access_token: str,
        refresh_token: Optional[str],
        expires_at: datetime,
        provider_user_id: Optional[str] = None,
    ) -> None:
        """Persist tokens from a successful code exchange (and the account link)."""
        async with self.session_factory() as db:
            await OAuthTokenRepository(db).save(
                user_id, provider, access_token, refresh_token, expires_at
            )
            if provider_user_id:
                await UserAccountRepository(db).link(user_id, provider, provider_user_id)
            await db.commit()
        logger.info(f"Stored {provider} token for user {user_id}")

    async def disconnect(self, user_id: str, provider: str) -> bool:
        """
        Revoke provider access, then delete token and account link together.

        Returns:
            True if the provider confirmed revocation (or nothing was stored)
        """
        async with self.session_factory() as db:
            token = await OAuthTokenRepository(db).get_for_user(user_id, provider)

        revoked = True
        if token is not None:
            revoked = await self.oauth.revoke(provider, token.access_token)
            if not revoked:
                logger.warning(f"{provider} revocation failed for user {user_id}; deleting locally anyway")

        await self.forget(user_id, provider)
        return revoked

    async def forget(self, user_id: str, provider: str) -> None:
        """Delete token and account link in one transaction (no provider call)."""
        async with self.session_factory() as db:
            async with db.begin():
                await OAuthTokenRepository(db).delete_for_user(user_id, provider)
                await UserAccountRepository(db).delete_for_user(user_id, provider)

        logger.info(f"Disconnected {provider} for user {user_id}")
