"""
Token and account-link repositories.
"""

from sqlalchemy import update, delete
from sqlalchemy.ext.asyncio import AsyncSession

from ridesync.models.user import UserAccount
from ridesync.shared.repository import BaseRepository
from ridesync.shared.timeutils import utcnow
from .models import OAuthToken
from .oauth import TokenGrant


class OAuthTokenRepository(BaseRepository[OAuthToken]):
    """Repository for provider OAuth tokens."""

    def __init__(self, db: AsyncSession):
        super().__init__(db, OAuthToken)

    async def get_for_user(self, user_id: str, provider: str) -> OAuthToken | None:
        return await self.get_by(user_id=user_id, provider=provider)

    async def save(
        self,
        user_id: str,
        provider: str,
        access_token: str,
        refresh_token: str | None,
        expires_at,
    ) -> OAuthToken:
        """
        Store tokens from an OAuth code exchange (create or replace).

        Args:
            user_id: Internal user ID
            provider: Provider name
            access_token: New access token
            refresh_token: New refresh token (may be None)
            expires_at: Naive UTC expiry

        Returns:
            Stored token
        """
        token = await self.get_for_user(user_id, provider)
        if token is None:
            return await self.create(
                user_id=user_id,
                provider=provider,
                access_token=access_token,
                refresh_token=refresh_token,
                expires_at=expires_at,
            )
        return await self.update(
            token,
            access_token=access_token,
            refresh_token=refresh_token,
            expires_at=expires_at,
            updated_at=utcnow(),
        )

    async def apply_grant(self, user_id: str, provider: str, grant: TokenGrant) -> bool:
        """
        Write a refresh result in one statement.

        The refresh token column is only touched when the provider issued a
        new one.

        Returns:
            False if the token row disappeared meanwhile (disconnect)
        """
        values = {
            "access_token": grant.access_token,
            "expires_at": grant.expires_at,
            "updated_at": utcnow(),
        }
        if grant.refresh_token:
            values["refresh_token"] = grant.refresh_token

        result = await self.db.execute(
            update(OAuthToken)
            .where(OAuthToken.user_id == user_id, OAuthToken.provider == provider)
            .values(**values)
        )
        return result.rowcount > 0

    async def delete_for_user(self, user_id: str, provider: str) -> int:
        result = await self.db.execute(
            delete(OAuthToken).where(
                OAuthToken.user_id == user_id,
                OAuthToken.provider == provider,
            )
        )
        return result.rowcount


class UserAccountRepository(BaseRepository[UserAccount]):
    """Provider account id <-> internal user id."""

    def __init__(self, db: AsyncSession):
        super().__init__(db, UserAccount)

    async def get_by_provider_user_id(self, provider: str, provider_user_id: str) -> UserAccount | None:
        return await self.get_by(provider=provider, provider_user_id=str(provider_user_id))

    async def get_for_user(self, user_id: str, provider: str) -> UserAccount | None:
        return await self.get_by(user_id=user_id, provider=provider)

    async def link(self, user_id: str, provider: str, provider_user_id: str) -> UserAccount:
        account = await self.get_for_user(user_id, provider)
        if account is None:
            return await self.create(
                user_id=user_id,
                provider=provider,
                provider_user_id=str(provider_user_id),
            )
        return await self.update(account, provider_user_id=str(provider_user_id))

    async def delete_for_user(self, user_id: str, provider: str) -> int:
        result = await self.db.execute(
            delete(UserAccount).where(
                UserAccount.user_id == user_id,
                UserAccount.provider == provider,
            )
        )
        return result.rowcount
