"""
Provider OAuth endpoints and credentials.

Credentials come from settings; a provider with missing credentials is not
a startup error, it fails at refresh time with ConfigMissing.
"""

from dataclasses import dataclass, field
from typing import Optional

from ridesync.config import Settings
from ridesync.shared.errors import ConfigMissing


GARMIN = "garmin"
WHOOP = "whoop"
STRAVA = "strava"

PROVIDERS = (GARMIN, WHOOP, STRAVA)

WHOOP_TOKEN_URL = "https://api.prod.whoop.com/oauth/oauth2/token"
WHOOP_API_BASE = "https://api.prod.whoop.com/developer/v1"
STRAVA_TOKEN_URL = "https://www.strava.com/oauth/token"
STRAVA_DEAUTHORIZE_URL = "https://www.strava.com/oauth/deauthorize"
STRAVA_API_BASE = "https://www.strava.com/api/v3"

DEFAULT_EXPIRES_IN = 3600


@dataclass
class ProviderCredentials:
    """Resolved token endpoint and client credentials for one provider."""

    provider: str
    token_url: str
    client_id: str
    client_secret: Optional[str] = None
    # Extra form fields sent with every refresh
    extra_refresh_params: dict = field(default_factory=dict)


def get_credentials(provider: str, settings: Settings) -> ProviderCredentials:
    """
    Resolve credentials for a provider.

    Raises:
        ConfigMissing: If a required value is absent
        ValueError: If the provider is unknown
    """
    if provider == GARMIN:
        missing = []
        if not settings.garmin_token_url:
            missing.append("GARMIN_TOKEN_URL")
        if not settings.garmin_client_id:
            missing.append("GARMIN_CLIENT_ID")
        if missing:
            raise ConfigMissing(provider, missing)
        # Garmin PKCE apps have no client secret
        return ProviderCredentials(
            provider=provider,
            token_url=settings.garmin_token_url,
            client_id=settings.garmin_client_id,
            client_secret=settings.garmin_client_secret or None,
        )

    if provider == WHOOP:
        missing = []
        if not settings.whoop_client_id:
            missing.append("WHOOP_CLIENT_ID")
        if not settings.whoop_client_secret:
            missing.append("WHOOP_CLIENT_SECRET")
        if missing:
            raise ConfigMissing(provider, missing)
        return ProviderCredentials(
            provider=provider,
            token_url=WHOOP_TOKEN_URL,
            client_id=settings.whoop_client_id,
            client_secret=settings.whoop_client_secret,
            extra_refresh_params={"scope": "offline"},
        )

    if provider == STRAVA:
        missing = []
        if not settings.strava_client_id:
            missing.append("STRAVA_CLIENT_ID")
        if not settings.strava_client_secret:
            missing.append("STRAVA_CLIENT_SECRET")
        if missing:
            raise ConfigMissing(provider, missing)
        return ProviderCredentials(
            provider=provider,
            token_url=STRAVA_TOKEN_URL,
            client_id=settings.strava_client_id,
            client_secret=settings.strava_client_secret,
        )

    raise ValueError(f"Unknown provider: {provider}")
