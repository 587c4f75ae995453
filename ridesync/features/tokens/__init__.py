"""
Tokens feature.

Provider OAuth tokens: storage, refresh and revocation.
"""

from .models import OAuthToken
from .oauth import ProviderOAuth, TokenGrant
from .single_flight import SingleFlight, InMemorySingleFlight, RedisSingleFlight
from .vault import TokenVault

__all__ = [
    "OAuthToken",
    "ProviderOAuth",
    "TokenGrant",
    "SingleFlight",
    "InMemorySingleFlight",
    "RedisSingleFlight",
    "TokenVault",
]
