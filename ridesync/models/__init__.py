"""
Database Models

Import all models here to ensure they are registered with SQLAlchemy.

Note: Feature models are imported lazily to avoid circular imports.
Use direct imports from features/ modules when possible.
"""

from ridesync.models.base import Base
from ridesync.models.user import User, UserAccount


def load_all_models() -> None:
    """Import every feature model so Base.metadata knows all tables."""
    from ridesync.features.tokens import models as _tokens  # noqa: F401
    from ridesync.features.imports import models as _imports  # noqa: F401
    from ridesync.features.backfill import models as _backfill  # noqa: F401
    from ridesync.features.rides import models as _rides  # noqa: F401


_LAZY = {
    "OAuthToken": "ridesync.features.tokens.models",
    "BackfillRequest": "ridesync.features.backfill.models",
    "BackfillStatus": "ridesync.features.backfill.models",
    "ImportSession": "ridesync.features.imports.models",
    "ImportSessionStatus": "ridesync.features.imports.models",
    "Ride": "ridesync.features.rides.models",
}


# Expose feature models as module-level attributes
def __getattr__(name):
    if name in _LAZY:
        import importlib

        return getattr(importlib.import_module(_LAZY[name]), name)
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")


__all__ = [
    "Base",
    "User",
    "UserAccount",
    "OAuthToken",
    "BackfillRequest",
    "BackfillStatus",
    "ImportSession",
    "ImportSessionStatus",
    "Ride",
    "load_all_models",
]
