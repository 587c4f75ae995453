"""
Imports feature.

Import session tracking and the background checker that closes sessions.
"""

from .models import ImportSession, ImportSessionStatus
from .service import ImportSessionTracker

__all__ = ["ImportSession", "ImportSessionStatus", "ImportSessionTracker"]
