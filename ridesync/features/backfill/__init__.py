"""
Backfill feature.

Historical imports requested from the provider in date-window chunks.
"""

from .models import BackfillRequest, BackfillStatus, YTD
from .service import BackfillOrchestrator, BACKFILL_YEAR_JOB

__all__ = [
    "BackfillRequest",
    "BackfillStatus",
    "YTD",
    "BackfillOrchestrator",
    "BACKFILL_YEAR_JOB",
]
