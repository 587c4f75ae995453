"""
Ingestion feature - webhook payloads, activity fetch and ride ingestion.
"""

from .backfill import PullBackfillService, PullBackfillOutcome
from .service import RideIngestionService, SYNC_ACTIVITY_JOB, PROCESS_CALLBACK_JOB
from .webhooks import WebhookDispatcher

__all__ = [
    "PullBackfillService",
    "PullBackfillOutcome",
    "RideIngestionService",
    "WebhookDispatcher",
    "SYNC_ACTIVITY_JOB",
    "PROCESS_CALLBACK_JOB",
]
