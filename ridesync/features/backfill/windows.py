"""
Backfill date windows.

Resolves a year key ("2023" or "ytd") into a concrete [start, end) window,
walks it in provider-sized chunks and parses the provider's
"min start time" rejection message.
"""

import json
import re
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from ridesync.shared.errors import DuplicateWindow, InvalidBackfillRequest
from ridesync.shared.timeutils import parse_iso8601
from .models import BackfillRequest, BackfillStatus, YTD


MIN_START_PATTERN = re.compile(r"min start time of ([0-9T:.-]+Z)", re.IGNORECASE)

# Largest window accepted by the days-based trigger
MAX_DAYS = 365


@dataclass
class BackfillWindow:
    start: datetime
    end: datetime
    year: Optional[str] = None  # None for days-based windows (not tracked)
    resumed: bool = False

    @property
    def is_empty(self) -> bool:
        return self.start >= self.end

    @property
    def description(self) -> str:
        if self.year is None:
            return f"{(self.end - self.start).days} days"
        if self.year == YTD:
            if self.resumed:
                return f"new activities since {self.start.date().isoformat()}"
            return f"year to date ({self.end.year})"
        return f"year {self.year}"


def validate_year_key(value: str, now: datetime, min_year: int) -> str:
    """
    Check a year key.

    Raises:
        InvalidBackfillRequest: Not "ytd" and not a year in [min_year, current year]
    """
    if value == YTD:
        return value
    try:
        year = int(value)
    except (TypeError, ValueError):
        year = None
    if year is None or len(str(value)) != 4 or year < min_year or year > now.year:
        raise InvalidBackfillRequest(
            f"Year must be between {min_year} and {now.year}, or 'ytd' (got {value!r})"
        )
    return str(year)


def resolve_window(
    year: str,
    now: datetime,
    min_year: int,
    previous: Optional[BackfillRequest] = None,
    enforce_conflicts: bool = True,
) -> BackfillWindow:
    """
    Turn a year key into a window.

    Args:
        year: "ytd" or a four digit year
        now: Current naive UTC time
        min_year: Oldest year accepted
        previous: Existing BackfillRequest for the same key, if any
        enforce_conflicts: Reject already-backfilled / in-progress keys

    Returns:
        BackfillWindow

    Raises:
        InvalidBackfillRequest: Year out of range
        DuplicateWindow: Key already backfilled or ytd in progress
    """
    year = validate_year_key(year, now, min_year)

    if year == YTD:
        if enforce_conflicts and previous is not None and previous.status == BackfillStatus.IN_PROGRESS.value:
            raise DuplicateWindow(
                DuplicateWindow.YTD_IN_PROGRESS,
                "A YTD backfill is already in progress. Please wait for it to complete before requesting another.",
            )
        # Resume only from a run that fully completed, so a failed run
        # cannot leave a gap behind its checkpoint
        if (
            previous is not None
            and previous.backfilled_up_to is not None
            and previous.status == BackfillStatus.COMPLETED.value
        ):
            return BackfillWindow(
                start=previous.backfilled_up_to + timedelta(seconds=1),
                end=now,
                year=YTD,
                resumed=True,
            )
        return BackfillWindow(start=datetime(now.year, 1, 1), end=now, year=YTD)

    if enforce_conflicts and previous is not None and previous.status != BackfillStatus.FAILED.value:
        raise DuplicateWindow(
            DuplicateWindow.ALREADY_BACKFILLED,
            f"{year} has already been imported.",
        )

    year_num = int(year)
    return BackfillWindow(
        start=datetime(year_num, 1, 1),
        end=datetime(year_num, 12, 31, 23, 59, 59),
        year=year,
    )


def days_window(days: int, now: datetime) -> BackfillWindow:
    """Untracked window covering the last `days` days."""
    if days < 1 or days > MAX_DAYS:
        raise InvalidBackfillRequest(f"Days must be between 1 and {MAX_DAYS}")
    return BackfillWindow(start=now - timedelta(days=days), end=now)


def chunk_end(start: datetime, end: datetime, chunk_days: int) -> datetime:
    """End of the chunk starting at `start`, capped at the window end."""
    return min(start + timedelta(days=chunk_days), end)


def extract_min_start(text: str) -> Optional[datetime]:
    """
    Parse the minimum start time out of a 400 body such as
    {"errorMessage": "... min start time of 2023-01-15T00:00:00Z"}.

    Returns:
        Naive UTC datetime, or None if the body has no parseable minimum
    """
    try:
        parsed = json.loads(text)
    except (TypeError, ValueError):
        return None

    if isinstance(parsed, dict) and isinstance(parsed.get("errorMessage"), str):
        message = parsed["errorMessage"]
    else:
        message = str(parsed)

    match = MIN_START_PATTERN.search(message)
    if not match:
        return None
    try:
        return parse_iso8601(match.group(1))
    except ValueError:
        return None
