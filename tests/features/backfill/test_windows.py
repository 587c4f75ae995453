"""
Tests for backfill window resolution.
"""

from datetime import datetime, timedelta

import pytest

from ridesync.features.backfill.models import BackfillRequest, BackfillStatus
from ridesync.features.backfill.windows import (
    resolve_window,
    validate_year_key,
    days_window,
    chunk_end,
    extract_min_start,
)
from ridesync.shared.errors import DuplicateWindow, InvalidBackfillRequest


NOW = datetime(2024, 6, 15, 12, 0, 0)


def previous(year, status, backfilled_up_to=None):
    return BackfillRequest(
        user_id="u1", provider="garmin", year=year,
        status=status.value, backfilled_up_to=backfilled_up_to,
    )


class TestYearKeys:
    """Year validation."""

    def test_accepts_ytd_and_range(self):
        assert validate_year_key("ytd", NOW, 2000) == "ytd"
        assert validate_year_key("2000", NOW, 2000) == "2000"
        assert validate_year_key("2024", NOW, 2000) == "2024"

    @pytest.mark.parametrize("value", ["1999", "2025", "abc", "24", "", "YTD"])
    def test_rejects_out_of_range(self, value):
        with pytest.raises(InvalidBackfillRequest):
            validate_year_key(value, NOW, 2000)


class TestResolveWindow:
    """Year key to [start, end) window."""

    def test_full_year(self):
        window = resolve_window("2023", NOW, 2000)
        assert window.start == datetime(2023, 1, 1)
        assert window.end == datetime(2023, 12, 31, 23, 59, 59)
        assert window.description == "year 2023"

    def test_ytd_from_january(self):
        window = resolve_window("ytd", NOW, 2000)
        assert window.start == datetime(2024, 1, 1)
        assert window.end == NOW
        assert window.resumed is False

    def test_ytd_resumes_after_checkpoint(self):
        checkpoint = datetime(2024, 5, 1, 8, 30, 0)
        window = resolve_window("ytd", NOW, 2000, previous("ytd", BackfillStatus.COMPLETED, checkpoint))
        assert window.start == checkpoint + timedelta(seconds=1)
        assert window.resumed is True
        assert window.description == "new activities since 2024-05-01"

    def test_ytd_failed_run_restarts_from_january(self):
        checkpoint = datetime(2024, 5, 1)
        window = resolve_window("ytd", NOW, 2000, previous("ytd", BackfillStatus.FAILED, checkpoint))
        assert window.start == datetime(2024, 1, 1)

    def test_ytd_in_progress_conflicts(self):
        with pytest.raises(DuplicateWindow) as exc:
            resolve_window("ytd", NOW, 2000, previous("ytd", BackfillStatus.IN_PROGRESS))
        assert exc.value.reason == DuplicateWindow.YTD_IN_PROGRESS

    @pytest.mark.parametrize("status", [BackfillStatus.PENDING, BackfillStatus.IN_PROGRESS, BackfillStatus.COMPLETED])
    def test_year_already_backfilled(self, status):
        with pytest.raises(DuplicateWindow) as exc:
            resolve_window("2023", NOW, 2000, previous("2023", status))
        assert exc.value.reason == DuplicateWindow.ALREADY_BACKFILLED

    def test_failed_year_can_retry(self):
        window = resolve_window("2023", NOW, 2000, previous("2023", BackfillStatus.FAILED))
        assert window.year == "2023"

    def test_conflicts_not_enforced_for_jobs(self):
        window = resolve_window(
            "2023", NOW, 2000, previous("2023", BackfillStatus.PENDING), enforce_conflicts=False
        )
        assert window.start == datetime(2023, 1, 1)


class TestChunksAndDays:
    """Chunk boundaries and the days-based window."""

    def test_chunk_end_capped(self):
        start = datetime(2023, 12, 20)
        end = datetime(2023, 12, 31, 23, 59, 59)
        assert chunk_end(start, end, 30) == end
        assert chunk_end(datetime(2023, 1, 1), end, 30) == datetime(2023, 1, 31)

    def test_days_window(self):
        window = days_window(7, NOW)
        assert window.start == NOW - timedelta(days=7)
        assert window.year is None
        assert window.description == "7 days"

    @pytest.mark.parametrize("days", [0, 366])
    def test_days_out_of_range(self, days):
        with pytest.raises(InvalidBackfillRequest):
            days_window(days, NOW)


class TestMinStart:
    """Parsing the provider's minimum start rejection."""

    def test_error_message_field(self):
        body = '{"errorMessage": "start time is before min start time of 2023-01-15T00:00:00Z"}'
        assert extract_min_start(body) == datetime(2023, 1, 15)

    def test_fractional_seconds(self):
        body = '{"errorMessage": "min start time of 2023-01-15T10:20:30.250Z"}'
        assert extract_min_start(body) == datetime(2023, 1, 15, 10, 20, 30, 250000)

    @pytest.mark.parametrize("body", ["not json", '{"errorMessage": "bad token"}', "", "null"])
    def test_unparseable(self, body):
        assert extract_min_start(body) is None
