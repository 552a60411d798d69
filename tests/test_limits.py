"""Tests for rate-limit, usage-limit and auth-error detection."""

from datetime import datetime, timedelta, timezone

import pytest

from agentshift.agents.limits import (
    DEFAULT_DETECTOR,
    LimitDetector,
    extract_reset_time,
    next_utc_midnight,
)

NOW = datetime(2025, 3, 14, 10, 0, 0, tzinfo=timezone.utc)


class TestExtractResetTime:
    """Reset-time inference from free-form text."""

    def test_clock_time_later_today(self):
        """A clock time after now resolves to today."""
        reset = extract_reset_time("quota exceeded, resets at 14:30", NOW)
        assert reset == NOW.replace(hour=14, minute=30)

    def test_clock_time_already_past_rolls_to_tomorrow(self):
        reset = extract_reset_time("limit reached, try again at 9:15", NOW)
        assert reset == NOW.replace(hour=9, minute=15) + timedelta(days=1)

    def test_clock_time_with_meridiem(self):
        reset = extract_reset_time("Usage limit reached. Available at 3:05 PM", NOW)
        assert reset == NOW.replace(hour=15, minute=5)

    def test_twelve_am_is_midnight(self):
        reset = extract_reset_time("resets at 12:00 am", NOW)
        assert reset == (NOW + timedelta(days=1)).replace(hour=0, minute=0)

    def test_relative_hours(self):
        reset = extract_reset_time("usage limit hit, try again in 2 hours", NOW)
        assert reset == NOW + timedelta(hours=2)

    def test_relative_minutes_and_seconds(self):
        assert extract_reset_time("quota exceeded in 30 minutes", NOW) == NOW + timedelta(minutes=30)
        assert extract_reset_time("quota exceeded in 45s", NOW) == NOW + timedelta(seconds=45)

    def test_iso_timestamp(self):
        reset = extract_reset_time("quota exceeded until 2025-03-15T08:00:00Z", NOW)
        assert reset == datetime(2025, 3, 15, 8, 0, tzinfo=timezone.utc)

    def test_iso_timestamp_with_offset(self):
        reset = extract_reset_time("limit resets 2025-03-15T08:00:00+0200 sharp", NOW)
        assert reset == datetime(2025, 3, 15, 6, 0, tzinfo=timezone.utc)

    def test_daily_defaults_to_next_utc_midnight(self):
        reset = extract_reset_time("You have hit your daily limit", NOW)
        assert reset == datetime(2025, 3, 15, 0, 0, tzinfo=timezone.utc)

    def test_clock_beats_daily(self):
        reset = extract_reset_time("daily limit hit, resets at 11:00", NOW)
        assert reset == NOW.replace(hour=11)

    def test_unknown_reset_is_none(self):
        assert extract_reset_time("quota exceeded", NOW) is None

    def test_invalid_clock_falls_through(self):
        """An impossible clock time is ignored rather than guessed."""
        assert extract_reset_time("resets at 25:99", NOW) is None


class TestNextUtcMidnight:
    def test_from_local_timezone(self):
        tz = timezone(timedelta(hours=-5))
        now = datetime(2025, 3, 14, 21, 0, tzinfo=tz)  # 02:00 UTC on the 15th
        assert next_utc_midnight(now) == datetime(2025, 3, 16, 0, 0, tzinfo=timezone.utc)


class TestLimitDetector:
    """Classification tables and precedence."""

    @pytest.mark.parametrize(
        "text",
        ["Rate limit exceeded", "HTTP 429", "Too Many Requests", "API is overloaded", "resource exhausted"],
    )
    def test_rate_limit_keywords(self, text):
        assert DEFAULT_DETECTOR.detect_rate_limit(text) is True

    @pytest.mark.parametrize(
        "text",
        ["Quota exceeded", "daily limit reached", "Insufficient credits", "billing issue", "Error 402"],
    )
    def test_usage_limit_keywords(self, text):
        assert DEFAULT_DETECTOR.detect_usage_limit(text).matched is True

    def test_plain_text_is_not_a_limit(self):
        assert DEFAULT_DETECTOR.classify("Compiling 12 files").kind is None

    def test_status_code_needs_word_boundary(self):
        assert DEFAULT_DETECTOR.detect_rate_limit("processed 14290 rows") is False

    def test_usage_limit_takes_precedence(self):
        """Text matching both tables is a usage limit."""
        match = DEFAULT_DETECTOR.classify("429 Too Many Requests: quota exceeded, try again in 2 hours", NOW)
        assert match.kind == "usage-limit"
        assert match.reset_at == NOW + timedelta(hours=2)

    def test_usage_limit_in_two_hours(self):
        result = DEFAULT_DETECTOR.detect_usage_limit("usage limit reached in 2 hours", NOW)
        assert result.matched is True
        assert result.reset_at == NOW + timedelta(hours=2)

    def test_auth_errors(self):
        assert DEFAULT_DETECTOR.detect_auth_error("401 Unauthorized") is True
        assert DEFAULT_DETECTOR.detect_auth_error("Token expired, please log in") is True
        assert DEFAULT_DETECTOR.detect_auth_error("all good") is False

    def test_extended_adds_patterns_without_mutating(self):
        custom = DEFAULT_DETECTOR.extended(rate_limit=[r"slow down"])
        assert custom.detect_rate_limit("please slow down") is True
        assert DEFAULT_DETECTOR.detect_rate_limit("please slow down") is False
        assert isinstance(custom, LimitDetector)
