"""Rate-limit, usage-limit and auth-error detection for free-form agent output.

Classification is driven by ordered pattern tables so adapters can extend them
with backend-specific wording without touching the matching code. All
patterns are regular expressions matched against lower-cased text.

Usage-limit detection always runs before rate-limit detection: a quota
exhaustion pauses the whole queue, while a rate limit only warrants a short
retry.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Iterable, Literal

from .types import UsageLimitMatch, local_now


RATE_LIMIT_PATTERNS: tuple[str, ...] = (
    r"rate limit",
    r"rate_limit",
    r"\b429\b",
    r"too many requests",
    r"overloaded",
    r"resource exhausted",
)

USAGE_LIMIT_PATTERNS: tuple[str, ...] = (
    r"usage limit",
    r"usage_limit",
    r"quota exceeded",
    r"quota_exceeded",
    r"limit exceeded",
    r"daily limit",
    r"monthly limit",
    r"exceeded your",
    r"api limit",
    r"request limit reached",
    r"token limit",
    r"out of credits",
    r"insufficient credits?",
    r"billing",
    r"free tier",
    r"\b402\b",
)

AUTH_ERROR_PATTERNS: tuple[str, ...] = (
    r"unauthorized",
    r"\b401\b",
    r"\b403\b",
    r"authentication failed",
    r"not authenticated",
    r"invalid token",
    r"token expired",
    r"please log in",
    r"please authenticate",
    r"login required",
    r"access denied",
    r"invalid api key",
    r"api_key_invalid",
)

_RESET_LEAD = r"(?:resets?|available|try\s+again)"

# Ordered: clock time, relative duration, ISO-8601 literal.
_CLOCK_RE = re.compile(
    _RESET_LEAD + r"(?:\s+at)?\s+(\d{1,2}):(\d{2})(?::(\d{2}))?(?:\s*(am|pm))?(\s*utc)?"
)
_DURATION_RE = re.compile(
    r"\bin\s+(\d+)\s*(hours?|hrs?|h|minutes?|mins?|m|seconds?|secs?|s)\b"
)
_ISO_RE = re.compile(
    r"(\d{4}-\d{2}-\d{2}t\d{2}:\d{2}:\d{2}(?:\.\d+)?(?:z|[+-]\d{2}:?\d{2})?)"
)

_UNIT_SECONDS = {"h": 3600, "m": 60, "s": 1}

LimitKind = Literal["usage-limit", "rate-limit"]


@dataclass(slots=True)
class LimitMatch:
    """Outcome of classifying one piece of text."""

    kind: LimitKind | None
    reset_at: datetime | None = None
    matched_pattern: str | None = None


def _first_match(text: str, patterns: Iterable[re.Pattern[str]]) -> str | None:
    for pattern in patterns:
        if pattern.search(text):
            return pattern.pattern
    return None


def _compile(patterns: Iterable[str]) -> tuple[re.Pattern[str], ...]:
    return tuple(re.compile(p) for p in patterns)


def next_utc_midnight(now: datetime | None = None) -> datetime:
    """Start of the next UTC day after ``now``."""
    now_utc = (now or local_now()).astimezone(timezone.utc)
    midnight = now_utc.replace(hour=0, minute=0, second=0, microsecond=0)
    return midnight + timedelta(days=1)


def _parse_clock(match: re.Match[str], now: datetime) -> datetime | None:
    hour = int(match.group(1))
    minute = int(match.group(2))
    second = int(match.group(3) or 0)
    meridiem = match.group(4)
    if meridiem:
        if not 1 <= hour <= 12:
            return None
        if meridiem == "pm" and hour != 12:
            hour += 12
        elif meridiem == "am" and hour == 12:
            hour = 0
    if hour > 23 or minute > 59 or second > 59:
        return None

    base = now.astimezone(timezone.utc) if match.group(5) else now
    candidate = base.replace(hour=hour, minute=minute, second=second, microsecond=0)
    if candidate <= base:
        candidate += timedelta(days=1)
    return candidate


def _parse_duration(match: re.Match[str], now: datetime) -> datetime:
    amount = int(match.group(1))
    unit = match.group(2)[0]
    return now + timedelta(seconds=amount * _UNIT_SECONDS[unit])


def _parse_iso(literal: str, now: datetime) -> datetime | None:
    value = literal.upper()
    if value.endswith("Z"):
        value = value[:-1] + "+00:00"
    tz_match = re.search(r"([+-]\d{2})(\d{2})$", value)
    if tz_match:
        value = value[: tz_match.start()] + f"{tz_match.group(1)}:{tz_match.group(2)}"
    # fromisoformat only accepts up to microsecond precision on older interpreters
    value = re.sub(r"(\.\d{6})\d+", r"\1", value)
    try:
        parsed = datetime.fromisoformat(value)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=now.tzinfo)
    return parsed


def extract_reset_time(text: str, now: datetime | None = None) -> datetime | None:
    """Infer when a usage limit resets from free-form text.

    Tries, in order: a clock time near "reset"/"available"/"try again" (today,
    rolled to tomorrow if already past), a relative "in N hours/minutes/seconds"
    duration, an ISO-8601 timestamp, and finally next UTC midnight when the
    text mentions "daily". Returns None when nothing matches, meaning the
    reset time is unknown.
    """
    now = now or local_now()
    lower = text.lower()

    clock = _CLOCK_RE.search(lower)
    if clock:
        parsed = _parse_clock(clock, now)
        if parsed is not None:
            return parsed

    duration = _DURATION_RE.search(lower)
    if duration:
        return _parse_duration(duration, now)

    iso = _ISO_RE.search(lower)
    if iso:
        parsed = _parse_iso(iso.group(1), now)
        if parsed is not None:
            return parsed

    if "daily" in lower:
        return next_utc_midnight(now)

    return None


class LimitDetector:
    """Classifies text as usage-limit, rate-limit or auth error.

    Instances are immutable; ``extended`` returns a new detector with extra
    patterns appended to the built-in tables.
    """

    def __init__(
        self,
        rate_limit_patterns: Iterable[str] = RATE_LIMIT_PATTERNS,
        usage_limit_patterns: Iterable[str] = USAGE_LIMIT_PATTERNS,
        auth_error_patterns: Iterable[str] = AUTH_ERROR_PATTERNS,
    ):
        self.rate_limit_patterns = tuple(rate_limit_patterns)
        self.usage_limit_patterns = tuple(usage_limit_patterns)
        self.auth_error_patterns = tuple(auth_error_patterns)
        self._rate = _compile(self.rate_limit_patterns)
        self._usage = _compile(self.usage_limit_patterns)
        self._auth = _compile(self.auth_error_patterns)

    def extended(
        self,
        *,
        rate_limit: Iterable[str] = (),
        usage_limit: Iterable[str] = (),
        auth_error: Iterable[str] = (),
    ) -> "LimitDetector":
        return LimitDetector(
            self.rate_limit_patterns + tuple(rate_limit),
            self.usage_limit_patterns + tuple(usage_limit),
            self.auth_error_patterns + tuple(auth_error),
        )

    def detect_rate_limit(self, text: str) -> bool:
        return _first_match(text.lower(), self._rate) is not None

    def detect_usage_limit(self, text: str, now: datetime | None = None) -> UsageLimitMatch:
        if _first_match(text.lower(), self._usage) is None:
            return UsageLimitMatch(matched=False)
        return UsageLimitMatch(matched=True, reset_at=extract_reset_time(text, now))

    def detect_auth_error(self, text: str) -> bool:
        return _first_match(text.lower(), self._auth) is not None

    def classify(self, text: str, now: datetime | None = None) -> LimitMatch:
        """Classify text, checking usage-limit before rate-limit."""
        lower = text.lower()
        pattern = _first_match(lower, self._usage)
        if pattern is not None:
            return LimitMatch("usage-limit", extract_reset_time(text, now), pattern)
        pattern = _first_match(lower, self._rate)
        if pattern is not None:
            return LimitMatch("rate-limit", None, pattern)
        return LimitMatch(None)


DEFAULT_DETECTOR = LimitDetector()
