"""Process-wide usage-limit pause with automatic resume.

When any backend reports that its quota is exhausted, the task queue is
paused. If the backend told us when the quota resets, a timer clears the
pause at that time plus a small buffer; otherwise it stays paused until a
manual clear.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from typing import Any, Callable, Literal

from agentshift.agents.types import local_now
from agentshift.util.config_manager import DEFAULT_USAGE_THRESHOLDS, get_env_float

from .broadcaster import Broadcaster

logger = logging.getLogger(__name__)

RESUME_BUFFER_SECONDS = get_env_float("AGENTSHIFT_RESUME_BUFFER_SECONDS", 5.0)

# A reset time already in the past is pushed this far into the future
MIN_RESUME_DELAY = timedelta(seconds=1)

UsageLevel = Literal["ok", "warning", "auto_stop"]

Scheduler = Callable[[float, Callable[[], None]], asyncio.TimerHandle]


@dataclass(frozen=True)
class UsageLimitState:
    is_paused: bool = False
    paused_at: datetime | None = None
    resume_at: datetime | None = None
    triggered_by: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "is_paused": self.is_paused,
            "paused_at": self.paused_at.isoformat() if self.paused_at else None,
            "resume_at": self.resume_at.isoformat() if self.resume_at else None,
            "triggered_by": self.triggered_by,
        }


def _loop_call_later(delay: float, callback: Callable[[], None]) -> asyncio.TimerHandle:
    return asyncio.get_running_loop().call_later(delay, callback)


class UsageLimitController:
    """Authoritative pause gate for the task queue.

    Only this class mutates :class:`UsageLimitState`. ``is_paused`` false
    always means ``resume_at`` is None.

    Args:
        broadcaster: Receives a ``usage-limit`` event on every state change
        clock: Source of the current time (timezone-aware)
        resume_buffer: Seconds added to ``resume_at`` before auto-resume
        thresholds: ``{"warning": pct, "auto_stop": pct}`` for ``evaluate_usage``
        scheduler: ``(delay, callback) -> handle``; defaults to the running loop's ``call_later``
    """

    def __init__(
        self,
        broadcaster: Broadcaster | None = None,
        clock: Callable[[], datetime] = local_now,
        resume_buffer: float | None = None,
        thresholds: dict[str, int] | None = None,
        scheduler: Scheduler | None = None,
    ):
        self.broadcaster = broadcaster
        self.clock = clock
        self.resume_buffer = RESUME_BUFFER_SECONDS if resume_buffer is None else resume_buffer
        self.thresholds = dict(thresholds or DEFAULT_USAGE_THRESHOLDS)
        self._scheduler = scheduler or _loop_call_later
        self._state = UsageLimitState()
        self._timer: asyncio.TimerHandle | None = None

    @property
    def state(self) -> UsageLimitState:
        return self._state

    @property
    def is_paused(self) -> bool:
        return self._state.is_paused

    @property
    def has_pending_resume(self) -> bool:
        return self._timer is not None

    def _set_state(self, state: UsageLimitState) -> None:
        self._state = state
        if self.broadcaster is not None:
            self.broadcaster.publish("usage-limit", **state.to_dict())

    def _cancel_timer(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def _schedule_resume(self, resume_at: datetime) -> None:
        self._cancel_timer()
        delay = (resume_at - self.clock()).total_seconds() + self.resume_buffer
        try:
            self._timer = self._scheduler(max(delay, 0.0), self._on_resume_timer)
        except RuntimeError:
            # No running loop; the pre-flight check clears an elapsed pause instead
            logger.warning("No event loop for auto-resume; pause clears on the next pre-flight check")
            return
        logger.info("Auto-resume scheduled in %.0fs (at %s)", delay, resume_at.isoformat())

    def _on_resume_timer(self) -> None:
        self._timer = None
        logger.info("Usage limit reset time reached; resuming")
        self.clear()

    def on_usage_limit_detected(self, reset_at: datetime | None = None, triggered_by: str | None = None) -> None:
        """Pause, or extend an existing pause.

        An existing wait is never shortened: while paused with a known
        ``resume_at``, only a later reset time replaces it, and a signal with no
        reset time leaves it alone. A known reset time does replace an
        indefinite pause.
        """
        now = self.clock()
        if reset_at is not None and reset_at <= now:
            reset_at = now + MIN_RESUME_DELAY

        current = self._state
        if current.is_paused:
            if reset_at is None or (current.resume_at is not None and reset_at <= current.resume_at):
                logger.debug("Usage limit already paused until %s; keeping it", current.resume_at)
                return
            logger.info("Extending usage-limit pause to %s", reset_at.isoformat())
            self._set_state(replace(current, resume_at=reset_at, triggered_by=triggered_by or current.triggered_by))
            self._schedule_resume(reset_at)
            return

        logger.info(
            "Usage limit detected%s; pausing until %s",
            f" by {triggered_by}" if triggered_by else "",
            reset_at.isoformat() if reset_at else "manual clear",
        )
        self._set_state(UsageLimitState(is_paused=True, paused_at=now, resume_at=reset_at, triggered_by=triggered_by))
        if reset_at is not None:
            self._schedule_resume(reset_at)

    def clear(self) -> None:
        """Unpause and cancel any pending auto-resume."""
        self._cancel_timer()
        was_paused = self._state.is_paused
        self._set_state(UsageLimitState())
        if was_paused:
            logger.info("Usage-limit pause cleared")

    def check_and_clear_expired(self) -> bool:
        """Clear a pause whose resume time has passed; return whether still paused."""
        state = self._state
        if state.is_paused and state.resume_at is not None and self.clock() >= state.resume_at:
            logger.info("Usage-limit pause expired at %s; clearing", state.resume_at.isoformat())
            self.clear()
        return self._state.is_paused

    def evaluate_usage(self, percentage: float | None, triggered_by: str | None = None) -> UsageLevel:
        """Classify a utilization percentage; the auto-stop level pauses with no reset time."""
        if percentage is None:
            return "ok"
        if percentage >= self.thresholds["auto_stop"]:
            if not self.is_paused:
                logger.warning("Usage at %.0f%%, at or above auto-stop threshold; pausing", percentage)
            self.on_usage_limit_detected(None, triggered_by=triggered_by)
            return "auto_stop"
        if percentage >= self.thresholds["warning"]:
            return "warning"
        return "ok"
