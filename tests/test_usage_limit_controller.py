"""Tests for the usage-limit pause and auto-resume."""

import asyncio
from datetime import timedelta

import pytest

from agentshift.agents.types import local_now
from agentshift.server.services.broadcaster import Broadcaster
from agentshift.server.services.usage_limit_controller import UsageLimitController


def make_controller(clock, scheduler, **kwargs):
    return UsageLimitController(clock=clock, scheduler=scheduler, resume_buffer=5.0, **kwargs)


class TestPause:
    """Pausing and auto-resume."""

    def test_starts_unpaused(self, clock, scheduler):
        controller = make_controller(clock, scheduler)
        assert controller.is_paused is False
        assert controller.state.resume_at is None

    def test_auto_resume_after_reset_plus_buffer(self, clock, scheduler):
        """A reset 60s out clears the pause once 65s have elapsed."""
        controller = make_controller(clock, scheduler)
        controller.on_usage_limit_detected(clock() + timedelta(seconds=60), triggered_by="task:1")

        assert controller.is_paused is True
        assert controller.state.paused_at == clock()
        assert scheduler.calls[0].delay == pytest.approx(65.0)

        scheduler.advance(64)
        assert controller.is_paused is True
        scheduler.advance(1)
        assert controller.is_paused is False
        assert controller.state.resume_at is None
        assert controller.has_pending_resume is False

    def test_unknown_reset_waits_for_manual_clear(self, clock, scheduler):
        controller = make_controller(clock, scheduler)
        controller.on_usage_limit_detected(None)
        assert controller.is_paused is True
        assert controller.state.resume_at is None
        assert scheduler.calls == []

        controller.clear()
        assert controller.is_paused is False

    def test_later_reset_extends_wait(self, clock, scheduler):
        controller = make_controller(clock, scheduler)
        first = clock() + timedelta(seconds=60)
        later = clock() + timedelta(seconds=600)
        controller.on_usage_limit_detected(first)
        controller.on_usage_limit_detected(later)

        assert controller.state.resume_at == later
        assert scheduler.calls[0].cancelled is True
        assert scheduler.calls[1].delay == pytest.approx(605.0)

    def test_earlier_reset_never_shortens_wait(self, clock, scheduler):
        controller = make_controller(clock, scheduler)
        later = clock() + timedelta(seconds=600)
        controller.on_usage_limit_detected(later)
        controller.on_usage_limit_detected(clock() + timedelta(seconds=60))

        assert controller.state.resume_at == later
        assert len(scheduler.pending) == 1

    def test_unknown_reset_keeps_known_wait(self, clock, scheduler):
        controller = make_controller(clock, scheduler)
        known = clock() + timedelta(seconds=60)
        controller.on_usage_limit_detected(known)
        controller.on_usage_limit_detected(None)
        assert controller.state.resume_at == known
        assert len(scheduler.pending) == 1

    def test_known_reset_replaces_indefinite_pause(self, clock, scheduler):
        controller = make_controller(clock, scheduler)
        controller.on_usage_limit_detected(None, triggered_by="auto-stop")
        reset = clock() + timedelta(seconds=30)
        controller.on_usage_limit_detected(reset, triggered_by="task:2")

        assert controller.state.resume_at == reset
        assert controller.state.triggered_by == "task:2"
        assert len(scheduler.pending) == 1

    def test_past_reset_resumes_shortly(self, clock, scheduler):
        controller = make_controller(clock, scheduler)
        controller.on_usage_limit_detected(clock() - timedelta(minutes=5))
        assert controller.state.resume_at == clock() + timedelta(seconds=1)
        assert scheduler.calls[0].delay == pytest.approx(6.0)

    def test_clear_cancels_pending_timer(self, clock, scheduler):
        controller = make_controller(clock, scheduler)
        controller.on_usage_limit_detected(clock() + timedelta(seconds=60))
        controller.clear()
        assert scheduler.calls[0].cancelled is True
        assert controller.has_pending_resume is False

    def test_check_and_clear_expired(self, clock, scheduler):
        controller = make_controller(clock, scheduler)
        controller.on_usage_limit_detected(clock() + timedelta(seconds=60))
        assert controller.check_and_clear_expired() is True
        clock.advance(60)
        assert controller.check_and_clear_expired() is False

    def test_state_changes_are_broadcast(self, clock, scheduler):
        broadcaster = Broadcaster()
        seen = []
        broadcaster.add_listener(seen.append)
        controller = make_controller(clock, scheduler, broadcaster=broadcaster)

        controller.on_usage_limit_detected(clock() + timedelta(seconds=60), triggered_by="chat:s1")
        controller.clear()

        assert [(e.type, e.data["is_paused"]) for e in seen] == [("usage-limit", True), ("usage-limit", False)]
        assert seen[0].data["triggered_by"] == "chat:s1"


class TestEventLoopScheduling:
    @pytest.mark.asyncio
    async def test_uses_running_loop_by_default(self):
        controller = UsageLimitController(resume_buffer=0.0)

        controller.on_usage_limit_detected(local_now() + timedelta(milliseconds=50))
        assert controller.has_pending_resume is True
        await asyncio.sleep(1.2)
        assert controller.is_paused is False

    def test_without_loop_pause_stays_until_preflight(self, clock):
        controller = UsageLimitController(clock=clock, resume_buffer=5.0)
        controller.on_usage_limit_detected(clock() + timedelta(seconds=60))
        assert controller.is_paused is True
        assert controller.has_pending_resume is False
        clock.advance(61)
        assert controller.check_and_clear_expired() is False


class TestEvaluateUsage:
    """Warning and auto-stop thresholds."""

    def test_levels(self, clock, scheduler):
        controller = make_controller(clock, scheduler, thresholds={"warning": 80, "auto_stop": 92})
        assert controller.evaluate_usage(None) == "ok"
        assert controller.evaluate_usage(50) == "ok"
        assert controller.evaluate_usage(80) == "warning"
        assert controller.is_paused is False

    def test_auto_stop_pauses_indefinitely(self, clock, scheduler):
        controller = make_controller(clock, scheduler)
        assert controller.evaluate_usage(95.5, triggered_by="claude-code") == "auto_stop"
        assert controller.is_paused is True
        assert controller.state.resume_at is None
        assert controller.state.triggered_by == "claude-code"
