from __future__ import annotations

import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest


PROJECT_ROOT = Path(__file__).resolve().parents[1]
SRC_PATH = PROJECT_ROOT / "src"

# Force current worktree src to the front of sys.path so imports use this tree,
# not any installed copy.
SRC_STR = str(SRC_PATH)
sys.path = [SRC_STR] + [p for p in sys.path if p != SRC_STR]


@pytest.fixture(autouse=True)
def _isolate_state(tmp_path_factory, monkeypatch):
    """Keep config, pidfile and transcripts isolated per test."""
    base = tmp_path_factory.mktemp("agentshift")
    monkeypatch.setenv("AGENTSHIFT_CONFIG", str(base / "agentshift.conf"))
    monkeypatch.setenv("AGENTSHIFT_PIDFILE", str(base / "processes.pid"))
    monkeypatch.setenv("AGENTSHIFT_TRANSCRIPT_DIR", str(base / "transcripts"))
    monkeypatch.delenv("AGENTSHIFT_MAIN_PASSWORD", raising=False)
    monkeypatch.delenv("AGENTSHIFT_MOCK_AGENT", raising=False)

    # Prevent tests from opening real terminal windows.
    monkeypatch.setattr(
        "agentshift.util.terminal.TerminalLauncher.launch",
        lambda self, command, cwd=None: (False, "terminal disabled in tests"),
    )

    yield


class FakeClock:
    """Settable timezone-aware clock."""

    def __init__(self, start: datetime | None = None):
        self.now = start or datetime(2025, 3, 14, 10, 0, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


class FakeScheduler:
    """Records ``call_later`` requests so tests can fire them by hand."""

    def __init__(self, clock: FakeClock | None = None):
        self.clock = clock
        self.calls: list[FakeTimer] = []

    def __call__(self, delay, callback):
        timer = FakeTimer(delay, callback)
        self.calls.append(timer)
        return timer

    @property
    def pending(self) -> list["FakeTimer"]:
        return [t for t in self.calls if not t.cancelled and not t.fired]

    def advance(self, seconds: float) -> None:
        """Move the clock forward and fire every timer that came due."""
        if self.clock is not None:
            self.clock.advance(seconds)
        for timer in list(self.pending):
            timer.elapsed += seconds
            if timer.elapsed >= timer.delay:
                timer.fire()


class FakeTimer:
    def __init__(self, delay, callback):
        self.delay = delay
        self.callback = callback
        self.elapsed = 0.0
        self.cancelled = False
        self.fired = False

    def cancel(self):
        self.cancelled = True

    def fire(self):
        self.fired = True
        self.callback()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def scheduler(clock):
    return FakeScheduler(clock)


async def chunked(*chunks: bytes):
    """Async byte stream yielding the given chunks."""
    for chunk in chunks:
        yield chunk


class DictStore:
    """In-memory credential store."""

    def __init__(self, values=None):
        self.values = dict(values or {})

    def get(self, agent_id):
        return self.values.get(agent_id)
