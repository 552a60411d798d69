"""Crash-safe record of spawned agent processes.

Each live agent is written to a JSON-lines pidfile guarded by a file lock.
On startup the server reaps entries left behind by a crashed run; on shutdown
it terminates whatever it still owns. ``AgentProcess.kill`` covers the normal
path; this module is for the processes nobody is waiting on any more.
"""

from __future__ import annotations

import atexit
import json
import logging
import os
import signal
import tempfile
import time
from dataclasses import asdict, dataclass
from pathlib import Path

from filelock import FileLock

logger = logging.getLogger(__name__)

STALE_AFTER_SECONDS = 6 * 3600.0


def default_pidfile() -> Path:
    env_path = os.environ.get("AGENTSHIFT_PIDFILE")
    if env_path:
        return Path(env_path)
    return Path(tempfile.gettempdir()) / "agentshift_processes.pid"


def pid_alive(pid: int) -> bool:
    """True if ``pid`` exists and, where /proc is available, is not a zombie."""
    try:
        os.kill(pid, 0)
    except (ProcessLookupError, PermissionError, OSError):
        return False
    try:
        with open(f"/proc/{pid}/stat", encoding="utf-8") as f:
            # State is the first field after the parenthesised command name
            return f.read().rsplit(")", 1)[1].split()[0] != "Z"
    except (OSError, IndexError):
        return True


@dataclass(frozen=True)
class TrackedAgent:
    """One agent process as recorded in the pidfile."""

    pid: int
    started_at: float
    description: str = ""
    pgid: int | None = None

    @classmethod
    def from_line(cls, line: str) -> TrackedAgent:
        data = json.loads(line)
        return cls(
            pid=int(data["pid"]),
            started_at=float(data["started_at"]),
            description=str(data.get("description", "")),
            pgid=data.get("pgid"),
        )

    def to_line(self) -> str:
        return json.dumps(asdict(self))


class ProcessRegistry:
    """Agent processes this server started, mirrored to a locked pidfile.

    Args:
        pidfile: Where entries are persisted; ``AGENTSHIFT_PIDFILE`` or the temp dir by default
        stale_after: Age in seconds after which ``cleanup_stale`` kills a leftover entry
    """

    def __init__(self, pidfile: Path | None = None, stale_after: float = STALE_AFTER_SECONDS):
        self.pidfile = pidfile or default_pidfile()
        self.stale_after = stale_after
        self.pidfile.parent.mkdir(parents=True, exist_ok=True)
        self._lock = FileLock(str(self.pidfile) + ".lock", timeout=10)
        self._owned: dict[int, TrackedAgent] = {}
        self._atexit_hooked = False

    def register(self, pid: int, description: str = "") -> TrackedAgent:
        pgid = None
        if os.name != "nt":
            try:
                pgid = os.getpgid(pid)
            except OSError:
                pass
        agent = TrackedAgent(pid=pid, started_at=time.time(), description=description, pgid=pgid)
        self._owned[pid] = agent
        with self._lock:
            self._save([*self._load(), agent])
        if not self._atexit_hooked:
            atexit.register(self.terminate_all)
            self._atexit_hooked = True
        logger.debug("Tracking %s (pid %s)", description or "agent", pid)
        return agent

    def unregister(self, pid: int) -> None:
        self._owned.pop(pid, None)
        with self._lock:
            self._save([a for a in self._load() if a.pid != pid])

    def tracked_pids(self) -> list[int]:
        return list(self._owned)

    def terminate(self, pid: int, grace: float = 2.0) -> bool:
        """SIGTERM, then SIGKILL if still alive after ``grace`` seconds.

        Returns:
            True once the process is gone
        """
        agent = self._owned.get(pid)
        pgid = agent.pgid if agent else None

        if not self._send(pid, pgid, signal.SIGTERM):
            self.unregister(pid)
            return True
        deadline = time.monotonic() + grace
        while time.monotonic() < deadline:
            if not pid_alive(pid):
                self.unregister(pid)
                return True
            time.sleep(0.1)

        if self._send(pid, pgid, getattr(signal, "SIGKILL", signal.SIGTERM)):
            time.sleep(0.2)
        if pid_alive(pid):
            logger.warning("Agent process %s survived SIGKILL", pid)
            return False
        self.unregister(pid)
        return True

    def terminate_all(self) -> list[int]:
        """Terminate every owned process; returns the pids that would not die."""
        return [pid for pid in list(self._owned) if not self.terminate(pid)]

    def cleanup_stale(self) -> list[int]:
        """Drop dead pidfile entries and kill ones older than ``stale_after``.

        Returns:
            The pids that were killed
        """
        killed = []
        now = time.time()
        with self._lock:
            keep = []
            for agent in self._load():
                if not pid_alive(agent.pid):
                    continue
                if now - agent.started_at > self.stale_after and self._reap(agent):
                    killed.append(agent.pid)
                else:
                    keep.append(agent)
            self._save(keep)
        if killed:
            logger.info("Reaped %d stale agent process(es): %s", len(killed), killed)
        return killed

    def _reap(self, agent: TrackedAgent) -> bool:
        # Called with the lock held, so the pidfile is rewritten by the caller
        self._send(agent.pid, agent.pgid, signal.SIGTERM)
        time.sleep(0.2)
        if pid_alive(agent.pid):
            self._send(agent.pid, agent.pgid, getattr(signal, "SIGKILL", signal.SIGTERM))
            time.sleep(0.2)
        return not pid_alive(agent.pid)

    @staticmethod
    def _send(pid: int, pgid: int | None, sig: int) -> bool:
        """Signal the process group when known; False if the process is already gone."""
        try:
            # Never signal our own group, only agents spawned into a session of their own
            if os.name != "nt" and pgid and pgid != os.getpgrp():
                os.killpg(pgid, sig)
            else:
                os.kill(pid, sig)
        except (ProcessLookupError, PermissionError, OSError):
            return False
        return True

    def _load(self) -> list[TrackedAgent]:
        if not self.pidfile.exists():
            return []
        try:
            lines = self.pidfile.read_text(encoding="utf-8").splitlines()
        except OSError as e:
            logger.warning("Could not read pidfile %s: %s", self.pidfile, e)
            return []
        agents = []
        for line in lines:
            if not line.strip():
                continue
            try:
                agents.append(TrackedAgent.from_line(line))
            except (ValueError, KeyError, TypeError):
                logger.warning("Skipping malformed pidfile entry: %.80s", line)
        return agents

    def _save(self, agents: list[TrackedAgent]) -> None:
        try:
            self.pidfile.write_text("".join(a.to_line() + "\n" for a in agents), encoding="utf-8")
        except OSError as e:
            logger.warning("Could not write pidfile %s: %s", self.pidfile, e)
