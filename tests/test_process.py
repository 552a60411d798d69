"""Tests for agent process launching and the AgentProcess handle."""

import asyncio
import os
import sys

import pytest

from agentshift.agents.process import spawn_agent_process
from agentshift.agents.types import ExitResult, SpawnError
from agentshift.util.process_registry import ProcessRegistry


async def spawn_python(code, tmp_path, **kwargs):
    return await spawn_agent_process(
        sys.executable,
        ["-c", code],
        cwd=tmp_path,
        env=dict(os.environ),
        description="test",
        **kwargs,
    )


class TestSpawnAgentProcess:
    """Tests for spawn_agent_process."""

    @pytest.mark.asyncio
    async def test_exit_code_and_stdout(self, tmp_path):
        proc = await spawn_python("print('hi'); raise SystemExit(3)", tmp_path)
        out = await proc.stdout.read()
        result = await proc.wait()
        assert out.strip() == b"hi"
        assert result == ExitResult(exit_code=3)

    @pytest.mark.asyncio
    async def test_prompt_via_stdin(self, tmp_path):
        proc = await spawn_python("import sys; print(sys.stdin.read().upper())", tmp_path, stdin_text="hello")
        out = await proc.stdout.read()
        await proc.wait()
        assert out.strip() == b"HELLO"

    @pytest.mark.asyncio
    async def test_stdin_closed_without_prompt(self, tmp_path):
        """The agent sees EOF instead of blocking on interactive input."""
        proc = await spawn_python("import sys; print(repr(sys.stdin.read()))", tmp_path)
        out = await asyncio.wait_for(proc.stdout.read(), timeout=10)
        await proc.wait()
        assert out.strip() == b"''"

    @pytest.mark.asyncio
    async def test_missing_executable_raises_spawn_error(self, tmp_path):
        with pytest.raises(SpawnError):
            await spawn_agent_process(
                str(tmp_path / "no-such-agent"), [], cwd=tmp_path, env={}, description="missing"
            )

    @pytest.mark.asyncio
    async def test_registry_tracks_until_exit(self, tmp_path):
        registry = ProcessRegistry(pidfile=tmp_path / "pids")
        proc = await spawn_python("import time; time.sleep(0.2)", tmp_path, registry=registry)
        assert proc.pid in registry.tracked_pids()
        await proc.wait()
        assert proc.pid not in registry.tracked_pids()


class TestAgentProcess:
    """wait() resolution and kill()."""

    @pytest.mark.asyncio
    async def test_kill_resolves_wait(self, tmp_path):
        proc = await spawn_python("import time; time.sleep(30)", tmp_path)
        proc.kill()
        result = await asyncio.wait_for(proc.wait(), timeout=10)
        assert proc.killed is True
        assert result.exit_code != 0

    @pytest.mark.asyncio
    async def test_wait_resolves_exactly_once(self, tmp_path):
        """Later exit or error signals do not change the first result."""
        proc = await spawn_python("raise SystemExit(0)", tmp_path)
        first = await proc.wait()
        proc._on_error(OSError("late error"))
        proc._on_exit(7)
        assert await proc.wait() == first == ExitResult(exit_code=0)

    @pytest.mark.asyncio
    async def test_error_before_exit_wins(self, tmp_path):
        proc = await spawn_python("import time; time.sleep(30)", tmp_path)
        proc._on_error(OSError("pipe broke"))
        proc._on_exit(0)
        assert proc.resolved is True
        assert await proc.wait() == ExitResult(exit_code=1)
        proc._process.kill()
        await proc._process.wait()

    @pytest.mark.asyncio
    async def test_signal_exit_maps_to_code_one(self, tmp_path):
        proc = await spawn_python("import time; time.sleep(30)", tmp_path)
        proc._on_exit(-9)
        result = await proc.wait()
        assert result == ExitResult(exit_code=1, signal=9)
        proc._process.kill()
        await proc._process.wait()

    @pytest.mark.asyncio
    async def test_kill_after_exit_is_noop(self, tmp_path):
        proc = await spawn_python("pass", tmp_path)
        await proc.wait()
        proc.kill()
        assert proc.killed is False
