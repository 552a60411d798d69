"""Agent process launching and the uniform AgentProcess handle."""

from __future__ import annotations

import asyncio
import logging
import os
import signal
import subprocess
from pathlib import Path
from typing import Mapping, Sequence

from agentshift.util.process_registry import ProcessRegistry

from .types import ExitResult, SpawnError

logger = logging.getLogger(__name__)


def _kill_process_tree(process: asyncio.subprocess.Process) -> None:
    """Kill a process along with its entire process group."""
    if process.returncode is not None:
        return

    pid = process.pid

    if os.name == "nt":
        try:
            subprocess.Popen(
                ["taskkill", "/F", "/T", "/PID", str(pid)],
                stdout=subprocess.DEVNULL,
                stderr=subprocess.DEVNULL,
            )
            return
        except OSError:
            pass
        try:
            process.kill()
        except ProcessLookupError:
            pass
        return

    try:
        pgid = os.getpgid(pid)
        if pgid == pid:
            os.killpg(pgid, signal.SIGKILL)
            return
    except (ProcessLookupError, PermissionError, OSError):
        pass

    try:
        process.kill()
    except ProcessLookupError:
        pass


class AgentProcess:
    """Owning handle to one running agent process.

    ``wait()`` resolves exactly once, whichever of the exit or error paths
    fires first; later signals are ignored. ``kill()`` is fire-and-forget and
    the resulting exit is what resolves ``wait()``.
    """

    def __init__(
        self,
        process: asyncio.subprocess.Process,
        description: str = "",
        registry: ProcessRegistry | None = None,
    ):
        self._process = process
        self.pid = process.pid
        self.stdout = process.stdout
        self.stderr = process.stderr
        self.description = description
        self.killed = False
        self._registry = registry
        self._exit: asyncio.Future[ExitResult] = asyncio.get_running_loop().create_future()
        self._watcher = asyncio.ensure_future(self._watch_exit())

    @property
    def resolved(self) -> bool:
        return self._exit.done()

    async def _watch_exit(self) -> None:
        try:
            returncode = await self._process.wait()
        except Exception as exc:
            self._on_error(exc)
        else:
            self._on_exit(returncode)

    def _on_exit(self, returncode: int | None) -> None:
        if returncode is None:
            result = ExitResult(exit_code=1)
        elif returncode < 0:
            result = ExitResult(exit_code=1, signal=-returncode)
        else:
            result = ExitResult(exit_code=returncode)
        self._resolve(result, "exit")

    def _on_error(self, exc: BaseException) -> None:
        logger.debug("[%s] process error, pid=%s: %s", self.description, self.pid, exc)
        self._resolve(ExitResult(exit_code=1), "error")

    def _resolve(self, result: ExitResult, source: str) -> None:
        if self._exit.done():
            return
        self._exit.set_result(result)
        if self._registry is not None:
            self._registry.unregister(self.pid)
        logger.debug(
            "[%s] wait() resolved via %s, code=%s, pid=%s",
            self.description,
            source,
            result.exit_code,
            self.pid,
        )

    async def wait(self) -> ExitResult:
        return await asyncio.shield(self._exit)

    def kill(self) -> None:
        if self._exit.done():
            return
        self.killed = True
        logger.debug("[%s] killing pid=%s", self.description, self.pid)
        _kill_process_tree(self._process)


async def spawn_agent_process(
    executable: str,
    args: Sequence[str],
    *,
    cwd: Path | str,
    env: Mapping[str, str],
    stdin_text: str | None = None,
    description: str = "",
    registry: ProcessRegistry | None = None,
) -> AgentProcess:
    """Launch an agent in its own process group.

    The prompt may be passed as ``stdin_text``; stdin is closed either way so
    the agent never blocks waiting for interactive input.

    Raises:
        SpawnError: If the OS fails to launch the executable
    """
    kwargs: dict = {}
    if os.name == "nt":
        kwargs["creationflags"] = subprocess.CREATE_NEW_PROCESS_GROUP
    else:
        kwargs["start_new_session"] = True

    try:
        process = await asyncio.create_subprocess_exec(
            executable,
            *args,
            cwd=str(cwd),
            env=dict(env),
            stdin=asyncio.subprocess.PIPE,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            **kwargs,
        )
    except OSError as e:
        raise SpawnError(f"Failed to launch {executable}: {e}") from e

    logger.debug("[%s] spawned pid=%s cwd=%s", description, process.pid, cwd)
    if registry is not None:
        registry.register(process.pid, description)

    agent_process = AgentProcess(process, description=description, registry=registry)

    if process.stdin is not None:
        try:
            if stdin_text is not None:
                process.stdin.write(stdin_text.encode("utf-8"))
                await process.stdin.drain()
            process.stdin.close()
        except (BrokenPipeError, ConnectionResetError) as e:
            logger.debug("[%s] stdin closed early: %s", description, e)

    return agent_process
