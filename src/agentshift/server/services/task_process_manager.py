"""Task process manager: runs agent invocations for tasks and tracks their lifecycle."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable

from agentshift.agents.adapters import AgentAdapter
from agentshift.agents.process import AgentProcess
from agentshift.agents.registry import AgentRegistry
from agentshift.agents.types import (
    AgentOutputEvent,
    ExecutableNotFoundError,
    InvokeOptions,
    UsageLimitCheckResult,
    UsageLimitPausedError,
    local_now,
)
from agentshift.agents.work_analysis import IncompleteWork, detect_incomplete_work

from .broadcaster import Broadcaster
from .usage_limit_controller import UsageLimitController

logger = logging.getLogger(__name__)


class TaskState(str, Enum):
    """Task execution states."""

    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"
    TIMED_OUT = "timed_out"
    PAUSED = "paused"


@dataclass
class TaskRecord:
    """A running or finished task invocation."""

    task_id: str
    agent_id: str
    state: TaskState = TaskState.RUNNING
    started_at: datetime = field(default_factory=local_now)
    completed_at: datetime | None = None
    exit_code: int | None = None
    error: str | None = None
    auth_failed: bool = False
    rate_limited: bool = False
    reset_at: datetime | None = None
    output_log: list[AgentOutputEvent] = field(default_factory=list)
    incomplete_work: IncompleteWork | None = None

    # Internal
    _process: AgentProcess | None = field(default=None, repr=False)
    _runner: asyncio.Task | None = field(default=None, repr=False)
    _timeout: asyncio.TimerHandle | None = field(default=None, repr=False)

    @property
    def pid(self) -> int | None:
        return self._process.pid if self._process else None

    def to_dict(self) -> dict[str, Any]:
        return {
            "task_id": self.task_id,
            "agent_id": self.agent_id,
            "state": self.state.value,
            "pid": self.pid,
            "started_at": self.started_at.isoformat(),
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "exit_code": self.exit_code,
            "error": self.error,
            "auth_failed": self.auth_failed,
            "rate_limited": self.rate_limited,
            "reset_at": self.reset_at.isoformat() if self.reset_at else None,
        }


class TaskProcessManager:
    """Starts task invocations and follows each to a terminal state.

    Output is consumed as it arrives: stdout through the adapter's parser and
    stderr through the limit-aware stderr classifier. Usage limits pause the
    task and the whole queue through the controller.

    Args:
        registry: Where adapters are looked up
        controller: The queue pause gate
        broadcaster: Receives ``task-status`` and ``task-output`` events
        max_concurrent: How many tasks may run at once (advisory, see ``can_start_new``)
        max_duration_minutes: Kill tasks running longer than this; 0 disables
    """

    def __init__(
        self,
        registry: AgentRegistry,
        controller: UsageLimitController,
        broadcaster: Broadcaster,
        max_concurrent: int = 1,
        max_duration_minutes: int = 0,
        clock: Callable[[], datetime] = local_now,
    ):
        if max_concurrent < 1:
            raise ValueError("max_concurrent must be at least 1")
        self.registry = registry
        self.controller = controller
        self.broadcaster = broadcaster
        self.max_concurrent = max_concurrent
        self.max_duration_minutes = max_duration_minutes
        self.clock = clock
        self._tasks: dict[str, TaskRecord] = {}
        self._starting: dict[str, asyncio.Future[TaskRecord]] = {}

    # Capacity

    def running_count(self) -> int:
        return sum(1 for r in self._tasks.values() if r.state == TaskState.RUNNING)

    def can_start_new(self) -> bool:
        return self.running_count() < self.max_concurrent

    # Lookup

    def get(self, task_id: str) -> TaskRecord | None:
        return self._tasks.get(task_id)

    def get_all(self) -> list[TaskRecord]:
        return list(self._tasks.values())

    def get_running(self) -> list[TaskRecord]:
        return [r for r in self._tasks.values() if r.state == TaskState.RUNNING]

    def get_output_log(self, task_id: str) -> list[AgentOutputEvent]:
        record = self._tasks.get(task_id)
        return list(record.output_log) if record else []

    # Lifecycle

    async def preflight(self, agent_id: str | None = None) -> UsageLimitCheckResult:
        """Probe the agent's quota; a refusal pauses the queue."""
        adapter = self.registry.require(agent_id)
        result = await adapter.check_usage_limits()
        if not result.can_proceed:
            logger.info("Pre-flight refused for %s: %s", adapter.id, result.message)
            self.controller.on_usage_limit_detected(result.reset_at, triggered_by=f"preflight:{adapter.id}")
        return result

    async def start(self, task_id: str, options: InvokeOptions, agent_id: str | None = None) -> TaskRecord:
        """Start a task, or return its record if it is already running.

        A second call for a task id that is still starting waits for the first
        and gets the same record; only one process is ever spawned per id.

        Raises:
            UsageLimitPausedError: If the queue is paused
            AdapterNotFoundError: If ``agent_id`` is not registered
            ExecutableNotFoundError: If the agent CLI is not installed or not working
            SpawnError: If the OS refuses to launch the agent
        """
        pending = self._starting.get(task_id)
        if pending is not None:
            return await asyncio.shield(pending)

        existing = self._tasks.get(task_id)
        if existing is not None:
            if existing.state == TaskState.RUNNING:
                logger.debug("Task %s already running; returning existing record", task_id)
                return existing
            self.remove(task_id)

        if self.controller.check_and_clear_expired():
            raise UsageLimitPausedError(self.controller.state.resume_at)

        adapter = self.registry.require(agent_id)

        # Reserved before the first await so a concurrent start cannot spawn a second process
        starting: asyncio.Future[TaskRecord] = asyncio.get_running_loop().create_future()
        self._starting[task_id] = starting
        try:
            record = await self._launch(task_id, adapter, options)
        except asyncio.CancelledError:
            starting.cancel()
            raise
        except Exception as e:
            starting.set_exception(e)
            # Mark retrieved; only concurrent callers re-raise it
            starting.exception()
            raise
        else:
            starting.set_result(record)
            return record
        finally:
            del self._starting[task_id]

    async def _launch(self, task_id: str, adapter: AgentAdapter, options: InvokeOptions) -> TaskRecord:
        await adapter.get_executable_path()
        if not await adapter.is_available():
            raise ExecutableNotFoundError(f"Agent '{adapter.name}' is not available. Is it installed?")

        process = await adapter.invoke(options)
        record = TaskRecord(task_id=task_id, agent_id=adapter.id, started_at=self.clock(), _process=process)
        self._tasks[task_id] = record
        logger.info("Task %s started with %s (pid %s)", task_id, adapter.id, process.pid)
        self._publish_status(record)

        if self.max_duration_minutes > 0:
            record._timeout = asyncio.get_running_loop().call_later(
                self.max_duration_minutes * 60, self._on_timeout, task_id
            )
        record._runner = asyncio.ensure_future(self._run(record, adapter, process))
        return record

    async def wait(self, task_id: str) -> TaskRecord | None:
        """Wait until the task's output is drained and its process has exited."""
        record = self._tasks.get(task_id)
        if record is None:
            return None
        if record._runner is not None:
            await asyncio.shield(record._runner)
        return record

    def cancel(self, task_id: str) -> bool:
        record = self._tasks.get(task_id)
        if record is None or record.state != TaskState.RUNNING:
            return False
        self._clear_timeout(record)
        record.state = TaskState.CANCELLED
        if record._process is not None:
            record._process.kill()
        logger.info("Task %s cancelled", task_id)
        self._publish_status(record)
        return True

    def remove(self, task_id: str) -> bool:
        record = self._tasks.pop(task_id, None)
        if record is None:
            return False
        self._clear_timeout(record)
        return True

    def clear_all(self) -> None:
        """Kill every running task and forget all records."""
        for record in self._tasks.values():
            self._clear_timeout(record)
            if record.state == TaskState.RUNNING and record._process is not None:
                record._process.kill()
        self._tasks.clear()

    # Internals

    def _clear_timeout(self, record: TaskRecord) -> None:
        if record._timeout is not None:
            record._timeout.cancel()
            record._timeout = None

    def _on_timeout(self, task_id: str) -> None:
        record = self._tasks.get(task_id)
        if record is None or record.state != TaskState.RUNNING:
            return
        record._timeout = None
        logger.warning("Task %s exceeded %s minutes; killing", task_id, self.max_duration_minutes)
        if record._process is not None:
            record._process.kill()
        record.state = TaskState.TIMED_OUT
        record.error = f"Task exceeded maximum duration of {self.max_duration_minutes} minutes"
        self._publish_status(record)

    def _publish_status(self, record: TaskRecord) -> None:
        self.broadcaster.publish("task-status", record.task_id, **record.to_dict())

    def _handle_event(self, record: TaskRecord, adapter: AgentAdapter, event: AgentOutputEvent) -> None:
        record.output_log.append(event)
        self.broadcaster.publish("task-output", record.task_id, **event.to_dict())

        # Auth keywords are only trusted on error events; ordinary output may quote them
        if event.kind == "error" and adapter.detect_auth_error(event.message):
            logger.warning("Task %s failed authentication with %s", record.task_id, adapter.id)
            record.state = TaskState.FAILED
            record.auth_failed = True
            record.error = event.message
            self._publish_status(record)
        elif event.kind == "usage-limit":
            record.state = TaskState.PAUSED
            record.reset_at = event.reset_at
            self.controller.on_usage_limit_detected(event.reset_at, triggered_by=f"task:{record.task_id}")
            self._publish_status(record)
        elif event.kind == "rate-limit":
            logger.warning("Task %s rate limited: %s", record.task_id, event.message)
            record.state = TaskState.PAUSED
            record.rate_limited = True
            self._publish_status(record)

    async def _consume(self, record: TaskRecord, adapter: AgentAdapter, events) -> None:
        async for event in events:
            self._handle_event(record, adapter, event)

    async def _run(self, record: TaskRecord, adapter: AgentAdapter, process: AgentProcess) -> None:
        try:
            await asyncio.gather(
                self._consume(record, adapter, adapter.parse_output(process.stdout)),
                self._consume(record, adapter, adapter.parse_stderr(process.stderr)),
            )
            result = await process.wait()
        except Exception as e:
            logger.exception("Task %s output processing failed", record.task_id)
            process.kill()
            if record.state == TaskState.RUNNING:
                record.state = TaskState.FAILED
                record.error = str(e)
        else:
            record.exit_code = result.exit_code
            if record.state == TaskState.RUNNING:
                if result.exit_code == 0:
                    record.state = TaskState.COMPLETED
                    record.incomplete_work = detect_incomplete_work(record.output_log)
                else:
                    record.state = TaskState.FAILED
                    record.error = f"Process exited with code {result.exit_code}"
        finally:
            self._clear_timeout(record)

        record.completed_at = self.clock()
        logger.info("Task %s finished: %s", record.task_id, record.state.value)
        self._publish_status(record)
