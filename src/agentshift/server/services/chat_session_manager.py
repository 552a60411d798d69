"""Chat session manager: one in-flight agent invocation per chat session.

A turn moves ``idle -> awaiting-response -> streaming`` and ends in
``complete``, ``error`` or ``cancelled``. Assistant text is appended to the
transcript as it streams and every step is published on the broadcaster.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Literal

from agentshift.agents.adapters import AgentAdapter
from agentshift.agents.process import AgentProcess
from agentshift.agents.registry import AgentRegistry
from agentshift.agents.types import AgentOutputEvent, ChatOptions, SessionBusyError
from agentshift.util.transcript_log import TranscriptStore

from .broadcaster import Broadcaster
from .usage_limit_controller import UsageLimitController

logger = logging.getLogger(__name__)

ChatState = Literal["awaiting-response", "streaming", "complete", "error", "cancelled"]

CANCELLED_MARKER = "[Cancelled]"


def with_marker(content: str, marker: str) -> str:
    """Append a terminal-state marker, separated by a blank line when there is content."""
    return f"{content}\n\n{marker}" if content else marker


@dataclass
class ActiveSession:
    """The in-flight turn of one chat session."""

    session_id: str
    state: ChatState = "awaiting-response"
    process: AgentProcess | None = None
    user_message_id: str | None = None
    message_id: str | None = None
    streaming_content: str = ""
    conversation_id: str | None = None
    cancelled: bool = False
    tool_calls: list[dict[str, str]] = field(default_factory=list)
    stderr_errors: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class ChatTurnResult:
    session_id: str
    status: ChatState
    content: str
    conversation_id: str | None = None
    error: str | None = None
    exit_code: int | None = None


class ChatSessionManager:
    """Runs chat turns against agents that support chat.

    Args:
        registry: Where adapters are looked up; ``agent_id`` None means its default
        transcripts: Persists user and assistant messages and conversation ids
        broadcaster: Receives ``stream-start``, ``chunk``, ``activity``,
            ``complete``, ``error`` and ``cancelled`` events
        controller: Notified when a turn hits a usage limit
    """

    def __init__(
        self,
        registry: AgentRegistry,
        transcripts: TranscriptStore,
        broadcaster: Broadcaster,
        controller: UsageLimitController | None = None,
    ):
        self.registry = registry
        self.transcripts = transcripts
        self.broadcaster = broadcaster
        self.controller = controller
        self._active: dict[str, ActiveSession] = {}
        self._tasks: set[asyncio.Task] = set()

    def is_session_active(self, session_id: str) -> bool:
        return session_id in self._active

    def active_session_ids(self) -> list[str]:
        return list(self._active)

    def get_streaming_content(self, session_id: str) -> str | None:
        active = self._active.get(session_id)
        return active.streaming_content if active else None

    def _reserve(self, session_id: str) -> ActiveSession:
        # Synchronous so no other turn can slip in before the session is marked busy
        if session_id in self._active:
            raise SessionBusyError(session_id)
        active = ActiveSession(session_id=session_id)
        self._active[session_id] = active
        return active

    def _release(self, active: ActiveSession) -> None:
        # A cancelled turn may already have been replaced by a newer one
        if self._active.get(active.session_id) is active:
            del self._active[active.session_id]

    async def send_message(
        self,
        session_id: str,
        message: str,
        working_directory: Path | str,
        agent_id: str | None = None,
        model: str | None = None,
    ) -> ChatTurnResult:
        """Run one chat turn to completion.

        Raises:
            SessionBusyError: If the session already has an active turn; nothing is spawned
        """
        active = self._reserve(session_id)
        return await self._run_turn(active, message, working_directory, agent_id, model)

    def start_message(
        self,
        session_id: str,
        message: str,
        working_directory: Path | str,
        agent_id: str | None = None,
        model: str | None = None,
    ) -> asyncio.Task[ChatTurnResult]:
        """Reserve the session now and run the turn in the background.

        Raises:
            SessionBusyError: If the session already has an active turn
        """
        active = self._reserve(session_id)
        task = asyncio.ensure_future(self._run_turn(active, message, working_directory, agent_id, model))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    def cancel(self, session_id: str) -> bool:
        """Kill the active turn and mark the transcript; returns False if nothing was running.

        The session is torn down immediately, without waiting for the process to exit.
        """
        active = self._active.get(session_id)
        if active is None:
            return False

        active.cancelled = True
        active.state = "cancelled"
        if active.process is not None:
            active.process.kill()
        if active.message_id is not None:
            self.transcripts.update_message(
                session_id, active.message_id, with_marker(active.streaming_content, CANCELLED_MARKER)
            )
        elif active.user_message_id is not None:
            # Nothing streamed yet; the marker is the whole reply
            active.message_id = self.transcripts.add_message(session_id, "assistant", CANCELLED_MARKER)
        self._release(active)
        logger.info("Chat %s cancelled", session_id)
        self.broadcaster.publish("cancelled", session_id)
        return True

    async def interrupt_and_resend(
        self,
        session_id: str,
        message: str,
        working_directory: Path | str,
        agent_id: str | None = None,
        model: str | None = None,
    ) -> ChatTurnResult:
        """Cancel whatever is running, then send ``message`` in the same conversation."""
        self.cancel(session_id)
        return await self.send_message(session_id, message, working_directory, agent_id, model)

    def start_interrupt_and_resend(
        self,
        session_id: str,
        message: str,
        working_directory: Path | str,
        agent_id: str | None = None,
        model: str | None = None,
    ) -> asyncio.Task[ChatTurnResult]:
        self.cancel(session_id)
        return self.start_message(session_id, message, working_directory, agent_id, model)

    def _remember_conversation(self, active: ActiveSession, conversation_id: str | None) -> None:
        if conversation_id and conversation_id != active.conversation_id:
            active.conversation_id = conversation_id
            self.transcripts.set_conversation_id(active.session_id, conversation_id)

    def _fail(self, active: ActiveSession, error: str, exit_code: int | None = None) -> ChatTurnResult:
        active.state = "error"
        content = with_marker(active.streaming_content, f"[Error: {error}]")
        if active.message_id is None:
            active.message_id = self.transcripts.add_message(active.session_id, "assistant", content)
        else:
            self.transcripts.update_message(active.session_id, active.message_id, content)
        logger.warning("Chat %s failed: %s", active.session_id, error)
        self.broadcaster.publish("error", active.session_id, error=error)
        return ChatTurnResult(
            active.session_id, "error", content, active.conversation_id, error=error, exit_code=exit_code
        )

    def _cancelled_result(self, active: ActiveSession) -> ChatTurnResult:
        return ChatTurnResult(
            active.session_id,
            "cancelled",
            with_marker(active.streaming_content, CANCELLED_MARKER),
            active.conversation_id,
        )

    async def _drain_stderr(self, adapter: AgentAdapter, active: ActiveSession) -> None:
        async for event in adapter.parse_stderr(active.process.stderr):
            if event.kind == "usage-limit":
                self._usage_limited(active, event)
            elif event.kind == "error":
                active.stderr_errors.append(event.message)
            logger.debug("[%s] stderr %s: %s", active.session_id, event.kind, event.message)

    def _usage_limited(self, active: ActiveSession, event: AgentOutputEvent) -> None:
        if self.controller is not None:
            self.controller.on_usage_limit_detected(event.reset_at, triggered_by=f"chat:{active.session_id}")

    def _handle_event(self, active: ActiveSession, event: AgentOutputEvent) -> str | None:
        """Apply one event; returns an error message when the turn must end in error."""
        sid = active.session_id
        if active.state == "awaiting-response":
            active.state = "streaming"
            self.broadcaster.publish("stream-start", sid)
        self._remember_conversation(active, event.conversation_id)

        if event.kind == "log":
            active.streaming_content += event.message
            self.transcripts.update_message(sid, active.message_id, active.streaming_content)
            self.broadcaster.publish("chunk", sid, content=event.message, full_content=active.streaming_content)
        elif event.kind == "tool-activity":
            active.tool_calls.append({"tool": event.tool or "", "target": event.target or ""})
            self.transcripts.update_message(sid, active.message_id, active.streaming_content, list(active.tool_calls))
            self.broadcaster.publish("activity", sid, tool=event.tool, target=event.target, message=event.message)
        elif event.kind == "complete":
            active.state = "complete"
            self.transcripts.update_message(sid, active.message_id, active.streaming_content)
        elif event.kind == "usage-limit":
            self._usage_limited(active, event)
            return f"Usage limit reached: {event.message}"
        elif event.kind == "rate-limit":
            logger.warning("Chat %s rate limited: %s", sid, event.message)
            self.broadcaster.publish("activity", sid, tool=None, target=None, message=event.message)
        elif event.kind == "error":
            return event.message
        return None

    async def _run_turn(
        self,
        active: ActiveSession,
        message: str,
        working_directory: Path | str,
        agent_id: str | None,
        model: str | None,
    ) -> ChatTurnResult:
        sid = active.session_id
        stderr_task: asyncio.Task | None = None
        try:
            active.user_message_id = self.transcripts.add_message(sid, "user", message)
            if active.cancelled:
                # Cancelled before the turn got to run
                active.message_id = self.transcripts.add_message(sid, "assistant", CANCELLED_MARKER)
                return self._cancelled_result(active)
            active.conversation_id = self.transcripts.get_conversation_id(sid)

            try:
                adapter = self.registry.require(agent_id)
                await adapter.get_executable_path()
                handle = await adapter.chat(
                    ChatOptions(
                        message=message,
                        working_directory=working_directory,
                        conversation_id=active.conversation_id,
                        model=model,
                    )
                )
            except Exception as e:
                if active.cancelled:
                    return self._cancelled_result(active)
                return self._fail(active, str(e))

            active.process = handle.process
            if active.cancelled:
                # Cancelled while the process was starting
                handle.process.kill()
                return self._cancelled_result(active)

            active.message_id = self.transcripts.add_message(sid, "assistant", "")
            stderr_task = asyncio.ensure_future(self._drain_stderr(adapter, active))

            error: str | None = None
            try:
                async for event in handle.events:
                    if active.cancelled:
                        break
                    error = self._handle_event(active, event)
                    if error is not None:
                        break
            except Exception as e:
                logger.exception("Chat %s stream failed", sid)
                error = str(e)

            if active.cancelled:
                return self._cancelled_result(active)
            if error is not None:
                handle.process.kill()
                return self._fail(active, error)

            result = await handle.process.wait()
            await stderr_task
            if active.cancelled:
                return self._cancelled_result(active)

            implicit = active.state != "complete"
            if implicit:
                # Exited without a completion event; keep whatever arrived
                self.transcripts.update_message(sid, active.message_id, active.streaming_content)
                if result.exit_code != 0:
                    detail = active.stderr_errors[-1] if active.stderr_errors else None
                    self.broadcaster.publish(
                        "error",
                        sid,
                        error=detail or f"Agent exited with code {result.exit_code}",
                        soft=True,
                    )
            active.state = "complete"
            self.broadcaster.publish(
                "complete",
                sid,
                content=active.streaming_content,
                conversation_id=active.conversation_id,
                implicit=implicit,
                exit_code=result.exit_code,
            )
            return ChatTurnResult(
                sid, "complete", active.streaming_content, active.conversation_id, exit_code=result.exit_code
            )
        finally:
            if stderr_task is not None and not stderr_task.done():
                stderr_task.cancel()
            self._release(active)
