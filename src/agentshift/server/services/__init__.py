"""Services layer for the agentshift server."""

from .broadcaster import BroadcastEvent, Broadcaster
from .chat_session_manager import (
    ActiveSession,
    ChatSessionManager,
    ChatTurnResult,
)
from .task_process_manager import (
    TaskProcessManager,
    TaskRecord,
    TaskState,
)
from .usage_limit_controller import UsageLimitController, UsageLimitState

__all__ = [
    # Broadcast channel
    "BroadcastEvent",
    "Broadcaster",
    # Chat sessions
    "ActiveSession",
    "ChatSessionManager",
    "ChatTurnResult",
    # Tasks
    "TaskProcessManager",
    "TaskRecord",
    "TaskState",
    # Usage limits
    "UsageLimitController",
    "UsageLimitState",
]
