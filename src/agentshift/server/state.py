"""Server state management."""

import time

from agentshift.agents.registry import AgentRegistry, build_registry
from agentshift.util.config_manager import ConfigManager
from agentshift.util.credentials import SecureCredentialStore
from agentshift.util.process_registry import ProcessRegistry
from agentshift.util.transcript_log import TranscriptLog

from .services import (
    Broadcaster,
    ChatSessionManager,
    TaskProcessManager,
    UsageLimitController,
)

# Track server start time for uptime calculation
_start_time: float = 0.0

# Singletons for shared state
_config_manager: ConfigManager | None = None
_credential_store: SecureCredentialStore | None = None
_process_registry: ProcessRegistry | None = None
_registry: AgentRegistry | None = None
_broadcaster: Broadcaster | None = None
_controller: UsageLimitController | None = None
_transcripts: TranscriptLog | None = None
_chat_manager: ChatSessionManager | None = None
_task_manager: TaskProcessManager | None = None


def init_start_time() -> None:
    """Initialize the server start time."""
    global _start_time
    _start_time = time.time()


def get_uptime() -> float:
    """Get server uptime in seconds."""
    if _start_time == 0.0:
        return 0.0
    return time.time() - _start_time


def get_config_manager() -> ConfigManager:
    global _config_manager
    if _config_manager is None:
        _config_manager = ConfigManager()
    return _config_manager


def get_credential_store() -> SecureCredentialStore:
    """Get the encrypted credential store; locked unless AGENTSHIFT_MAIN_PASSWORD is set."""
    global _credential_store
    if _credential_store is None:
        _credential_store = SecureCredentialStore(get_config_manager())
    return _credential_store


def get_process_registry() -> ProcessRegistry:
    global _process_registry
    if _process_registry is None:
        _process_registry = ProcessRegistry()
    return _process_registry


def get_registry() -> AgentRegistry:
    """Get the global AgentRegistry, built from the saved configuration."""
    global _registry
    if _registry is None:
        _registry = build_registry(
            config_manager=get_config_manager(),
            store=get_credential_store(),
            process_registry=get_process_registry(),
        )
    return _registry


def get_broadcaster() -> Broadcaster:
    global _broadcaster
    if _broadcaster is None:
        _broadcaster = Broadcaster()
    return _broadcaster


def get_usage_limit_controller() -> UsageLimitController:
    global _controller
    if _controller is None:
        _controller = UsageLimitController(
            broadcaster=get_broadcaster(),
            thresholds=get_config_manager().get_usage_thresholds(),
        )
    return _controller


def get_transcripts() -> TranscriptLog:
    global _transcripts
    if _transcripts is None:
        _transcripts = TranscriptLog()
    return _transcripts


def get_chat_manager() -> ChatSessionManager:
    global _chat_manager
    if _chat_manager is None:
        _chat_manager = ChatSessionManager(
            registry=get_registry(),
            transcripts=get_transcripts(),
            broadcaster=get_broadcaster(),
            controller=get_usage_limit_controller(),
        )
    return _chat_manager


def get_task_manager() -> TaskProcessManager:
    global _task_manager
    if _task_manager is None:
        config = get_config_manager()
        _task_manager = TaskProcessManager(
            registry=get_registry(),
            controller=get_usage_limit_controller(),
            broadcaster=get_broadcaster(),
            max_concurrent=config.get_max_concurrent_tasks(),
            max_duration_minutes=config.get_max_task_duration_minutes(),
        )
    return _task_manager


def reset_state() -> None:
    """Reset all global state (for testing)."""
    global _start_time, _config_manager, _credential_store, _process_registry, _registry, _broadcaster
    global _controller, _transcripts, _chat_manager, _task_manager
    if _controller is not None:
        _controller.clear()
    if _task_manager is not None:
        _task_manager.clear_all()
    _start_time = 0.0
    _config_manager = None
    _credential_store = None
    _process_registry = None
    _registry = None
    _broadcaster = None
    _controller = None
    _transcripts = None
    _chat_manager = None
    _task_manager = None


def shutdown_services() -> None:
    """Stop running agent processes on server shutdown."""
    if _chat_manager is not None:
        for session_id in _chat_manager.active_session_ids():
            _chat_manager.cancel(session_id)
    if _task_manager is not None:
        _task_manager.clear_all()
    if _process_registry is not None:
        _process_registry.terminate_all()
