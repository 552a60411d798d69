"""Liveness endpoint."""

from fastapi import APIRouter

from agentshift.server import __version__
from agentshift.server.api.schemas import HealthResponse
from agentshift.server.state import get_chat_manager, get_task_manager, get_uptime, get_usage_limit_controller

router = APIRouter()


@router.get("/health", response_model=HealthResponse)
async def health_check() -> HealthResponse:
    """Report uptime, whether agent work is paused, and how much is in flight."""
    paused = get_usage_limit_controller().is_paused
    return HealthResponse(
        status="paused" if paused else "healthy",
        version=__version__,
        uptime_seconds=get_uptime(),
        active_chats=len(get_chat_manager().active_session_ids()),
        running_tasks=get_task_manager().running_count(),
    )
