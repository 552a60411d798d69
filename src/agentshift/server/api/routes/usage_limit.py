"""Usage-limit pause endpoints."""

from fastapi import APIRouter

from agentshift.server.api.schemas import UsageLimitStateResponse
from agentshift.server.state import get_usage_limit_controller

router = APIRouter()


@router.get("", response_model=UsageLimitStateResponse)
async def get_usage_limit() -> UsageLimitStateResponse:
    """Current pause state, after clearing a pause whose reset time has passed."""
    controller = get_usage_limit_controller()
    controller.check_and_clear_expired()
    return UsageLimitStateResponse(**controller.state.to_dict())


@router.post("/clear", response_model=UsageLimitStateResponse)
async def clear_usage_limit() -> UsageLimitStateResponse:
    """Manually lift the pause."""
    controller = get_usage_limit_controller()
    controller.clear()
    return UsageLimitStateResponse(**controller.state.to_dict())
