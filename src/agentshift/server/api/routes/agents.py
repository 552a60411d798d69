"""Agent listing and selection endpoints."""

import asyncio
from dataclasses import asdict

from fastapi import APIRouter, HTTPException

from agentshift.agents.adapters import AgentAdapter
from agentshift.agents.types import AdapterNotFoundError
from agentshift.server.api.schemas import (
    AgentCapabilitiesSchema,
    AgentInfo,
    AgentListResponse,
    AuthValidationResponse,
    DefaultAgentUpdate,
    ReauthRequest,
    ReauthResponse,
    UsageCheckResponse,
    UsagePercentageResponse,
    UsageWindowSchema,
)
from agentshift.server.state import get_config_manager, get_registry, get_task_manager, get_usage_limit_controller

router = APIRouter()


def _require(agent_id: str) -> AgentAdapter:
    try:
        return get_registry().require(agent_id)
    except AdapterNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))


async def _agent_info(adapter: AgentAdapter, default_id: str) -> AgentInfo:
    await adapter.get_executable_path()
    cli = await adapter.test_cli()
    return AgentInfo(
        id=adapter.id,
        name=adapter.name,
        available=cli.success,
        version=cli.version,
        error=cli.error,
        is_default=adapter.id == default_id,
        supports_chat=adapter.supports_chat,
        capabilities=AgentCapabilitiesSchema(**asdict(adapter.get_capabilities())),
        project_config_files=adapter.get_project_config_files(),
    )


@router.get("/agents", response_model=AgentListResponse)
async def list_agents() -> AgentListResponse:
    """List registered agents with availability and capabilities."""
    registry = get_registry()
    infos = await asyncio.gather(*(_agent_info(a, registry.default_id) for a in registry.get_all()))
    return AgentListResponse(agents=list(infos), default_agent=registry.default_id)


@router.put("/agents/default", response_model=AgentListResponse)
async def set_default_agent(request: DefaultAgentUpdate) -> AgentListResponse:
    """Change the default agent and save it to the config file."""
    registry = get_registry()
    try:
        registry.set_default(request.agent_id)
    except AdapterNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    get_config_manager().set_default_agent(request.agent_id)
    return await list_agents()


@router.post("/agents/{agent_id}/usage-check", response_model=UsageCheckResponse)
async def usage_check(agent_id: str) -> UsageCheckResponse:
    """Run the agent's pre-flight usage probe; a refusal pauses the queue."""
    try:
        result = await get_task_manager().preflight(agent_id)
    except AdapterNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    return UsageCheckResponse(
        agent_id=agent_id,
        can_proceed=result.can_proceed,
        reset_at=result.reset_at.isoformat() if result.reset_at else None,
        message=result.message,
    )


@router.get("/agents/{agent_id}/usage", response_model=UsagePercentageResponse)
async def usage_percentage(agent_id: str) -> UsagePercentageResponse:
    """Report quota utilization; at or above the auto-stop threshold the queue is paused."""
    adapter = _require(agent_id)
    await adapter.get_executable_path()
    result = await adapter.get_usage_percentage()
    level = get_usage_limit_controller().evaluate_usage(result.peak, triggered_by=f"usage:{adapter.id}")
    return UsagePercentageResponse(
        agent_id=adapter.id,
        five_hour=UsageWindowSchema(**asdict(result.five_hour)) if result.five_hour else None,
        seven_day=UsageWindowSchema(**asdict(result.seven_day)) if result.seven_day else None,
        peak=result.peak,
        level=level,
        error=result.error,
    )


@router.post("/agents/{agent_id}/validate-auth", response_model=AuthValidationResponse)
async def validate_auth(agent_id: str) -> AuthValidationResponse:
    adapter = _require(agent_id)
    await adapter.get_executable_path()
    result = await adapter.validate_auth()
    return AuthValidationResponse(agent_id=adapter.id, **asdict(result))


@router.post("/agents/{agent_id}/reauth", response_model=ReauthResponse)
async def reauth(agent_id: str, request: ReauthRequest | None = None) -> ReauthResponse:
    """Open the agent's login command in a terminal window on the server host."""
    adapter = _require(agent_id)
    result = await adapter.trigger_reauth(request.project_path if request else None)
    return ReauthResponse(agent_id=adapter.id, **asdict(result))
