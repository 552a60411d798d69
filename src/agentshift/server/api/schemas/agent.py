"""Agent Pydantic schemas."""

from typing import Literal

from pydantic import BaseModel, Field


class AgentCapabilitiesSchema(BaseModel):
    """What an agent backend supports."""

    skills: bool = False
    project_config: bool = False
    context_files: bool = False
    non_interactive: bool = True
    pause_resume: bool = False


class AgentInfo(BaseModel):
    """One registered agent backend."""

    id: str = Field(description="Agent identifier")
    name: str = Field(description="Human-readable agent name")
    available: bool = Field(description="Whether the agent CLI was found and runs")
    version: str | None = Field(default=None, description="CLI version when available")
    error: str | None = Field(default=None, description="Why the CLI is unavailable")
    is_default: bool = Field(default=False, description="Whether this is the default agent")
    supports_chat: bool = Field(default=False, description="Whether the agent has a chat mode")
    capabilities: AgentCapabilitiesSchema = Field(default_factory=AgentCapabilitiesSchema)
    project_config_files: list[str] = Field(default_factory=list, description="Per-project config files it reads")


class AgentListResponse(BaseModel):
    """Response model for listing agents."""

    agents: list[AgentInfo] = Field(default_factory=list)
    default_agent: str = Field(description="Id of the default agent")


class DefaultAgentUpdate(BaseModel):
    """Request model for changing the default agent."""

    agent_id: str = Field(description="Id of a registered agent")


class UsageCheckResponse(BaseModel):
    """Result of a pre-flight usage probe."""

    agent_id: str
    can_proceed: bool
    reset_at: str | None = Field(default=None, description="ISO timestamp when the limit resets")
    message: str | None = None


class UsageWindowSchema(BaseModel):
    utilization: float = Field(description="Percent of the window's quota used")
    resets_at: str | None = None


class UsagePercentageResponse(BaseModel):
    """Quota utilization and the threshold level it falls in."""

    agent_id: str
    five_hour: UsageWindowSchema | None = None
    seven_day: UsageWindowSchema | None = None
    peak: float | None = Field(default=None, description="Highest utilization across windows")
    level: Literal["ok", "warning", "auto_stop"] = Field(description="auto_stop pauses the task queue")
    error: str | None = None


class AuthValidationResponse(BaseModel):
    agent_id: str
    is_valid: bool
    requires_reauth: bool
    error: str | None = None


class ReauthRequest(BaseModel):
    project_path: str | None = Field(default=None, description="Directory to open the login terminal in")


class ReauthResponse(BaseModel):
    agent_id: str
    success: bool
    error: str | None = None
