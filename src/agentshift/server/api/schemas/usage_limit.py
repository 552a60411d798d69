"""Usage-limit pause Pydantic schemas."""

from pydantic import BaseModel, Field


class UsageLimitStateResponse(BaseModel):
    """Current state of the queue pause."""

    is_paused: bool = Field(description="Whether new work is refused")
    paused_at: str | None = Field(default=None, description="ISO timestamp the pause began")
    resume_at: str | None = Field(default=None, description="ISO timestamp of the expected reset, if known")
    triggered_by: str | None = Field(default=None, description="What reported the limit")
