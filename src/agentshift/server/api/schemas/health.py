"""Health Pydantic schemas."""

from pydantic import BaseModel, Field


class HealthResponse(BaseModel):
    """Response model for the health endpoint."""

    status: str = Field(description="'healthy', or 'paused' while a usage limit is in effect")
    version: str = Field(description="Server version")
    uptime_seconds: float = Field(description="Server uptime in seconds")
    active_chats: int = Field(default=0, description="Chat sessions with a turn in flight")
    running_tasks: int = Field(default=0, description="Task processes still running")
