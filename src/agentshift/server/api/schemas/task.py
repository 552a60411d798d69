"""Task-related Pydantic schemas."""

from typing import Literal

from pydantic import BaseModel, Field


TaskStatus = Literal["running", "completed", "failed", "cancelled", "timed_out", "paused"]


class TaskStatusResponse(BaseModel):
    """Response model for task status."""

    task_id: str = Field(description="Unique task identifier")
    agent_id: str = Field(description="Agent running the task")
    state: TaskStatus = Field(description="Current task state")
    pid: int | None = Field(default=None, description="Agent process id")
    started_at: str | None = Field(default=None, description="When the task started")
    completed_at: str | None = Field(default=None, description="When the task finished")
    exit_code: int | None = None
    error: str | None = None
    auth_failed: bool = False
    rate_limited: bool = False
    reset_at: str | None = Field(default=None, description="Usage-limit reset time, if paused on one")


class TaskListResponse(BaseModel):
    """Response model for listing tasks."""

    tasks: list[TaskStatusResponse] = Field(default_factory=list)
    running: int = Field(description="Number of running tasks")
    max_concurrent: int = Field(description="Concurrency ceiling")


class TaskCancelResponse(BaseModel):
    task_id: str
    cancelled: bool
