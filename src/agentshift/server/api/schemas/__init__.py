"""Pydantic schemas for the API."""

from .agent import (
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
from .chat import (
    ChatAcceptedResponse,
    ChatCancelResponse,
    ChatMessageRequest,
    ChatTranscriptResponse,
    TranscriptMessageSchema,
)
from .health import HealthResponse
from .task import TaskCancelResponse, TaskListResponse, TaskStatus, TaskStatusResponse
from .usage_limit import UsageLimitStateResponse

__all__ = [
    # Agents
    "AgentCapabilitiesSchema",
    "AgentInfo",
    "AgentListResponse",
    "AuthValidationResponse",
    "DefaultAgentUpdate",
    "ReauthRequest",
    "ReauthResponse",
    "UsageCheckResponse",
    "UsagePercentageResponse",
    "UsageWindowSchema",
    # Chat
    "ChatAcceptedResponse",
    "ChatCancelResponse",
    "ChatMessageRequest",
    "ChatTranscriptResponse",
    "TranscriptMessageSchema",
    # Health
    "HealthResponse",
    # Tasks
    "TaskCancelResponse",
    "TaskListResponse",
    "TaskStatus",
    "TaskStatusResponse",
    # Usage limit
    "UsageLimitStateResponse",
]
