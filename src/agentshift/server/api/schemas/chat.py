"""Chat Pydantic schemas."""

from typing import Literal

from pydantic import BaseModel, Field


class ChatMessageRequest(BaseModel):
    """Request model for sending a chat message."""

    message: str = Field(min_length=1, description="Message to send to the agent")
    working_directory: str = Field(description="Absolute path the agent runs in")
    agent_id: str | None = Field(default=None, description="Agent to use; the default agent when omitted")
    model: str | None = Field(default=None, description="Optional model id or tier alias")


class ChatAcceptedResponse(BaseModel):
    """Response model for an accepted chat message."""

    session_id: str
    status: Literal["accepted"] = "accepted"
    interrupted: bool = Field(default=False, description="Whether a running turn was cancelled first")


class ChatCancelResponse(BaseModel):
    """Response model for cancelling a chat turn."""

    session_id: str
    cancelled: bool = Field(description="False when no turn was running")


class TranscriptMessageSchema(BaseModel):
    """One persisted chat message."""

    id: str
    role: Literal["user", "assistant"]
    content: str
    ts: str
    tool_calls: list[dict[str, str]] = Field(default_factory=list)


class ChatTranscriptResponse(BaseModel):
    """Response model for a session's transcript."""

    session_id: str
    active: bool = Field(description="Whether a turn is in flight")
    conversation_id: str | None = Field(default=None, description="Agent-side conversation id used for resumption")
    messages: list[TranscriptMessageSchema] = Field(default_factory=list)
