"""Chat endpoints.

Messages are accepted immediately and the turn runs in the background;
progress arrives on the WebSocket as ``stream-start``, ``chunk``,
``activity`` and a terminal ``complete``, ``error`` or ``cancelled`` event.
"""

from dataclasses import asdict
from pathlib import Path

from fastapi import APIRouter, HTTPException

from agentshift.agents.types import AdapterNotFoundError, SessionBusyError
from agentshift.server.api.schemas import (
    ChatAcceptedResponse,
    ChatCancelResponse,
    ChatMessageRequest,
    ChatTranscriptResponse,
    TranscriptMessageSchema,
)
from agentshift.server.state import get_chat_manager, get_registry, get_transcripts

router = APIRouter()


def _validate(request: ChatMessageRequest) -> None:
    try:
        adapter = get_registry().require(request.agent_id)
    except AdapterNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    if not adapter.supports_chat:
        raise HTTPException(status_code=400, detail=f"{adapter.name} does not support chat")
    if not Path(request.working_directory).is_dir():
        raise HTTPException(status_code=400, detail=f"Not a directory: {request.working_directory}")


@router.post("/{session_id}/messages", response_model=ChatAcceptedResponse, status_code=202)
async def send_message(session_id: str, request: ChatMessageRequest) -> ChatAcceptedResponse:
    """Start a chat turn; 409 if the session already has one running."""
    _validate(request)
    try:
        get_chat_manager().start_message(
            session_id,
            request.message,
            request.working_directory,
            agent_id=request.agent_id,
            model=request.model,
        )
    except SessionBusyError as e:
        raise HTTPException(status_code=409, detail=str(e))
    return ChatAcceptedResponse(session_id=session_id)


@router.post("/{session_id}/cancel", response_model=ChatCancelResponse)
async def cancel_message(session_id: str) -> ChatCancelResponse:
    """Cancel the running turn, if any."""
    return ChatCancelResponse(session_id=session_id, cancelled=get_chat_manager().cancel(session_id))


@router.post("/{session_id}/interrupt", response_model=ChatAcceptedResponse, status_code=202)
async def interrupt_and_resend(session_id: str, request: ChatMessageRequest) -> ChatAcceptedResponse:
    """Cancel the running turn and send a new message in the same conversation."""
    _validate(request)
    manager = get_chat_manager()
    interrupted = manager.is_session_active(session_id)
    manager.start_interrupt_and_resend(
        session_id,
        request.message,
        request.working_directory,
        agent_id=request.agent_id,
        model=request.model,
    )
    return ChatAcceptedResponse(session_id=session_id, interrupted=interrupted)


@router.get("/{session_id}/messages", response_model=ChatTranscriptResponse)
async def get_transcript(session_id: str) -> ChatTranscriptResponse:
    """Persisted messages, including the partial reply of a running turn."""
    transcripts = get_transcripts()
    return ChatTranscriptResponse(
        session_id=session_id,
        active=get_chat_manager().is_session_active(session_id),
        conversation_id=transcripts.get_conversation_id(session_id),
        messages=[TranscriptMessageSchema(**asdict(m)) for m in transcripts.get_messages(session_id)],
    )
