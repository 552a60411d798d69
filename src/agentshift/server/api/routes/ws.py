"""WebSocket streaming endpoint."""

import asyncio
import logging

from fastapi import APIRouter, WebSocket, WebSocketDisconnect

from agentshift.server.state import get_broadcaster

logger = logging.getLogger(__name__)

router = APIRouter()


@router.websocket("/ws")
async def websocket_endpoint(websocket: WebSocket):
    """Forward every broadcast event to the client as JSON.

    Server -> Client: ``{"type", "session_id", "data", "ts"}`` for each event,
    and ``{"type": "pong"}`` in reply to a ping.

    Client -> Server: ``{"type": "ping"}``.
    """
    await websocket.accept()
    broadcaster = get_broadcaster()
    queue = broadcaster.subscribe()

    async def forward_events():
        while True:
            event = await queue.get()
            await websocket.send_json(event.to_dict())

    async def handle_client():
        while True:
            message = await websocket.receive_json()
            if message.get("type") == "ping":
                await websocket.send_json({"type": "pong"})

    tasks = [asyncio.ensure_future(forward_events()), asyncio.ensure_future(handle_client())]
    try:
        done, _ = await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
        for task in done:
            exc = task.exception()
            if exc is not None and not isinstance(exc, WebSocketDisconnect):
                logger.warning("WebSocket closed with error: %s", exc)
    finally:
        for task in tasks:
            task.cancel()
        broadcaster.unsubscribe(queue)
