"""WebSocket support for real-time render progress notifications.

This module provides:
- render_progress_ws: forwards a render session's progress events to a client
- create_progress_message: standardized message format
"""

import logging
from contextlib import aclosing
from typing import Any

from fastapi import APIRouter, WebSocket, WebSocketDisconnect

from src.api.deps import ProgressChannel
from src.schemas.render import RenderProgress

router = APIRouter()
logger = logging.getLogger(__name__)


def create_progress_message(session_id: str, progress: RenderProgress) -> dict[str, Any]:
    """Create a standardized progress message."""
    return {
        "type": "progress",
        "renderSessionId": session_id,
        **progress.to_wire(),
    }


@router.websocket("/render/sessions/{session_id}/ws")
async def render_progress_ws(websocket: WebSocket, session_id: str, channel: ProgressChannel) -> None:
    """Send every progress event of a session, then close after the terminal one."""
    await websocket.accept()
    try:
        async with aclosing(channel.subscribe(session_id)) as events:
            async for progress in events:
                await websocket.send_json(create_progress_message(session_id, progress))
    except WebSocketDisconnect:
        logger.info(f"Progress WebSocket for session {session_id} disconnected")
        return
    await websocket.close()
