# backend/chatline/routes/websocket.py
"""
Realtime WebSocket endpoint.

Handshake: the bearer token comes from the ``token`` query parameter (name
configurable) or an ``Authorization: Bearer`` header. A bad token closes the
socket with 1008 before it is accepted. After that, JSON frames of the form
``{"event": ..., "data": ...}`` are handled strictly in arrival order.
"""

import logging
from typing import Optional

from fastapi import APIRouter, WebSocket, WebSocketDisconnect, status

from ..auth import extract_bearer_token
from ..core.config import settings
from ..services.realtime.hub import RealtimeHub

logger = logging.getLogger(__name__)

router = APIRouter()


def _handshake_token(websocket: WebSocket) -> Optional[str]:
    token = websocket.query_params.get(settings.ws_token_query_param)
    if token:
        return token
    return extract_bearer_token(websocket.headers.get("authorization"))


@router.websocket("/ws")
async def chat_socket(websocket: WebSocket) -> None:
    hub: RealtimeHub = websocket.app.state.hub
    session = hub.create_session(websocket)

    if not session.authenticate(_handshake_token(websocket)):
        logger.info("[WS] Handshake rejected: invalid or missing token")
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return

    await websocket.accept()
    try:
        await session.activate()
    except Exception as exc:
        logger.error(f"[WS] Activation failed for {session.user_id}: {exc}", exc_info=True)
        await session.disconnect()
        await websocket.close(code=status.WS_1011_INTERNAL_ERROR)
        return

    try:
        while True:
            raw = await websocket.receive_text()
            await session.handle_frame(raw)
    except WebSocketDisconnect as exc:
        logger.debug(f"[WS] Client {session.user_id} closed with code {exc.code}")
    finally:
        await session.disconnect()
