"""WebSocket endpoints."""

import logging

from fastapi import APIRouter, WebSocket, WebSocketDisconnect, status

from backend.app.security import user_id_from_token
from FinalRound.services.live_updates import get_live_update_broadcaster
from FinalRound.utils.exceptions import ConfigException

logger = logging.getLogger(__name__)

router = APIRouter()


@router.websocket("/ws/billing")
async def websocket_billing(websocket: WebSocket) -> None:
    """计划变更实时推送 (JWT in the `token` query parameter)"""
    try:
        user_id = user_id_from_token(websocket.query_params.get("token"))
    except ConfigException as exc:
        logger.error("Billing WebSocket rejected: %s", exc.message)
        user_id = None
    if user_id is None:
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return

    manager = get_live_update_broadcaster()
    await manager.connect(websocket, user_id)
    try:
        while True:
            data = await websocket.receive_text()
            if data == "ping":
                await websocket.send_text("pong")
    except WebSocketDisconnect:
        manager.disconnect(websocket, user_id)
    except Exception as exc:
        logger.error("Billing WebSocket error for user %s: %s", user_id, exc, exc_info=True)
        manager.disconnect(websocket, user_id)
