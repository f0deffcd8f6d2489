import json

import jwt
from fastapi import APIRouter, Query, WebSocket, WebSocketDisconnect

from beacon.auth import decode_token
from beacon.events import log_event, E
from beacon.hub import hub
from beacon.log import get_logger
from beacon.models.message import KEEPALIVE_TYPES, MESSAGE_PONG

logger = get_logger(__name__)

router = APIRouter(tags=["实时通道"])

# 自定义关闭码：令牌无效
WS_CLOSE_UNAUTHORIZED = 4401


@router.websocket("/ws")
async def realtime_socket(
    websocket: WebSocket,
    token: str = Query(default=""),
    user_id: str = Query(default="", alias="userId"),
):
    try:
        claims = decode_token(token)
    except jwt.InvalidTokenError as e:
        log_event(logger, E.HUB_AUTH_FAIL, level="warning", user_id=user_id, error=e)
        await websocket.close(code=WS_CLOSE_UNAUTHORIZED)
        return

    uid = str(claims.get("sub") or "")
    if user_id and user_id != uid:
        log_event(logger, E.HUB_AUTH_FAIL, level="warning", user_id=user_id, reason="user_mismatch")
        await websocket.close(code=WS_CLOSE_UNAUTHORIZED)
        return

    await websocket.accept()
    await hub.join(uid, websocket)
    try:
        while True:
            text = await websocket.receive_text()
            try:
                message = json.loads(text)
            except ValueError:
                log_event(logger, E.MESSAGE_INVALID, level="warning", user_id=uid)
                continue
            if not isinstance(message, dict):
                continue
            if message.get("type") in KEEPALIVE_TYPES:
                await websocket.send_json({"type": MESSAGE_PONG})
            elif message.get("type") == "presence":
                logger.debug("presence: user_id=%s status=%s", uid, message.get("status"))
    except WebSocketDisconnect:
        pass
    finally:
        await hub.leave(uid, websocket)
