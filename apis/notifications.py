from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from beacon.auth import get_current_user
from beacon.db import DB
from beacon.events import log_event, E
from beacon.hub import hub
from beacon.log import get_logger
from beacon.models.message import MESSAGE_ALERT, MESSAGE_NOTIFICATION, MESSAGE_SYSTEM
from beacon.push_service import (
    expire_subscription,
    is_subscription_valid,
    list_user_subscriptions,
    register_subscription,
)
from .base import error_response, success_response

logger = get_logger(__name__)

router = APIRouter(prefix="/notifications", tags=["实时通知"])


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class SubscribeRequest(_CamelModel):
    subscription: Dict[str, Any]
    user_id: Optional[str] = Field(default=None, max_length=255)
    user_type: str = Field(default="student", max_length=32)


class ValidateRequest(_CamelModel):
    endpoint: str = Field(min_length=1, max_length=500)
    user_id: Optional[str] = Field(default=None, max_length=255)


class SendRequest(_CamelModel):
    type: str = Field(default=MESSAGE_NOTIFICATION)
    data: Any = None
    user_ids: Optional[List[str]] = None


def _require_admin(current_user: dict):
    if current_user.get("role") != "admin":
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="无权限执行")


@router.post("/subscribe", summary="注册推送订阅")
async def subscribe(payload: SubscribeRequest):
    if not str(payload.subscription.get("endpoint") or "").strip():
        return error_response(400, "订阅缺少 endpoint")

    session = DB.get_session()
    try:
        row = register_subscription(session, payload.subscription, payload.user_id, payload.user_type)
        session.commit()
        return success_response({"endpoint": row.endpoint}, message="订阅成功")
    except Exception as e:
        session.rollback()
        log_event(logger, E.SUBSCRIPTION_REGISTER_FAIL, level="warning", error=e)
        raise HTTPException(status_code=500, detail=f"订阅失败: {e}")
    finally:
        session.close()


@router.post("/validate-subscription", summary="校验推送订阅")
async def validate_subscription(payload: ValidateRequest):
    session = DB.get_session()
    try:
        if is_subscription_valid(session, payload.endpoint, payload.user_id):
            return success_response({"endpoint": payload.endpoint})
        return error_response(404, "订阅不存在或已失效")
    finally:
        session.close()


@router.post("/send", summary="向在线用户推送消息")
async def send_notification(payload: SendRequest, current_user: dict = Depends(get_current_user)):
    _require_admin(current_user)
    if payload.type not in (MESSAGE_NOTIFICATION, MESSAGE_ALERT, MESSAGE_SYSTEM):
        raise HTTPException(status_code=400, detail=f"不支持的消息类型: {payload.type}")
    delivered = await hub.broadcast({"type": payload.type, "data": payload.data}, user_ids=payload.user_ids)
    return success_response({"delivered": delivered})


class UnsubscribeRequest(_CamelModel):
    endpoint: str = Field(min_length=1, max_length=500)


@router.post("/unsubscribe", summary="注销推送订阅")
async def unsubscribe(payload: UnsubscribeRequest, current_user: dict = Depends(get_current_user)):
    session = DB.get_session()
    try:
        if not expire_subscription(session, payload.endpoint, current_user["user_id"]):
            return error_response(404, "订阅不存在")
        session.commit()
        return success_response({"endpoint": payload.endpoint}, message="已取消订阅")
    finally:
        session.close()


@router.get("/my-subscriptions", summary="当前用户的有效订阅")
async def my_subscriptions(current_user: dict = Depends(get_current_user)):
    session = DB.get_session()
    try:
        rows = list_user_subscriptions(session, current_user["user_id"])
        return success_response([
            {"endpoint": row.endpoint, "userType": row.user_type, "createdAt": row.created_at.isoformat() if row.created_at else None}
            for row in rows
        ])
    finally:
        session.close()


@router.get("/stats", summary="实时通道在线统计")
async def notification_stats(current_user: dict = Depends(get_current_user)):
    _require_admin(current_user)
    return success_response({"connections": hub.connections, "users": hub.users()})
