from typing import Any, Dict, List

from fastapi import APIRouter, Depends, HTTPException, Query, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field, ValidationError

from beacon.auth import get_current_user
from beacon.config import cfg
from beacon.db import DB
from beacon.events import log_event, E
from beacon.ingest_service import MAX_BATCH_EVENTS, list_recent_events, save_events
from beacon.log import get_logger
from beacon.models.event import parse_batch
from .base import error_response, success_response

logger = get_logger(__name__)

router = APIRouter(prefix="/analytics", tags=["埋点接收"])


class EventBatchRequest(BaseModel):
    events: List[Dict[str, Any]] = Field(default_factory=list, max_length=MAX_BATCH_EVENTS)


def analytics_enabled() -> bool:
    return bool(cfg.get("analytics.enabled", True))


def _require_admin(current_user: dict):
    if current_user.get("role") != "admin":
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="无权限执行")


@router.post("/events", summary="接收一批客户端事件")
async def collect_events(payload: EventBatchRequest):
    if not analytics_enabled():
        return success_response({"accepted": 0, "duplicates": 0}, message="埋点已关闭")

    try:
        records = parse_batch(payload.events)
    except ValidationError as e:
        log_event(logger, E.INGEST_REJECT, level="warning", size=len(payload.events), errors=e.error_count())
        return JSONResponse(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            content=error_response(422, "事件格式无效", {"errors": e.error_count()}),
        )

    session = DB.get_session()
    try:
        accepted, duplicates = save_events(session, records)
        session.commit()
        return success_response({"accepted": accepted, "duplicates": duplicates})
    except Exception as e:
        session.rollback()
        logger.exception("写入事件失败")
        raise HTTPException(status_code=500, detail=f"写入事件失败: {e}")
    finally:
        session.close()


@router.get("/events/recent", summary="最近接收的事件")
async def recent_events(
    limit: int = Query(50, ge=1, le=500),
    current_user: dict = Depends(get_current_user),
):
    _require_admin(current_user)
    session = DB.get_session()
    try:
        return success_response(list_recent_events(session, limit=limit))
    finally:
        session.close()
