import json
from datetime import datetime
from typing import Any, Dict, List, Optional

from beacon.events import log_event, E
from beacon.log import get_logger
from beacon.models.push_subscription import PushSubscription

logger = get_logger(__name__)

STATUS_VALID = 1
STATUS_EXPIRED = 0


def _text(value: Any, limit: int) -> str:
    return str(value or "").strip()[:limit]


def register_subscription(
    session,
    subscription: Dict[str, Any],
    user_id: Optional[str],
    user_type: str = "student",
) -> PushSubscription:
    """按 endpoint upsert；重新注册会把已失效的订阅恢复为有效。"""
    endpoint = _text(subscription.get("endpoint"), 500)
    if not endpoint:
        raise ValueError("subscription.endpoint is required")

    now = datetime.now()
    row = session.query(PushSubscription).filter(PushSubscription.endpoint == endpoint).first()
    if row is None:
        row = PushSubscription(endpoint=endpoint, created_at=now)
        session.add(row)
    row.user_id = _text(user_id, 255)
    row.user_type = _text(user_type, 32) or "student"
    row.subscription_json = json.dumps(subscription, ensure_ascii=False)[:8000]
    row.status = STATUS_VALID
    row.updated_at = now
    log_event(logger, E.SUBSCRIPTION_REGISTER, endpoint=endpoint, user_id=row.user_id)
    return row


def is_subscription_valid(session, endpoint: str, user_id: Optional[str]) -> bool:
    row = session.query(PushSubscription).filter(PushSubscription.endpoint == _text(endpoint, 500)).first()
    if row is None or int(row.status or 0) != STATUS_VALID:
        return False
    if user_id and row.user_id and row.user_id != str(user_id):
        return False
    return True


def expire_subscription(session, endpoint: str, user_id: Optional[str] = None) -> bool:
    row = session.query(PushSubscription).filter(PushSubscription.endpoint == _text(endpoint, 500)).first()
    if row is None or (user_id and row.user_id and row.user_id != str(user_id)):
        return False
    row.status = STATUS_EXPIRED
    row.updated_at = datetime.now()
    log_event(logger, E.SUBSCRIPTION_INVALID, endpoint=row.endpoint)
    return True


def list_user_subscriptions(session, user_id: str) -> List[PushSubscription]:
    return (
        session.query(PushSubscription)
        .filter(PushSubscription.user_id == str(user_id), PushSubscription.status == STATUS_VALID)
        .all()
    )
