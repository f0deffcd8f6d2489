"""
beacon/subscription.py — 推送订阅接口客户端

• register(subscription, user_id, user_type) → POST <subscribe-endpoint>
      {"subscription": {...}, "userId": "...", "userType": "student"}
• validate(endpoint, user_id)                → POST <validate-endpoint>
      {"endpoint": "...", "userId": "..."}

两者都以 {"success": bool} 表示结果；网络层错误抛 SubscriptionError。
"""

from typing import Any, Dict, Optional

from beacon.log import get_logger
from beacon.transport import DEFAULT_TIMEOUT, TransportError, post_json

logger = get_logger(__name__)


class SubscriptionError(Exception):
    pass


class SubscriptionClient:
    def __init__(
        self,
        subscribe_endpoint: str,
        validate_endpoint: str,
        timeout: float = DEFAULT_TIMEOUT,
        token: str = "",
    ):
        self.subscribe_endpoint = subscribe_endpoint
        self.validate_endpoint = validate_endpoint
        self.timeout = float(timeout)
        self.token = token

    def register(self, subscription: Dict[str, Any], user_id: Optional[str], user_type: str = "student") -> bool:
        payload = {"subscription": subscription, "userId": user_id, "userType": user_type}
        try:
            post_json(self.subscribe_endpoint, payload, token=self.token, timeout=self.timeout)
        except TransportError as e:
            raise SubscriptionError(f"register failed: {e}") from e
        return True

    def validate(self, endpoint: str, user_id: Optional[str]) -> bool:
        """服务端确认订阅仍有效时返回 True；{"success": false} 返回 False。"""
        payload = {"endpoint": endpoint, "userId": user_id}
        try:
            post_json(self.validate_endpoint, payload, token=self.token, timeout=self.timeout)
        except TransportError as e:
            if e.status_code is not None and 200 <= e.status_code < 300:
                return False
            if e.status_code in (404, 410):
                return False
            raise SubscriptionError(f"validate failed: {e}") from e
        return True
