"""
beacon/transport.py — 出站传输

Transport 是投递侧唯一依赖的网络能力：
• send(batch)   — 一次请求携带整批事件；任何失败都抛 TransportError
• beacon(batch) — 页面卸载时的最后一次投递，立即返回，不等待结果

失败的定义：网络错误、超时、非 2xx 状态码、或响应体 {"success": false}。
"""

import json
import threading
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional

import requests

from beacon.events import log_event, E
from beacon.log import get_logger
from beacon.models.event import RecordBase, serialize_batch

logger = get_logger(__name__)

DEFAULT_TIMEOUT = 5.0
BEACON_TIMEOUT = 2.0


class TransportError(Exception):
    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class Transport(ABC):
    @abstractmethod
    def send(self, batch: List[RecordBase]) -> Dict[str, Any]:
        ...

    @abstractmethod
    def beacon(self, batch: List[RecordBase]) -> bool:
        ...


def _auth_headers(token: str) -> Dict[str, str]:
    headers = {"Content-Type": "application/json; charset=utf-8"}
    if token:
        headers["Authorization"] = f"Bearer {token}"
    return headers


def post_json(url: str, payload: Dict[str, Any], token: str = "", timeout: float = DEFAULT_TIMEOUT) -> Dict[str, Any]:
    """POST JSON 并解析 {"success": bool} 响应；失败统一抛 TransportError。"""
    body = json.dumps(payload, ensure_ascii=False).encode("utf-8")
    try:
        resp = requests.post(url, data=body, headers=_auth_headers(token), timeout=timeout)
    except requests.exceptions.Timeout as e:
        raise TransportError(f"timeout after {timeout}s: {e}") from e
    except requests.exceptions.RequestException as e:
        raise TransportError(f"network error: {e}") from e

    if resp.status_code < 200 or resp.status_code >= 300:
        raise TransportError(
            f"HTTP {resp.status_code}: {str(resp.text or '')[:300]}",
            status_code=resp.status_code,
        )
    try:
        data = resp.json()
    except ValueError:
        data = {}
    if not isinstance(data, dict):
        data = {"data": data}
    if data.get("success") is False:
        raise TransportError(
            f"rejected by server: {str(data.get('message') or '')[:300]}",
            status_code=resp.status_code,
        )
    return data


class HttpTransport(Transport):
    def __init__(self, endpoint: str, timeout: float = DEFAULT_TIMEOUT, token: str = ""):
        self.endpoint = endpoint
        self.timeout = float(timeout)
        self.token = token

    def send(self, batch: List[RecordBase]) -> Dict[str, Any]:
        return post_json(self.endpoint, serialize_batch(batch), token=self.token, timeout=self.timeout)

    def _beacon_send(self, payload: Dict[str, Any], size: int) -> None:
        try:
            post_json(self.endpoint, payload, token=self.token, timeout=min(self.timeout, BEACON_TIMEOUT))
        except TransportError as e:
            log_event(logger, E.BEACON_SEND_FAIL, level="warning", size=size, error=e)

    def beacon(self, batch: List[RecordBase]) -> bool:
        if not batch:
            return False
        payload = serialize_batch(batch)
        t = threading.Thread(target=self._beacon_send, args=(payload, len(batch)), daemon=True)
        t.start()
        return True
