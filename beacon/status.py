"""
beacon/status.py — 永久失败提示

投递重试耗尽、实时通道重连上限、推送订阅二次失败等永久故障，
每种只产生一条可关闭的非阻塞提示；瞬时故障静默重试，不进入这里。
"""

import threading
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

from beacon.events import log_event, E
from beacon.log import get_logger
from beacon.platform import Clock, SystemClock

logger = get_logger(__name__)

STATUS_DELIVERY = "analytics.delivery"
STATUS_CHANNEL = "realtime.channel"
STATUS_SUBSCRIPTION = "push.subscription"


@dataclass
class StatusEntry:
    kind: str
    message: str
    created_at: int
    detail: Dict[str, Any] = field(default_factory=dict)


Listener = Callable[[StatusEntry], Any]


class StatusBoard:
    def __init__(self, clock: Optional[Clock] = None):
        self.clock = clock or SystemClock()
        self._entries: Dict[str, StatusEntry] = {}
        self._listeners: List[Listener] = []
        self._lock = threading.Lock()

    def subscribe(self, listener: Listener) -> None:
        with self._lock:
            self._listeners.append(listener)

    def report(self, kind: str, message: str, **detail: Any) -> bool:
        """登记一条提示；同类提示未关闭前不会重复出现。"""
        with self._lock:
            if kind in self._entries:
                return False
            entry = StatusEntry(kind=kind, message=message, created_at=self.clock.now_ms(), detail=dict(detail))
            self._entries[kind] = entry
            listeners = list(self._listeners)
        log_event(logger, E.STATUS_RAISE, level="warning", kind=kind, message=message)
        for listener in listeners:
            try:
                listener(entry)
            except Exception:
                logger.exception("状态提示监听器执行异常: kind=%s", kind)
        return True

    def dismiss(self, kind: str) -> bool:
        with self._lock:
            removed = self._entries.pop(kind, None)
        if removed is not None:
            log_event(logger, E.STATUS_DISMISS, kind=kind)
        return removed is not None

    def get(self, kind: str) -> Optional[StatusEntry]:
        with self._lock:
            return self._entries.get(kind)

    def active(self) -> List[StatusEntry]:
        with self._lock:
            return sorted(self._entries.values(), key=lambda x: x.created_at)
