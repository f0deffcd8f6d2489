"""
beacon/session.py — 会话与用户标识

sessionId 在一个标签页生命周期内保持稳定；空闲超过 idle_timeout 或显式 new_session()
时重新生成。标识写入 Storage，存储故障时退化为进程内值，不影响采集。
"""

import itertools
import secrets
import string
import threading
from typing import Any, Dict, Optional

from beacon.events import log_event, E
from beacon.log import get_logger
from beacon.platform import Clock, Storage

logger = get_logger(__name__)

SESSION_STORAGE_KEY = "bge_analytics_session"
USER_STORAGE_KEY = "bge_user_id"
DEFAULT_IDLE_TIMEOUT_MS = 30 * 60 * 1000

_ALPHABET = string.ascii_lowercase + string.digits
_sequence = itertools.count(1)


def random_suffix(length: int = 9) -> str:
    return "".join(secrets.choice(_ALPHABET) for _ in range(length))


def new_id(prefix: str, now_ms: int) -> str:
    """<prefix>_<epoch ms>_<序号><随机后缀>，序号保证同一进程内不重复。"""
    return f"{prefix}_{int(now_ms)}_{next(_sequence):x}{random_suffix(6)}"


class SessionTracker:
    def __init__(
        self,
        storage: Storage,
        clock: Clock,
        idle_timeout_ms: int = DEFAULT_IDLE_TIMEOUT_MS,
        user_id: Optional[str] = None,
    ):
        self.storage = storage
        self.clock = clock
        self.idle_timeout_ms = max(0, int(idle_timeout_ms or 0))
        self._user_id = user_id
        self._fallback: Optional[Dict[str, Any]] = None
        self._lock = threading.Lock()

    def _read(self) -> Optional[Dict[str, Any]]:
        try:
            data = self.storage.get(SESSION_STORAGE_KEY)
        except Exception as e:
            log_event(logger, E.SESSION_STORAGE_FAIL, level="warning", op="get", error=e)
            data = None
        if not isinstance(data, dict):
            data = self._fallback
        return data if isinstance(data, dict) and data.get("id") else None

    def _write(self, data: Dict[str, Any]) -> None:
        self._fallback = data
        try:
            self.storage.set(SESSION_STORAGE_KEY, data)
        except Exception as e:
            log_event(logger, E.SESSION_STORAGE_FAIL, level="warning", op="set", error=e)

    def new_session(self) -> str:
        with self._lock:
            return self._start(self.clock.now_ms())

    def _start(self, now: int) -> str:
        session_id = new_id("sess", now)
        self._write({"id": session_id, "startedAt": now, "lastSeen": now})
        log_event(logger, E.SESSION_NEW, session_id=session_id)
        return session_id

    def current(self) -> str:
        """返回当前 sessionId，并刷新最后活跃时间。"""
        with self._lock:
            now = self.clock.now_ms()
            data = self._read()
            if data is None:
                return self._start(now)
            last_seen = int(data.get("lastSeen") or 0)
            if self.idle_timeout_ms and now - last_seen > self.idle_timeout_ms:
                return self._start(now)
            data["lastSeen"] = max(last_seen, now)
            self._write(data)
            return str(data["id"])

    @property
    def user_id(self) -> Optional[str]:
        if self._user_id:
            return self._user_id
        try:
            stored = self.storage.get(USER_STORAGE_KEY)
        except Exception:
            return None
        return str(stored) if stored else None

    def set_user(self, user_id: Optional[str]) -> None:
        self._user_id = str(user_id) if user_id else None
        if self._user_id:
            self.storage.set(USER_STORAGE_KEY, self._user_id)
        else:
            self.storage.remove(USER_STORAGE_KEY)
