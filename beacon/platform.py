"""
beacon/platform.py — 平台能力接口

把采集/投递核心对运行环境的依赖收敛为三个小接口：
• Clock      — 当前时间（毫秒）
• Scheduler  — 定时回调 / 取消 / 投递到事件循环
• Storage    — 键值持久化（localStorage / sessionStorage 的对应物）

ThreadScheduler 用单个工作线程串行执行所有回调，等价于浏览器主线程的事件循环；
ManualScheduler 使用虚拟时钟，由调用方 advance() 推进，测试与回放场景下完全确定。
"""

import heapq
import itertools
import json
import os
import queue
import threading
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional

from beacon.log import get_logger

logger = get_logger(__name__)

Callback = Callable[[], Any]


# ─── Clock ────────────────────────────────────────────────────────────────────
class Clock(ABC):
    @abstractmethod
    def now_ms(self) -> int:
        ...


class SystemClock(Clock):
    def now_ms(self) -> int:
        return int(time.time() * 1000)


# ─── Scheduler ────────────────────────────────────────────────────────────────
class TimerHandle:
    __slots__ = ("delay", "cancelled", "_timer")

    def __init__(self, delay: float):
        self.delay = delay
        self.cancelled = False
        self._timer: Optional[threading.Timer] = None

    def cancel(self) -> None:
        self.cancelled = True
        if self._timer is not None:
            self._timer.cancel()


class Scheduler(ABC):
    @abstractmethod
    def call_later(self, delay: float, callback: Callback) -> TimerHandle:
        """delay 秒后在事件循环上执行 callback。"""

    @abstractmethod
    def submit(self, callback: Callback) -> None:
        """尽快在事件循环上执行 callback，不阻塞调用方。"""

    def cancel(self, handle: Optional[TimerHandle]) -> None:
        if handle is not None:
            handle.cancel()

    def close(self) -> None:
        pass


def _run_callback(callback: Callback) -> None:
    try:
        callback()
    except Exception:
        logger.exception("调度回调执行异常: %r", callback)


class ThreadScheduler(Scheduler):
    """单工作线程事件循环：定时器线程只负责把回调放回队列。"""

    def __init__(self, name: str = "beacon-loop"):
        self.name = name
        self._queue: "queue.Queue[Optional[Callback]]" = queue.Queue()
        self._thread: Optional[threading.Thread] = None
        self._lock = threading.Lock()
        self._closed = False
        self._timers: List[TimerHandle] = []

    def _ensure_worker(self) -> None:
        with self._lock:
            if self._thread is not None and self._thread.is_alive():
                return
            self._thread = threading.Thread(target=self._worker_loop, name=self.name, daemon=True)
            self._thread.start()

    def _worker_loop(self) -> None:
        while True:
            callback = self._queue.get()
            if callback is None:
                return
            _run_callback(callback)

    def submit(self, callback: Callback) -> None:
        if self._closed:
            return
        self._ensure_worker()
        self._queue.put(callback)

    def call_later(self, delay: float, callback: Callback) -> TimerHandle:
        handle = TimerHandle(delay)
        if self._closed:
            handle.cancelled = True
            return handle

        def _fire():
            with self._lock:
                if handle in self._timers:
                    self._timers.remove(handle)
            if not handle.cancelled:
                self.submit(callback)

        timer = threading.Timer(max(0.0, delay), _fire)
        timer.daemon = True
        handle._timer = timer
        with self._lock:
            self._timers.append(handle)
        timer.start()
        return handle

    def close(self) -> None:
        with self._lock:
            self._closed = True
            timers, self._timers = self._timers, []
        for handle in timers:
            handle.cancel()
        self._queue.put(None)


class ManualScheduler(Scheduler, Clock):
    """虚拟时钟调度器：所有回调只在 run_pending() / advance() 中执行。"""

    def __init__(self, start_ms: int = 1_700_000_000_000):
        self.now = start_ms / 1000.0
        self.scheduled: List[float] = []
        self._heap: List[Any] = []
        self._seq = itertools.count()

    def now_ms(self) -> int:
        return int(round(self.now * 1000))

    def call_later(self, delay: float, callback: Callback) -> TimerHandle:
        handle = TimerHandle(delay)
        self.scheduled.append(delay)
        heapq.heappush(self._heap, (self.now + max(0.0, delay), next(self._seq), handle, callback))
        return handle

    def submit(self, callback: Callback) -> None:
        heapq.heappush(self._heap, (self.now, next(self._seq), TimerHandle(0.0), callback))

    def pending(self) -> int:
        return sum(1 for item in self._heap if not item[2].cancelled)

    def run_pending(self) -> int:
        """执行所有已到期回调（包括执行过程中新投递的即时回调）。"""
        return self.advance(0.0)

    def advance(self, seconds: float) -> int:
        target = self.now + max(0.0, seconds)
        executed = 0
        while self._heap and self._heap[0][0] <= target:
            due, _, handle, callback = heapq.heappop(self._heap)
            if handle.cancelled:
                continue
            self.now = max(self.now, due)
            _run_callback(callback)
            executed += 1
        self.now = target
        return executed


# ─── Storage ──────────────────────────────────────────────────────────────────
class Storage(ABC):
    @abstractmethod
    def get(self, key: str, default: Any = None) -> Any:
        ...

    @abstractmethod
    def set(self, key: str, value: Any) -> None:
        ...

    @abstractmethod
    def remove(self, key: str) -> None:
        ...


class MemoryStorage(Storage):
    def __init__(self, initial: Optional[Dict[str, Any]] = None):
        self._data: Dict[str, Any] = dict(initial or {})
        self._lock = threading.Lock()

    def get(self, key: str, default: Any = None) -> Any:
        with self._lock:
            return self._data.get(key, default)

    def set(self, key: str, value: Any) -> None:
        with self._lock:
            self._data[key] = value

    def remove(self, key: str) -> None:
        with self._lock:
            self._data.pop(key, None)


class JsonFileStorage(Storage):
    """JSON 文件存储，写入使用临时文件 + rename 保证原子性。"""

    def __init__(self, path: str):
        self.path = path
        self._lock = threading.Lock()
        self._data: Dict[str, Any] = self._load()

    def _load(self) -> Dict[str, Any]:
        if not os.path.exists(self.path):
            return {}
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, ValueError) as e:
            logger.warning("存储文件读取失败，按空存储处理: %s (%s)", self.path, e)
            return {}
        return data if isinstance(data, dict) else {}

    def _flush(self) -> None:
        directory = os.path.dirname(os.path.abspath(self.path))
        os.makedirs(directory, exist_ok=True)
        temp_path = f"{self.path}.tmp"
        try:
            with open(temp_path, "w", encoding="utf-8") as f:
                json.dump(self._data, f, ensure_ascii=False)
            os.replace(temp_path, self.path)
        except Exception:
            if os.path.exists(temp_path):
                os.remove(temp_path)
            raise

    def get(self, key: str, default: Any = None) -> Any:
        with self._lock:
            return self._data.get(key, default)

    def set(self, key: str, value: Any) -> None:
        with self._lock:
            self._data[key] = value
            self._flush()

    def remove(self, key: str) -> None:
        with self._lock:
            if key in self._data:
                del self._data[key]
                self._flush()


# ─── Platform bundle ──────────────────────────────────────────────────────────
@dataclass
class Platform:
    clock: Clock
    scheduler: Scheduler
    storage: Storage

    @classmethod
    def create(cls, storage_path: Optional[str] = None) -> "Platform":
        storage: Storage = JsonFileStorage(storage_path) if storage_path else MemoryStorage()
        return cls(clock=SystemClock(), scheduler=ThreadScheduler(), storage=storage)

    @classmethod
    def manual(cls, start_ms: int = 1_700_000_000_000, storage: Optional[Storage] = None) -> "Platform":
        scheduler = ManualScheduler(start_ms=start_ms)
        return cls(clock=scheduler, scheduler=scheduler, storage=storage or MemoryStorage())
