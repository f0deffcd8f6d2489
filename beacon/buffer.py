"""
beacon/buffer.py — 有界事件缓冲

FIFO 队列，超过上限时先淘汰最旧事件：近实时指标比完整的历史积压更重要。
约定：只有采集侧 push，只有投递侧 drain / requeue。所有操作在锁内一次完成。
"""

import threading
from collections import deque
from typing import Deque, List, Sequence

from beacon.events import log_event, E
from beacon.log import get_logger
from beacon.models.event import RecordBase

logger = get_logger(__name__)

DEFAULT_MAX_SIZE = 100


class EventBuffer:
    def __init__(self, max_size: int = DEFAULT_MAX_SIZE):
        if int(max_size) < 1:
            raise ValueError("max_size must be >= 1")
        self.max_size = int(max_size)
        self._items: Deque[RecordBase] = deque()
        self._lock = threading.RLock()
        self.evicted_total = 0

    def __len__(self) -> int:
        with self._lock:
            return len(self._items)

    @property
    def is_full(self) -> bool:
        with self._lock:
            return len(self._items) >= self.max_size

    def _trim(self) -> List[RecordBase]:
        evicted = []
        while len(self._items) > self.max_size:
            evicted.append(self._items.popleft())
        if evicted:
            self.evicted_total += len(evicted)
            log_event(logger, E.BUFFER_EVICT, level="debug", count=len(evicted), total=self.evicted_total)
        return evicted

    def push(self, record: RecordBase) -> List[RecordBase]:
        """追加一条记录，返回因超限被淘汰的最旧记录。"""
        with self._lock:
            self._items.append(record)
            return self._trim()

    def drain(self, batch_size: int) -> List[RecordBase]:
        """取出至多 batch_size 条最旧记录；缓冲为空时返回空列表。"""
        with self._lock:
            count = min(max(0, int(batch_size)), len(self._items))
            return [self._items.popleft() for _ in range(count)]

    def requeue(self, records: Sequence[RecordBase]) -> List[RecordBase]:
        """把投递失败的批次按原顺序放回队首。"""
        with self._lock:
            self._items.extendleft(reversed(list(records)))
            return self._trim()

    def take(self, records: Sequence[RecordBase]) -> List[RecordBase]:
        """取回仍在缓冲中的指定记录（按 id 匹配），保持缓冲内顺序；已被淘汰的不再返回。"""
        wanted = {r.id for r in records}
        with self._lock:
            kept: Deque[RecordBase] = deque()
            taken = []
            for item in self._items:
                if item.id in wanted:
                    wanted.discard(item.id)
                    taken.append(item)
                else:
                    kept.append(item)
            self._items = kept
            return taken

    def snapshot(self) -> List[RecordBase]:
        with self._lock:
            return list(self._items)

    def clear(self) -> int:
        with self._lock:
            count = len(self._items)
            self._items.clear()
            return count
