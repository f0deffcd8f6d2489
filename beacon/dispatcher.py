"""
beacon/dispatcher.py — 批量投递

状态机：IDLE -> SENDING -> (成功 -> IDLE | 失败 -> BACKOFF -> IDLE)

• tick() 由周期定时器（默认 30s）或缓冲写满时触发：drain 一批，非空则提交一次请求
• 失败：批次按原顺序放回队首，指数退避 base * 2^(attempt-1) 后重发同一批次；
  退避期间被新事件挤出缓冲的记录不再重发
• shutdown() 之后不再安排任何定时器，在途批次失败时直接交给 beacon
• 总尝试次数上限 1 + retry_attempts；耗尽后丢弃该批次，只记录一次日志并给出一次提示
• 不保证至多一次：超时后重试可能造成重复，服务端按事件 id 去重
"""

import threading
from dataclasses import asdict, dataclass
from enum import Enum
from functools import partial
from typing import Any, Dict, List, Optional

from beacon.buffer import EventBuffer
from beacon.events import log_event, E
from beacon.log import get_logger, trace_ctx
from beacon.models.event import RecordBase
from beacon.platform import Scheduler, TimerHandle
from beacon.status import STATUS_DELIVERY, StatusBoard
from beacon.transport import Transport, TransportError

logger = get_logger(__name__)


class DispatchState(str, Enum):
    IDLE = "idle"
    SENDING = "sending"
    BACKOFF = "backoff"


@dataclass
class DispatchStats:
    sent_batches: int = 0
    sent_events: int = 0
    send_attempts: int = 0
    failed_attempts: int = 0
    dropped_batches: int = 0
    dropped_events: int = 0
    beacon_events: int = 0

    def as_dict(self) -> Dict[str, int]:
        return asdict(self)


class BatchDispatcher:
    def __init__(
        self,
        buffer: EventBuffer,
        transport: Transport,
        scheduler: Scheduler,
        *,
        batch_size: Optional[int] = None,
        interval: float = 30.0,
        retry_attempts: int = 3,
        backoff_base: float = 1.0,
        status: Optional[StatusBoard] = None,
    ):
        self.buffer = buffer
        self.transport = transport
        self.scheduler = scheduler
        self.batch_size = max(1, int(batch_size or buffer.max_size))
        self.interval = max(0.1, float(interval))
        self.retry_attempts = max(0, int(retry_attempts))
        self.backoff_base = max(0.0, float(backoff_base))
        self.status = status
        self.stats = DispatchStats()

        self._state = DispatchState.IDLE
        self._lock = threading.RLock()
        self._running = False
        self._interval_timer: Optional[TimerHandle] = None
        self._retry_timer: Optional[TimerHandle] = None
        # 已 drain、已提交但尚未开始发送的批次
        self._queued: Optional[List[RecordBase]] = None
        self._closed = False

    @property
    def state(self) -> DispatchState:
        with self._lock:
            return self._state

    @property
    def max_attempts(self) -> int:
        return 1 + self.retry_attempts

    def backoff_delay(self, attempt: int) -> float:
        return self.backoff_base * (2 ** max(0, attempt - 1))

    # ─── 周期定时器 ──────────────────────────────────────────────────────────
    def start(self) -> None:
        with self._lock:
            if self._running or self._closed:
                return
            self._running = True
            self._interval_timer = self.scheduler.call_later(self.interval, self._on_interval)
        log_event(logger, E.DISPATCH_START, interval=self.interval, batch_size=self.batch_size)

    def stop(self) -> None:
        with self._lock:
            self._running = False
            self.scheduler.cancel(self._interval_timer)
            self._interval_timer = None
        log_event(logger, E.DISPATCH_STOP, pending=len(self.buffer))

    def _on_interval(self) -> None:
        with self._lock:
            if not self._running:
                return
            self._interval_timer = self.scheduler.call_later(self.interval, self._on_interval)
        self.tick()

    def notify_full(self) -> None:
        """缓冲写满：立即安排一次 tick，不在调用方栈上发送。"""
        log_event(logger, E.BUFFER_FULL, level="debug", size=len(self.buffer))
        self.scheduler.submit(self.tick)

    # ─── 投递 ────────────────────────────────────────────────────────────────
    def tick(self) -> List[RecordBase]:
        """drain 一批并提交一次发送，返回本次取出的批次；非 IDLE 状态直接返回空列表。"""
        with self._lock:
            if self._closed or self._state != DispatchState.IDLE:
                return []
            batch = self.buffer.drain(self.batch_size)
            if not batch:
                return []
            self._state = DispatchState.SENDING
            self._queued = batch
        self.scheduler.submit(partial(self._send, batch, 1))
        return batch

    def _send(self, batch: List[RecordBase], attempt: int) -> None:
        with self._lock:
            # shutdown() 已把尚未发出的批次交给 beacon
            if self._queued is not batch:
                return
            self._queued = None

        with trace_ctx():
            log_event(logger, E.BATCH_SEND_START, size=len(batch), attempt=attempt)
            self.stats.send_attempts += 1
            try:
                self.transport.send(batch)
            except TransportError as exc:
                self._on_failure(batch, attempt, exc)
                return
            except Exception as exc:
                logger.exception("传输层异常，按投递失败处理")
                self._on_failure(batch, attempt, exc)
                return

            with self._lock:
                self._state = DispatchState.IDLE
                self.stats.sent_batches += 1
                self.stats.sent_events += len(batch)
            log_event(logger, E.BATCH_SEND_COMPLETE, size=len(batch), attempt=attempt)

        # 积压仍满时继续下一批
        if self.buffer.is_full:
            self.scheduler.submit(self.tick)

    def _on_failure(self, batch: List[RecordBase], attempt: int, exc: Exception) -> None:
        self.stats.failed_attempts += 1
        log_event(logger, E.BATCH_SEND_FAIL, level="warning", size=len(batch), attempt=attempt, error=exc)

        with self._lock:
            closed = self._closed
            if closed:
                self._state = DispatchState.IDLE
        if closed:
            # 已卸载：不再安排重试，改走 beacon
            handed = self._hand_off(batch)
            log_event(logger, E.BATCH_FINAL_FLUSH, batches=1, events=handed, late=True)
            if not handed:
                self._drop(batch, attempt, exc)
            return

        if attempt >= self.max_attempts:
            self._drop(batch, attempt, exc)
            return

        evicted = self.buffer.requeue(batch)
        delay = self.backoff_delay(attempt)
        with self._lock:
            self._state = DispatchState.BACKOFF
            self._retry_timer = self.scheduler.call_later(delay, partial(self._retry, batch, attempt + 1))
        log_event(logger, E.BATCH_RETRY, size=len(batch), next_attempt=attempt + 1, delay=delay, evicted=len(evicted))

    def _retry(self, batch: List[RecordBase], attempt: int) -> None:
        with self._lock:
            self._retry_timer = None
            if self._closed or self._state != DispatchState.BACKOFF:
                return
            # 只重发失败批次中仍留在缓冲里的记录；退避期间被新事件挤掉的不算在内
            survivors = self.buffer.take(batch)
            if not survivors:
                self._state = DispatchState.IDLE
            else:
                self._state = DispatchState.SENDING
                self._queued = survivors

        if not survivors:
            log_event(logger, E.BATCH_RETRY_EVICTED, size=len(batch), attempt=attempt)
            if self.buffer.is_full:
                self.scheduler.submit(self.tick)
            return
        if len(survivors) < len(batch):
            log_event(logger, E.BATCH_RETRY_EVICTED, size=len(batch) - len(survivors), attempt=attempt)
        self._send(survivors, attempt)

    def _drop(self, batch: List[RecordBase], attempts: int, exc: Exception) -> None:
        with self._lock:
            self._state = DispatchState.IDLE
            self.stats.dropped_batches += 1
            self.stats.dropped_events += len(batch)
        log_event(
            logger,
            E.BATCH_DROP,
            level="error",
            size=len(batch),
            attempts=attempts,
            first_id=batch[0].id,
            error=exc,
        )
        if self.status is not None:
            self.status.report(
                STATUS_DELIVERY,
                "No se pudieron enviar algunas estadísticas de uso.",
                dropped_events=len(batch),
            )

    # ─── 卸载 ────────────────────────────────────────────────────────────────
    def _hand_off(self, batch: List[RecordBase]) -> int:
        try:
            accepted = self.transport.beacon(batch)
        except Exception:
            logger.exception("beacon 投递异常: size=%s", len(batch))
            return 0
        if not accepted:
            return 0
        with self._lock:
            self.stats.beacon_events += len(batch)
        return len(batch)

    def shutdown(self) -> int:
        """取消所有定时器，把剩余事件交给非阻塞 beacon 传输，返回交出的事件数。

        仍在途中的发送不会被中断；若它随后失败，批次直接交给 beacon，不再重试。
        """
        self.stop()
        with self._lock:
            self._closed = True
            self.scheduler.cancel(self._retry_timer)
            self._retry_timer = None
            batches = []
            claimed = self._queued is not None
            if claimed:
                batches.append(self._queued)
                self._queued = None
            while True:
                batch = self.buffer.drain(self.batch_size)
                if not batch:
                    break
                batches.append(batch)
            if claimed or self._state == DispatchState.BACKOFF:
                self._state = DispatchState.IDLE

        handed = sum(self._hand_off(batch) for batch in batches)
        log_event(logger, E.BATCH_FINAL_FLUSH, batches=len(batches), events=handed)
        return handed

    def snapshot(self) -> Dict[str, Any]:
        return {"state": self.state.value, "pending": len(self.buffer), **self.stats.as_dict()}
