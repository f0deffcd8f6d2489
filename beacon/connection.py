"""
beacon/connection.py — 实时通道连接管理

状态机：DISCONNECTED -> CONNECTING -> CONNECTED -> DISCONNECTED，外加终态 FAILED

• 连接关闭后 attempts += 1，按 reconnect_delay * attempts（不超过 max_reconnect_delay）安排重连
• 连续 max_reconnect_attempts 次关闭仍未成功打开 → FAILED，只给出一次提示，不再重连
• 成功打开即清零计数；close() 主动关闭后不重连；reset() 从 FAILED 恢复
• 消息按 type 分发给 on() 注册的处理器；ping / heartbeat 自动回复 pong
• subscribe() 维护唯一的推送订阅记录：无效时透明重新注册，注册失败重试一次后上报
"""

import json
import threading
from enum import Enum
from typing import Any, Callable, Dict, List, Optional
from urllib.parse import urlencode

from pydantic import ValidationError

from beacon.channel import Channel, ChannelError, ChannelHandlers
from beacon.events import log_event, E
from beacon.log import get_logger
from beacon.models.message import KEEPALIVE_TYPES, KNOWN_MESSAGE_TYPES, MESSAGE_PONG, ChannelMessage
from beacon.models.subscription import SUBSCRIPTION_STORAGE_KEY, SubscriptionRecord
from beacon.platform import Clock, Scheduler, Storage, SystemClock, TimerHandle
from beacon.status import STATUS_CHANNEL, STATUS_SUBSCRIPTION, StatusBoard
from beacon.subscription import SubscriptionClient, SubscriptionError

logger = get_logger(__name__)

MessageHandler = Callable[[Any], Any]


class ConnectionState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    FAILED = "failed"


class ConnectionManager:
    def __init__(
        self,
        url: str,
        channel_factory: Callable[[], Channel],
        scheduler: Scheduler,
        storage: Storage,
        clock: Optional[Clock] = None,
        *,
        token: str = "",
        user_id: Optional[str] = None,
        max_reconnect_attempts: int = 5,
        reconnect_delay: float = 3.0,
        max_reconnect_delay: float = 60.0,
        subscriptions: Optional[SubscriptionClient] = None,
        status: Optional[StatusBoard] = None,
    ):
        self.url = url
        self.channel_factory = channel_factory
        self.scheduler = scheduler
        self.storage = storage
        self.clock = clock or SystemClock()
        self.token = token
        self.user_id = user_id
        self.max_reconnect_attempts = max(1, int(max_reconnect_attempts))
        self.reconnect_delay = max(0.0, float(reconnect_delay))
        self.max_reconnect_delay = max(self.reconnect_delay, float(max_reconnect_delay))
        self.subscriptions = subscriptions
        self.status = status

        self.attempts = 0
        self._state = ConnectionState.DISCONNECTED
        self._channel: Optional[Channel] = None
        self._generation = 0
        self._closing = False
        self._handlers: Dict[str, List[MessageHandler]] = {}
        self._reconnect_timer: Optional[TimerHandle] = None
        self._revalidate_timer: Optional[TimerHandle] = None
        self._revalidate_interval = 0.0
        self._lock = threading.RLock()

    @property
    def state(self) -> ConnectionState:
        with self._lock:
            return self._state

    @property
    def connected(self) -> bool:
        return self.state == ConnectionState.CONNECTED

    def on(self, message_type: str, handler: MessageHandler) -> Callable[[], None]:
        """注册消息处理器，返回取消注册的函数。"""
        with self._lock:
            self._handlers.setdefault(message_type, []).append(handler)

        def _off() -> None:
            with self._lock:
                handlers = self._handlers.get(message_type, [])
                if handler in handlers:
                    handlers.remove(handler)

        return _off

    def build_url(self) -> str:
        params = {}
        if self.token:
            params["token"] = self.token
        if self.user_id:
            params["userId"] = self.user_id
        if not params:
            return self.url
        sep = "&" if "?" in self.url else "?"
        return f"{self.url}{sep}{urlencode(params)}"

    # ─── 连接生命周期 ────────────────────────────────────────────────────────
    def connect(self) -> bool:
        """发起一次连接；已连接、连接中或处于 FAILED 时返回 False。"""
        with self._lock:
            if self._state in (ConnectionState.CONNECTING, ConnectionState.CONNECTED, ConnectionState.FAILED):
                return False
            self._closing = False
            self._reconnect_timer = None
            self._generation += 1
            generation = self._generation
            self._state = ConnectionState.CONNECTING
            channel = self.channel_factory()
            self._channel = channel

        handlers = ChannelHandlers(
            on_open=lambda: self._handle_open(generation),
            on_message=lambda raw: self._handle_message(generation, raw),
            on_close=lambda code=None, reason=None: self._handle_close(generation, code, reason),
            on_error=lambda error: self._handle_error(generation, error),
        )
        log_event(logger, E.CHANNEL_CONNECT, attempt=self.attempts + 1, url=self.url)
        try:
            channel.open(self.build_url(), handlers)
        except Exception as e:
            self._handle_error(generation, e)
            self._handle_close(generation, None, str(e))
        return True

    def _is_current(self, generation: int) -> bool:
        return generation == self._generation

    def _handle_open(self, generation: int) -> None:
        with self._lock:
            if not self._is_current(generation) or self._closing:
                return
            self._state = ConnectionState.CONNECTED
            self.attempts = 0
        log_event(logger, E.CHANNEL_OPEN, url=self.url)

    def _handle_error(self, generation: int, error: Any) -> None:
        if not self._is_current(generation):
            return
        log_event(logger, E.CHANNEL_ERROR, level="warning", error=error)

    def _handle_message(self, generation: int, raw: Any) -> None:
        if self._is_current(generation):
            self.on_message(raw)

    def _handle_close(self, generation: int, code: Optional[int] = None, reason: Optional[str] = None) -> None:
        with self._lock:
            if not self._is_current(generation) or self._state == ConnectionState.FAILED:
                return
            self._channel = None
            self._state = ConnectionState.DISCONNECTED
            if self._closing:
                log_event(logger, E.CHANNEL_CLOSE, code=code, reason=reason, manual=True)
                return
            self.attempts += 1
            attempts = self.attempts
            if attempts >= self.max_reconnect_attempts:
                self._state = ConnectionState.FAILED
            else:
                delay = self._schedule_reconnect(attempts)

        log_event(logger, E.CHANNEL_CLOSE, level="warning", code=code, reason=reason, attempts=attempts)
        if attempts >= self.max_reconnect_attempts:
            log_event(logger, E.CHANNEL_FAILED, level="error", attempts=attempts)
            if self.status is not None:
                self.status.report(
                    STATUS_CHANNEL,
                    "No fue posible conectar con el servidor de notificaciones.",
                    attempts=attempts,
                )
            return
        log_event(logger, E.CHANNEL_RECONNECT, attempt=attempts, max=self.max_reconnect_attempts, delay=delay)

    def _schedule_reconnect(self, attempts: int) -> float:
        delay = min(self.reconnect_delay * attempts, self.max_reconnect_delay)
        self._reconnect_timer = self.scheduler.call_later(delay, self.connect)
        return delay

    def close(self) -> None:
        """主动关闭：取消重连与订阅复检定时器，不再自动重连。"""
        with self._lock:
            self._closing = True
            self.scheduler.cancel(self._reconnect_timer)
            self.scheduler.cancel(self._revalidate_timer)
            self._reconnect_timer = None
            self._revalidate_timer = None
            self._revalidate_interval = 0.0
            channel, self._channel = self._channel, None
            if self._state != ConnectionState.FAILED:
                self._state = ConnectionState.DISCONNECTED
        if channel is not None:
            channel.close()

    def reset(self) -> bool:
        """从 FAILED 恢复：清零计数、关闭提示并重新连接。"""
        with self._lock:
            self.scheduler.cancel(self._reconnect_timer)
            self._reconnect_timer = None
            self.attempts = 0
            self._state = ConnectionState.DISCONNECTED
        if self.status is not None:
            self.status.dismiss(STATUS_CHANNEL)
        return self.connect()

    # ─── 消息 ────────────────────────────────────────────────────────────────
    def on_message(self, raw: Any) -> bool:
        """解析并分发一条服务端消息，已处理返回 True。"""
        try:
            if isinstance(raw, (bytes, str)):
                message = ChannelMessage.model_validate_json(raw)
            else:
                message = ChannelMessage.model_validate(raw)
        except ValidationError as e:
            log_event(logger, E.MESSAGE_INVALID, level="warning", error=f"{e.error_count()} error(s)", raw=raw)
            return False

        if message.type in KEEPALIVE_TYPES:
            self.send({"type": MESSAGE_PONG})
            return True

        with self._lock:
            handlers = list(self._handlers.get(message.type, []))
        if not handlers:
            if message.type not in KNOWN_MESSAGE_TYPES:
                log_event(logger, E.MESSAGE_UNKNOWN, level="warning", type=message.type)
            return False

        for handler in handlers:
            try:
                handler(message.data)
            except Exception as e:
                log_event(logger, E.MESSAGE_HANDLER_FAIL, level="warning", type=message.type, error=e)
        return True

    def send(self, message: Dict[str, Any]) -> bool:
        with self._lock:
            channel = self._channel if self._state == ConnectionState.CONNECTED else None
        if channel is None:
            return False
        try:
            channel.send(json.dumps(message, ensure_ascii=False))
        except ChannelError as e:
            log_event(logger, E.CHANNEL_ERROR, level="warning", op="send", error=e)
            return False
        return True

    def send_presence(self, status: str) -> bool:
        return self.send({
            "type": "presence",
            "status": status,
            "userId": self.user_id,
            "timestamp": self.clock.now_ms(),
        })

    # ─── 推送订阅 ────────────────────────────────────────────────────────────
    def stored_subscription(self) -> Optional[SubscriptionRecord]:
        try:
            data = self.storage.get(SUBSCRIPTION_STORAGE_KEY)
        except Exception as e:
            logger.warning("读取订阅记录失败: %s", e)
            return None
        if not isinstance(data, dict):
            return None
        try:
            return SubscriptionRecord.model_validate(data)
        except ValidationError:
            logger.warning("订阅记录格式无效，已忽略")
            return None

    def _client(self) -> SubscriptionClient:
        if self.subscriptions is None:
            raise SubscriptionError("subscription endpoints are not configured")
        return self.subscriptions

    def _check(self, record: SubscriptionRecord) -> bool:
        try:
            valid = self._client().validate(record.endpoint, record.user_id)
        except SubscriptionError as e:
            log_event(logger, E.SUBSCRIPTION_INVALID, level="warning", endpoint=record.endpoint, error=e)
            return False
        if valid:
            log_event(logger, E.SUBSCRIPTION_VALID, endpoint=record.endpoint)
        else:
            log_event(logger, E.SUBSCRIPTION_INVALID, level="warning", endpoint=record.endpoint)
        return valid

    def _register(self, subscription: Dict[str, Any], user_type: str) -> SubscriptionRecord:
        client = self._client()
        last_error: Optional[SubscriptionError] = None
        for attempt in (1, 2):
            try:
                client.register(subscription, self.user_id, user_type)
            except SubscriptionError as e:
                last_error = e
                log_event(logger, E.SUBSCRIPTION_REGISTER_FAIL, level="warning", attempt=attempt, error=e)
                continue
            record = SubscriptionRecord(
                endpoint=str(subscription["endpoint"]),
                user_id=self.user_id,
                user_type=user_type,
                created_at=self.clock.now_ms(),
                subscription=subscription,
            )
            self.storage.set(SUBSCRIPTION_STORAGE_KEY, record.to_storage())
            log_event(logger, E.SUBSCRIPTION_REGISTER, endpoint=record.endpoint, attempt=attempt)
            if self.status is not None:
                self.status.dismiss(STATUS_SUBSCRIPTION)
            return record

        log_event(logger, E.SUBSCRIPTION_SURFACED, level="error", error=last_error)
        if self.status is not None:
            self.status.report(
                STATUS_SUBSCRIPTION,
                "No se pudo activar las notificaciones push.",
                endpoint=subscription.get("endpoint"),
            )
        raise SubscriptionError(f"push subscription rejected twice: {last_error}")

    def subscribe(self, subscription: Dict[str, Any], user_type: str = "student") -> SubscriptionRecord:
        """注册推送订阅；已有同一 endpoint 的记录时先向服务端确认，无效才重新注册。"""
        endpoint = subscription.get("endpoint") if isinstance(subscription, dict) else None
        if not endpoint:
            raise SubscriptionError("subscription without endpoint")

        stored = self.stored_subscription()
        if stored is not None and stored.endpoint == endpoint and stored.user_id == self.user_id:
            if self._check(stored):
                return stored
        return self._register(subscription, user_type)

    def revalidate(self) -> bool:
        """确认已存储的订阅仍有效，无效时用原订阅对象重新注册。"""
        stored = self.stored_subscription()
        if stored is None:
            return False
        if self._check(stored):
            return True
        if not stored.subscription:
            subscription = {"endpoint": stored.endpoint}
        else:
            subscription = dict(stored.subscription)
        try:
            self._register(subscription, stored.user_type)
        except SubscriptionError:
            return False
        return True

    def start_revalidation(self, interval: float) -> None:
        with self._lock:
            self.scheduler.cancel(self._revalidate_timer)
            self._revalidate_interval = max(1.0, float(interval))
            self._revalidate_timer = self.scheduler.call_later(self._revalidate_interval, self._on_revalidate)

    def _on_revalidate(self) -> None:
        with self._lock:
            if not self._revalidate_interval:
                return
            self._revalidate_timer = self.scheduler.call_later(self._revalidate_interval, self._on_revalidate)
        self.revalidate()
