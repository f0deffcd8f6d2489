"""
beacon/tracker.py — 组装入口

build_tracker() 一次性把 collector → buffer → dispatcher 串起来，对外只暴露
track / flush / start / shutdown / stats；build_notifier() 组装实时通道。
两条路径互相独立，可以只用其中一条。

    tracker = build_tracker()
    tracker.start()
    tracker.track({"type": "page_view", "page": "/egresados", "title": "Egresados"})
    ...
    tracker.shutdown()
"""

import threading
from typing import Any, Callable, Dict, List, Mapping, Optional

from beacon.buffer import EventBuffer
from beacon.channel import Channel, WebSocketChannel
from beacon.collector import EventCollector
from beacon.connection import ConnectionManager
from beacon.dispatcher import BatchDispatcher
from beacon.events import log_event, E
from beacon.log import get_logger
from beacon.models.event import RecordBase
from beacon.platform import Platform
from beacon.session import SessionTracker
from beacon.settings import BeaconSettings
from beacon.status import StatusBoard
from beacon.subscription import SubscriptionClient
from beacon.transport import HttpTransport, Transport

logger = get_logger(__name__)


class Tracker:
    def __init__(
        self,
        collector: EventCollector,
        buffer: EventBuffer,
        dispatcher: BatchDispatcher,
        platform: Platform,
        status: StatusBoard,
        owns_platform: bool = False,
    ):
        self.collector = collector
        self.buffer = buffer
        self.dispatcher = dispatcher
        self.platform = platform
        self.status = status
        self.owns_platform = owns_platform
        self._closed = False
        self._lock = threading.Lock()

    def track(self, raw: Any) -> Optional[RecordBase]:
        """采集一个原始信号；关闭后调用直接忽略。"""
        if self._closed:
            return None
        record = self.collector.on_event(raw)
        self.track_event(record)
        return record

    def track_event(self, record: RecordBase) -> None:
        if self._closed:
            return
        self.buffer.push(record)
        if self.buffer.is_full:
            self.dispatcher.notify_full()

    def flush(self) -> List[RecordBase]:
        """立即触发一次投递，返回本次取出的批次。"""
        return self.dispatcher.tick()

    def start(self) -> "Tracker":
        self.dispatcher.start()
        return self

    def shutdown(self) -> int:
        with self._lock:
            if self._closed:
                return 0
            self._closed = True
        handed = self.dispatcher.shutdown()
        if self.owns_platform:
            self.platform.scheduler.close()
        return handed

    @property
    def pending(self) -> int:
        return len(self.buffer)

    def stats(self) -> Dict[str, Any]:
        return self.dispatcher.snapshot()

    def __enter__(self) -> "Tracker":
        return self.start()

    def __exit__(self, exc_type, exc, tb) -> None:
        self.shutdown()


def build_tracker(
    settings: Optional[BeaconSettings] = None,
    platform: Optional[Platform] = None,
    transport: Optional[Transport] = None,
    status: Optional[StatusBoard] = None,
) -> Tracker:
    settings = settings or BeaconSettings.from_config()
    owns_platform = platform is None
    platform = platform or Platform.create(settings.storage_path)
    status = status or StatusBoard(platform.clock)
    transport = transport or HttpTransport(
        settings.events_endpoint,
        timeout=settings.request_timeout,
        token=settings.auth_token,
    )

    session = SessionTracker(
        platform.storage,
        platform.clock,
        idle_timeout_ms=settings.session_idle_timeout_ms,
        user_id=settings.user_id,
    )
    collector = EventCollector(
        session,
        platform.clock,
        privacy_mode=settings.privacy_mode,
        privacy_salt=settings.privacy_salt,
    )
    buffer = EventBuffer(settings.max_buffer_size)
    dispatcher = BatchDispatcher(
        buffer,
        transport,
        platform.scheduler,
        batch_size=settings.batch_size,
        interval=settings.batch_interval,
        retry_attempts=settings.retry_attempts,
        backoff_base=settings.retry_backoff_base,
        status=status,
    )
    log_event(
        logger,
        E.SYSTEM_STARTUP,
        component="tracker",
        interval=settings.batch_interval,
        max_buffer=settings.max_buffer_size,
        privacy=settings.privacy_mode,
    )
    return Tracker(collector, buffer, dispatcher, platform, status, owns_platform=owns_platform)


def build_notifier(
    settings: Optional[BeaconSettings] = None,
    platform: Optional[Platform] = None,
    channel_factory: Optional[Callable[[], Channel]] = None,
    subscriptions: Optional[SubscriptionClient] = None,
    status: Optional[StatusBoard] = None,
    handlers: Optional[Mapping[str, Callable[[Any], Any]]] = None,
) -> ConnectionManager:
    settings = settings or BeaconSettings.from_config()
    platform = platform or Platform.create(settings.storage_path)
    status = status or StatusBoard(platform.clock)
    if channel_factory is None:
        channel_factory = lambda: WebSocketChannel(platform.scheduler)  # noqa: E731
    if subscriptions is None:
        subscriptions = SubscriptionClient(
            settings.subscribe_endpoint,
            settings.validate_endpoint,
            timeout=settings.request_timeout,
            token=settings.auth_token,
        )

    manager = ConnectionManager(
        settings.realtime_url,
        channel_factory,
        platform.scheduler,
        platform.storage,
        platform.clock,
        token=settings.auth_token,
        user_id=settings.user_id,
        max_reconnect_attempts=settings.max_reconnect_attempts,
        reconnect_delay=settings.reconnect_delay,
        max_reconnect_delay=settings.max_reconnect_delay,
        subscriptions=subscriptions,
        status=status,
    )
    for message_type, handler in (handlers or {}).items():
        manager.on(message_type, handler)
    manager.start_revalidation(settings.revalidate_interval)
    log_event(logger, E.SYSTEM_STARTUP, component="notifier", url=settings.realtime_url)
    return manager
