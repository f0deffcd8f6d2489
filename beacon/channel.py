"""
beacon/channel.py — 实时通道能力

Channel 只负责一条连接的生命周期，重连策略由 ConnectionManager 决定：
• open(url, handlers) — 发起连接，结果通过 handlers 回调通知
• send(text)          — 发送一条文本帧；连接未就绪时抛 ChannelError
• close()             — 主动关闭，之后仍会回调一次 on_close

WebSocketChannel 基于 websocket-client，run_forever 在独立守护线程中运行；
回调通过 Scheduler 投递回事件循环，保证与投递侧回调串行执行。
"""

import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Callable, Optional

import websocket

from beacon.log import get_logger
from beacon.platform import Scheduler

logger = get_logger(__name__)


class ChannelError(Exception):
    pass


def _noop(*_args: Any) -> None:
    return None


@dataclass
class ChannelHandlers:
    on_open: Callable[[], Any] = _noop
    on_message: Callable[[str], Any] = _noop
    on_close: Callable[[Optional[int], Optional[str]], Any] = _noop
    on_error: Callable[[Exception], Any] = _noop


class Channel(ABC):
    @abstractmethod
    def open(self, url: str, handlers: ChannelHandlers) -> None:
        ...

    @abstractmethod
    def send(self, text: str) -> None:
        ...

    @abstractmethod
    def close(self) -> None:
        ...


class WebSocketChannel(Channel):
    def __init__(
        self,
        scheduler: Scheduler,
        ping_interval: float = 25.0,
        ping_timeout: float = 10.0,
    ):
        self.scheduler = scheduler
        self.ping_interval = ping_interval
        self.ping_timeout = ping_timeout
        self._app: Optional[websocket.WebSocketApp] = None
        self._thread: Optional[threading.Thread] = None
        self._connected = threading.Event()

    @property
    def connected(self) -> bool:
        return self._connected.is_set()

    def open(self, url: str, handlers: ChannelHandlers) -> None:
        if self._app is not None:
            raise ChannelError("channel already opened")

        def _on_open(ws):
            self._connected.set()
            self.scheduler.submit(handlers.on_open)

        def _on_message(ws, message):
            if isinstance(message, bytes):
                message = message.decode("utf-8", errors="replace")
            self.scheduler.submit(lambda: handlers.on_message(message))

        def _on_error(ws, error):
            self.scheduler.submit(lambda: handlers.on_error(error))

        def _on_close(ws, code, reason):
            self._connected.clear()
            self.scheduler.submit(lambda: handlers.on_close(code, reason))

        self._app = websocket.WebSocketApp(
            url,
            on_open=_on_open,
            on_message=_on_message,
            on_error=_on_error,
            on_close=_on_close,
        )
        self._thread = threading.Thread(
            target=self._app.run_forever,
            kwargs={"ping_interval": self.ping_interval, "ping_timeout": self.ping_timeout},
            name="beacon-ws",
            daemon=True,
        )
        self._thread.start()

    def send(self, text: str) -> None:
        if self._app is None or not self.connected:
            raise ChannelError("channel is not open")
        try:
            self._app.send(text)
        except websocket.WebSocketException as e:
            raise ChannelError(f"send failed: {e}") from e

    def close(self) -> None:
        app, self._app = self._app, None
        self._connected.clear()
        if app is not None:
            app.close()
