"""
beacon/events.py — 结构化事件日志

提供统一的事件类型常量（E 类）和 log_event() 格式化方法。
采集、缓冲、投递、实时通道的每一次状态变化都通过此模块记录，确保日志可 grep / 统计。

格式：event=xxx | key=val | key=val

用法：
    from beacon.log import get_logger
    from beacon.events import log_event, E

    logger = get_logger(__name__)
    log_event(logger, E.BATCH_SEND_START, size=3, attempt=1)
    # 输出：event=batch.send.start | size=3 | attempt=1
"""

import logging
from typing import Any


class E:
    """结构化事件类型常量，按功能模块分组。"""

    # ── 采集 Capture ───────────────────────────────────────────────────────────
    CAPTURE_ERROR = "capture.error"
    CAPTURE_CLOCK_SKEW = "capture.clock_skew"
    SESSION_NEW = "session.new"
    SESSION_STORAGE_FAIL = "session.storage_fail"

    # ── 缓冲 Buffer ────────────────────────────────────────────────────────────
    BUFFER_EVICT = "buffer.evict"
    BUFFER_FULL = "buffer.full"

    # ── 批量投递 Batch ─────────────────────────────────────────────────────────
    DISPATCH_START = "dispatch.start"
    DISPATCH_STOP = "dispatch.stop"
    BATCH_SEND_START = "batch.send.start"
    BATCH_SEND_COMPLETE = "batch.send.complete"
    BATCH_SEND_FAIL = "batch.send.fail"
    BATCH_RETRY = "batch.retry"
    BATCH_RETRY_EVICTED = "batch.retry.evicted"
    BATCH_DROP = "batch.drop"
    BATCH_FINAL_FLUSH = "batch.final_flush"
    BEACON_SEND_FAIL = "batch.beacon.fail"

    # ── 实时通道 Channel ───────────────────────────────────────────────────────
    CHANNEL_CONNECT = "channel.connect"
    CHANNEL_OPEN = "channel.open"
    CHANNEL_CLOSE = "channel.close"
    CHANNEL_ERROR = "channel.error"
    CHANNEL_RECONNECT = "channel.reconnect"
    CHANNEL_FAILED = "channel.failed"
    MESSAGE_INVALID = "channel.message.invalid"
    MESSAGE_UNKNOWN = "channel.message.unknown"
    MESSAGE_HANDLER_FAIL = "channel.message.handler_fail"

    # ── 推送订阅 Subscription ──────────────────────────────────────────────────
    SUBSCRIPTION_REGISTER = "subscription.register"
    SUBSCRIPTION_REGISTER_FAIL = "subscription.register.fail"
    SUBSCRIPTION_VALID = "subscription.valid"
    SUBSCRIPTION_INVALID = "subscription.invalid"
    SUBSCRIPTION_SURFACED = "subscription.surfaced"

    # ── 状态提示 Status ────────────────────────────────────────────────────────
    STATUS_RAISE = "status.raise"
    STATUS_DISMISS = "status.dismiss"

    # ── 接收端 Receiver ────────────────────────────────────────────────────────
    INGEST_ACCEPT = "ingest.accept"
    INGEST_REJECT = "ingest.reject"
    HUB_JOIN = "hub.join"
    HUB_LEAVE = "hub.leave"
    HUB_BROADCAST = "hub.broadcast"
    HUB_AUTH_FAIL = "hub.auth_fail"

    # ── 系统 System ────────────────────────────────────────────────────────────
    SYSTEM_STARTUP = "system.startup"
    SYSTEM_DB_INIT = "system.db_init"


def log_event(
    logger: logging.Logger,
    event: str,
    level: str = "info",
    **fields: Any,
) -> None:
    """
    记录结构化事件日志，格式：event=xxx | key=val | key=val

    示例：
        log_event(logger, E.BATCH_DROP, level="error", size=20, attempts=4)
        # → event=batch.drop | size=20 | attempts=4
    """
    parts = [f"event={event}"]
    for k, v in fields.items():
        sv = str(v) if not isinstance(v, str) else v
        # 截断超长字段，避免单行日志过大
        if len(sv) > 300:
            sv = sv[:297] + "..."
        parts.append(f"{k}={sv}")
    msg = " | ".join(parts)
    getattr(logger, level)(msg, stacklevel=2)
