"""
beacon/collector.py — 事件采集

EventCollector.on_event(raw) 把浏览器层面的原始信号（DOM 事件的可序列化快照）
映射为一条 EventRecord：

    {"type": "click", "target": {"tagName": "A", "id": "inscribete", ...}, "clientX": 10, "clientY": 20}
    {"type": "scroll", "scrollTop": 900, "scrollHeight": 2000, "viewportHeight": 800}
    {"type": "page_view", "page": "/egresados", "title": "Egresados"}

映射从不抛异常：无法识别或校验失败的输入转为 kind=capture_error 的 error 事件；
缺少目标元素等退化输入得到对应字段为空的记录。
"""

import math
import threading
from typing import Any, Callable, Dict, Mapping, Optional

from pydantic import ValidationError

from beacon.events import log_event, E
from beacon.log import get_logger
from beacon.models.event import (
    ELEMENT_TEXT_LIMIT,
    RECORD_MODELS,
    SCROLL_CHECKPOINTS,
    TRACKED_ATTRIBUTES,
    ErrorEvent,
    ErrorPayload,
    EventType,
    RecordBase,
)
from beacon.platform import Clock
from beacon.privacy import pseudonymize_user, scrub_payload
from beacon.session import SessionTracker, new_id

logger = get_logger(__name__)

# DOM 事件名 → 事件类型
TYPE_ALIASES = {
    "pageview": EventType.PAGE_VIEW.value,
    "load": EventType.PAGE_VIEW.value,
    "scroll": EventType.SCROLL_DEPTH.value,
    "submit": EventType.FORM_SUBMIT.value,
    "unhandledrejection": EventType.ERROR.value,
    "educational": EventType.EDUCATIONAL_INTERACTION.value,
}


class CaptureError(Exception):
    pass


def _text(value: Any, limit: int = 255) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    if not text:
        return None
    return text[:limit]


def _int(value: Any) -> Optional[int]:
    if value is None or value == "":
        return None
    try:
        return int(float(value))
    except (TypeError, ValueError):
        return None


def _float(value: Any) -> Optional[float]:
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    return number if math.isfinite(number) else None


def _first(raw: Mapping[str, Any], *keys: str) -> Any:
    for key in keys:
        value = raw.get(key)
        if value is not None and value != "":
            return value
    return None


def _page(raw: Mapping[str, Any]) -> Optional[str]:
    return _text(_first(raw, "page", "pathname", "path"), 500)


def classify_link(href: Optional[str], host: Optional[str] = None) -> Optional[str]:
    if not href:
        return None
    if href.startswith("mailto:"):
        return "email"
    if href.startswith("tel:"):
        return "phone"
    if href.startswith("#"):
        return "anchor"
    if href.startswith("/") or (host and host in href):
        return "internal"
    return "external"


def describe_element(target: Any) -> Optional[Dict[str, Any]]:
    if not isinstance(target, Mapping):
        return None
    classes = target.get("classList")
    if classes is None:
        classes = target.get("className") or ""
    if isinstance(classes, str):
        classes = classes.split()
    elif not isinstance(classes, (list, tuple)):
        classes = []
    raw_attrs = target.get("attributes") or {}
    attributes = {}
    if isinstance(raw_attrs, Mapping):
        for name in TRACKED_ATTRIBUTES:
            if raw_attrs.get(name) is not None:
                attributes[name] = str(raw_attrs[name])[:500]
    return {
        "tag": str(_first(target, "tagName", "tag") or "").lower(),
        "id": _text(target.get("id"), 120),
        "classes": [str(c) for c in classes if str(c).strip()],
        "text": _text(_first(target, "textContent", "text"), ELEMENT_TEXT_LIMIT),
        "attributes": attributes,
    }


def scroll_percent(raw: Mapping[str, Any]) -> int:
    explicit = _int(_first(raw, "percent", "scrollPercent"))
    if explicit is None:
        top = float(_first(raw, "scrollTop", "pageYOffset") or 0)
        height = float(raw.get("scrollHeight") or 0) - float(raw.get("viewportHeight") or 0)
        # 页面不足一屏时视为已完整浏览
        explicit = 100 if height <= 0 else int(round(top / height * 100))
    return max(0, min(100, explicit))


def reached_checkpoint(percent: int) -> Optional[int]:
    reached = [c for c in SCROLL_CHECKPOINTS if percent >= c]
    return reached[-1] if reached else None


# ─── Payload mappers ──────────────────────────────────────────────────────────
def _map_page_view(raw: Mapping[str, Any]) -> Dict[str, Any]:
    return {
        "page": _page(raw),
        "title": _text(raw.get("title")),
        "referrer": _text(raw.get("referrer"), 500),
    }


def _map_click(raw: Mapping[str, Any]) -> Dict[str, Any]:
    element = describe_element(raw.get("target"))
    href = element["attributes"].get("href") if element else None
    return {
        "element": element,
        "x": _int(_first(raw, "clientX", "x")),
        "y": _int(_first(raw, "clientY", "y")),
        "linkType": classify_link(href, _text(raw.get("host"))),
    }


def _map_scroll(raw: Mapping[str, Any]) -> Dict[str, Any]:
    percent = scroll_percent(raw)
    return {"percent": percent, "checkpoint": reached_checkpoint(percent), "page": _page(raw)}


def _map_form_submit(raw: Mapping[str, Any]) -> Dict[str, Any]:
    target = raw.get("target") if isinstance(raw.get("target"), Mapping) else {}
    fields = _first(raw, "fields") or target.get("fields") or []
    if isinstance(fields, Mapping):
        # 只保留字段名，从不采集字段值
        fields = list(fields.keys())
    return {
        "formId": _text(_first(raw, "formId") or target.get("id"), 120),
        "fields": [str(f)[:120] for f in fields][:100],
        "page": _page(raw),
    }


def _map_error(raw: Mapping[str, Any]) -> Dict[str, Any]:
    kind = str(raw.get("kind") or "js_error")
    if kind not in ("js_error", "network_error", "capture_error"):
        kind = "js_error"
    reason = raw.get("reason")
    return {
        "kind": kind,
        "message": _text(_first(raw, "message", "error") or reason, 1000) or "",
        "source": _text(_first(raw, "filename", "source", "url"), 500),
        "line": _int(_first(raw, "lineno", "line")),
        "detail": _text(raw.get("stack"), 2000),
    }


def _map_performance(raw: Mapping[str, Any]) -> Dict[str, Any]:
    metric = _text(_first(raw, "metric", "name"), 120)
    if metric is None:
        raise CaptureError("performance event without metric")
    return {"metric": metric, "value": _float(_first(raw, "value", "duration")), "page": _page(raw)}


def _map_educational(raw: Mapping[str, Any]) -> Dict[str, Any]:
    target = raw.get("target") if isinstance(raw.get("target"), Mapping) else {}
    dataset = target.get("dataset") if isinstance(target.get("dataset"), Mapping) else {}
    return {
        "action": _text(_first(raw, "action") or dataset.get("action"), 120),
        "courseId": _text(_first(raw, "courseId") or dataset.get("courseId"), 120),
        "lessonId": _text(_first(raw, "lessonId") or dataset.get("lessonId"), 120),
        "assignmentId": _text(_first(raw, "assignmentId") or dataset.get("assignmentId"), 120),
    }


def _map_time_on_page(raw: Mapping[str, Any]) -> Dict[str, Any]:
    total = max(0, _int(raw.get("totalTime")) or _int(raw.get("totalMs")) or 0)
    active = max(0, _int(raw.get("activeTime")) or _int(raw.get("activeMs")) or 0)
    active = min(active, total)
    return {
        "totalMs": total,
        "activeMs": active,
        "engagementRate": round(active / total, 4) if total else 0.0,
        "page": _page(raw),
    }


PAYLOAD_MAPPERS: Dict[str, Callable[[Mapping[str, Any]], Dict[str, Any]]] = {
    EventType.PAGE_VIEW.value: _map_page_view,
    EventType.CLICK.value: _map_click,
    EventType.SCROLL_DEPTH.value: _map_scroll,
    EventType.FORM_SUBMIT.value: _map_form_submit,
    EventType.ERROR.value: _map_error,
    EventType.PERFORMANCE.value: _map_performance,
    EventType.EDUCATIONAL_INTERACTION.value: _map_educational,
    EventType.TIME_ON_PAGE.value: _map_time_on_page,
}


class EventCollector:
    def __init__(
        self,
        session: SessionTracker,
        clock: Clock,
        privacy_mode: bool = False,
        privacy_salt: str = "",
    ):
        self.session = session
        self.clock = clock
        self.privacy_mode = bool(privacy_mode)
        self.privacy_salt = privacy_salt
        self._last_timestamp = 0
        self._lock = threading.Lock()

    def _next_timestamp(self) -> int:
        with self._lock:
            now = self.clock.now_ms()
            if now < self._last_timestamp:
                log_event(logger, E.CAPTURE_CLOCK_SKEW, level="debug", now=now, last=self._last_timestamp)
                now = self._last_timestamp
            self._last_timestamp = now
            return now

    def _identity(self) -> Dict[str, Optional[str]]:
        user_id = self.session.user_id
        if self.privacy_mode:
            user_id = pseudonymize_user(user_id, self.privacy_salt)
        return {"session_id": self.session.current(), "user_id": user_id}

    @staticmethod
    def resolve_type(raw: Mapping[str, Any]) -> str:
        event_type = str(raw.get("type") or "").strip().lower()
        if not event_type:
            raise CaptureError("missing event type")
        event_type = TYPE_ALIASES.get(event_type, event_type)
        if event_type not in PAYLOAD_MAPPERS:
            raise CaptureError(f"unknown event type: {event_type[:64]}")
        return event_type

    def _build(self, raw: Any, timestamp: int) -> RecordBase:
        if not isinstance(raw, Mapping):
            raise CaptureError(f"raw event must be a mapping, got {type(raw).__name__}")
        merged: Dict[str, Any] = dict(raw)
        if isinstance(raw.get("data"), Mapping):
            merged = {**raw["data"], **{k: v for k, v in raw.items() if k != "data"}}
        event_type = self.resolve_type(merged)
        payload = PAYLOAD_MAPPERS[event_type](merged)
        if self.privacy_mode:
            payload = scrub_payload(event_type, payload, self.privacy_salt)
        return RECORD_MODELS[event_type](
            id=new_id("evt", timestamp),
            timestamp=timestamp,
            payload=payload,
            **self._identity(),
        )

    def _capture_error(self, raw: Any, exc: Exception, timestamp: int) -> RecordBase:
        if isinstance(exc, ValidationError):
            message = f"invalid payload: {exc.error_count()} error(s)"
        else:
            message = str(exc) or type(exc).__name__
        try:
            detail = repr(raw)
        except Exception:
            detail = f"<unrepresentable {type(raw).__name__}>"
        try:
            identity = self._identity()
        except Exception:
            identity = {"session_id": "unknown", "user_id": None}
        return ErrorEvent(
            id=new_id("evt", timestamp),
            timestamp=timestamp,
            payload=ErrorPayload(kind="capture_error", message=message[:1000], detail=detail[:2000]),
            **identity,
        )

    def on_event(self, raw: Any) -> RecordBase:
        """原始信号 → EventRecord。纯映射，不抛异常。"""
        timestamp = self._next_timestamp()
        try:
            return self._build(raw, timestamp)
        except Exception as exc:
            log_event(logger, E.CAPTURE_ERROR, level="warning", reason=exc.__class__.__name__, error=exc)
            return self._capture_error(raw, exc, timestamp)
