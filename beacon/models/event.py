"""
beacon/models/event.py — 事件记录（按 type 区分的标签联合）

线上格式为 camelCase JSON：
    {"id", "type", "timestamp", "sessionId", "userId", "version", "payload"}

payload 的形状由 type 决定，集合封闭、带版本号，在采集边界校验。
"""

from enum import Enum
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter
from pydantic.alias_generators import to_camel

PAYLOAD_VERSION = 1
ELEMENT_TEXT_LIMIT = 50
TRACKED_ATTRIBUTES = ("data-track", "data-course-id", "data-lesson-id", "href", "name")
SCROLL_CHECKPOINTS = (25, 50, 75, 90, 100)


class EventType(str, Enum):
    PAGE_VIEW = "page_view"
    CLICK = "click"
    SCROLL_DEPTH = "scroll_depth"
    FORM_SUBMIT = "form_submit"
    ERROR = "error"
    PERFORMANCE = "performance"
    EDUCATIONAL_INTERACTION = "educational_interaction"
    TIME_ON_PAGE = "time_on_page"


class WireModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="ignore",
    )


# ─── Payload shapes (version 1) ───────────────────────────────────────────────
class PageViewPayload(WireModel):
    page: Optional[str] = None
    title: Optional[str] = None
    referrer: Optional[str] = None


class ElementInfo(WireModel):
    tag: str = ""
    id: Optional[str] = None
    classes: List[str] = Field(default_factory=list)
    text: Optional[str] = Field(default=None, max_length=ELEMENT_TEXT_LIMIT)
    attributes: Dict[str, str] = Field(default_factory=dict)


class ClickPayload(WireModel):
    element: Optional[ElementInfo] = None
    x: Optional[int] = None
    y: Optional[int] = None
    link_type: Optional[Literal["email", "phone", "anchor", "internal", "external"]] = None


class ScrollDepthPayload(WireModel):
    percent: int = Field(default=0, ge=0, le=100)
    checkpoint: Optional[int] = None
    page: Optional[str] = None


class FormSubmitPayload(WireModel):
    form_id: Optional[str] = None
    fields: List[str] = Field(default_factory=list)
    page: Optional[str] = None


class ErrorPayload(WireModel):
    kind: Literal["capture_error", "js_error", "network_error"] = "js_error"
    message: str = ""
    source: Optional[str] = None
    line: Optional[int] = None
    detail: Optional[str] = None


class PerformancePayload(WireModel):
    metric: str
    value: Optional[float] = None
    page: Optional[str] = None


class EducationalPayload(WireModel):
    action: Optional[str] = None
    course_id: Optional[str] = None
    lesson_id: Optional[str] = None
    assignment_id: Optional[str] = None


class TimeOnPagePayload(WireModel):
    total_ms: int = Field(default=0, ge=0)
    active_ms: int = Field(default=0, ge=0)
    engagement_rate: float = Field(default=0.0, ge=0.0, le=1.0)
    page: Optional[str] = None


# ─── Records ──────────────────────────────────────────────────────────────────
class RecordBase(WireModel):
    id: str = Field(min_length=1)
    timestamp: int = Field(ge=0)
    session_id: str
    user_id: Optional[str] = None
    version: int = PAYLOAD_VERSION

    def to_wire(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, mode="json")


class PageViewEvent(RecordBase):
    type: Literal["page_view"] = "page_view"
    payload: PageViewPayload = Field(default_factory=PageViewPayload)


class ClickEvent(RecordBase):
    type: Literal["click"] = "click"
    payload: ClickPayload = Field(default_factory=ClickPayload)


class ScrollDepthEvent(RecordBase):
    type: Literal["scroll_depth"] = "scroll_depth"
    payload: ScrollDepthPayload = Field(default_factory=ScrollDepthPayload)


class FormSubmitEvent(RecordBase):
    type: Literal["form_submit"] = "form_submit"
    payload: FormSubmitPayload = Field(default_factory=FormSubmitPayload)


class ErrorEvent(RecordBase):
    type: Literal["error"] = "error"
    payload: ErrorPayload = Field(default_factory=ErrorPayload)


class PerformanceEvent(RecordBase):
    type: Literal["performance"] = "performance"
    payload: PerformancePayload


class EducationalEvent(RecordBase):
    type: Literal["educational_interaction"] = "educational_interaction"
    payload: EducationalPayload = Field(default_factory=EducationalPayload)


class TimeOnPageEvent(RecordBase):
    type: Literal["time_on_page"] = "time_on_page"
    payload: TimeOnPagePayload = Field(default_factory=TimeOnPagePayload)


EventRecord = Annotated[
    Union[
        PageViewEvent,
        ClickEvent,
        ScrollDepthEvent,
        FormSubmitEvent,
        ErrorEvent,
        PerformanceEvent,
        EducationalEvent,
        TimeOnPageEvent,
    ],
    Field(discriminator="type"),
]

RECORD_MODELS = {
    EventType.PAGE_VIEW.value: PageViewEvent,
    EventType.CLICK.value: ClickEvent,
    EventType.SCROLL_DEPTH.value: ScrollDepthEvent,
    EventType.FORM_SUBMIT.value: FormSubmitEvent,
    EventType.ERROR.value: ErrorEvent,
    EventType.PERFORMANCE.value: PerformanceEvent,
    EventType.EDUCATIONAL_INTERACTION.value: EducationalEvent,
    EventType.TIME_ON_PAGE.value: TimeOnPageEvent,
}

_EVENT_ADAPTER = TypeAdapter(EventRecord)
_BATCH_ADAPTER = TypeAdapter(List[EventRecord])


def parse_event(data: Any) -> RecordBase:
    return _EVENT_ADAPTER.validate_python(data)


def parse_batch(data: Any) -> List[RecordBase]:
    return _BATCH_ADAPTER.validate_python(data)


def serialize_batch(records: List[RecordBase]) -> Dict[str, Any]:
    return {"events": [record.to_wire() for record in records]}
