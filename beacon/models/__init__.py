# 客户端管线模型（pydantic）
from .event import (
    EventType,
    EventRecord,
    RecordBase,
    RECORD_MODELS,
    parse_event,
    parse_batch,
    serialize_batch,
)
from .subscription import SubscriptionRecord
from .message import ChannelMessage
# 接收端存储模型（SQLAlchemy）
from .tracked_event import TrackedEvent
from .push_subscription import PushSubscription
# 导入基础模型
from .base import Base
