from typing import Any

from pydantic import BaseModel, ConfigDict, Field

MESSAGE_NOTIFICATION = "notification"
MESSAGE_ALERT = "alert"
MESSAGE_SYSTEM = "system"
MESSAGE_HEARTBEAT = "heartbeat"
MESSAGE_PING = "ping"
MESSAGE_PONG = "pong"

KNOWN_MESSAGE_TYPES = {
    MESSAGE_NOTIFICATION,
    MESSAGE_ALERT,
    MESSAGE_SYSTEM,
    MESSAGE_HEARTBEAT,
    MESSAGE_PING,
}
KEEPALIVE_TYPES = {MESSAGE_HEARTBEAT, MESSAGE_PING}


class ChannelMessage(BaseModel):
    model_config = ConfigDict(extra="allow")

    type: str = Field(min_length=1, max_length=64)
    data: Any = None
