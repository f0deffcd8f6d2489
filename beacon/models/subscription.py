from typing import Any, Dict, Optional

from pydantic import Field

from .event import WireModel

SUBSCRIPTION_STORAGE_KEY = "bge_push_subscription"


class SubscriptionRecord(WireModel):
    """推送订阅记录，只由 ConnectionManager 读写。"""

    endpoint: str = Field(min_length=1)
    user_id: Optional[str] = None
    user_type: str = "student"
    created_at: int = Field(ge=0)
    subscription: Dict[str, Any] = Field(default_factory=dict)

    def to_storage(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, mode="json")
