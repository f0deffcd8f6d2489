"""
beacon/settings.py — 类型化配置

BeaconSettings.from_config() 读取 config.yaml 中的 beacon 段并校验；
显式传入的关键字参数优先于配置文件。时间类字段在配置中以毫秒表示。
"""

from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field

from beacon.config import cfg


class BeaconSettings(BaseModel):
    model_config = ConfigDict(extra="ignore")

    # 投递
    batch_interval_ms: int = Field(default=30000, ge=100)
    max_buffer_size: int = Field(default=100, ge=1)
    batch_size: Optional[int] = Field(default=None, ge=1)
    retry_attempts: int = Field(default=3, ge=0)
    retry_backoff_base_ms: int = Field(default=1000, ge=0)
    request_timeout_ms: int = Field(default=5000, ge=100)

    # 隐私
    privacy_mode: bool = False
    privacy_salt: str = ""

    # 端点
    events_endpoint: str = "http://127.0.0.1:8001/api/analytics/events"
    subscribe_endpoint: str = "http://127.0.0.1:8001/api/notifications/subscribe"
    validate_endpoint: str = "http://127.0.0.1:8001/api/notifications/validate-subscription"
    realtime_url: str = "ws://127.0.0.1:8001/ws"
    auth_token: str = ""

    # 实时通道
    reconnect_delay_ms: int = Field(default=3000, ge=0)
    max_reconnect_attempts: int = Field(default=5, ge=1)
    max_reconnect_delay_ms: int = Field(default=60000, ge=0)
    revalidate_interval_ms: int = Field(default=6 * 60 * 60 * 1000, ge=1000)

    # 会话与存储
    session_idle_timeout_ms: int = Field(default=30 * 60 * 1000, ge=0)
    storage_path: Optional[str] = None
    user_id: Optional[str] = None

    @classmethod
    def from_config(cls, **overrides: Any) -> "BeaconSettings":
        section = cfg.get("beacon", {}) or {}
        if not isinstance(section, dict):
            section = {}
        section.update({k: v for k, v in overrides.items() if v is not None})
        return cls.model_validate(section)

    @property
    def batch_interval(self) -> float:
        return self.batch_interval_ms / 1000.0

    @property
    def retry_backoff_base(self) -> float:
        return self.retry_backoff_base_ms / 1000.0

    @property
    def request_timeout(self) -> float:
        return self.request_timeout_ms / 1000.0

    @property
    def reconnect_delay(self) -> float:
        return self.reconnect_delay_ms / 1000.0

    @property
    def max_reconnect_delay(self) -> float:
        return self.max_reconnect_delay_ms / 1000.0

    @property
    def revalidate_interval(self) -> float:
        return self.revalidate_interval_ms / 1000.0
