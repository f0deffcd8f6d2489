from .base import Base, BigInteger, Column, String, Integer, DateTime, Text


class TrackedEvent(Base):
    __tablename__ = "tracked_events"

    # 客户端生成的事件 id 即主键，重复投递的批次按 id 去重
    id = Column(String(64), primary_key=True)
    event_type = Column(String(64), index=True)
    session_id = Column(String(120), index=True)
    user_id = Column(String(255), index=True)
    captured_at_ms = Column(BigInteger, index=True)
    version = Column(Integer, default=1)
    payload_json = Column(Text)

    received_at = Column(DateTime, index=True)
