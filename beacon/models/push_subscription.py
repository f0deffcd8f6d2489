from .base import Base, Column, String, Integer, DateTime, Text


class PushSubscription(Base):
    __tablename__ = "push_subscriptions"

    endpoint = Column(String(500), primary_key=True)
    user_id = Column(String(255), index=True)
    user_type = Column(String(32), default="student")
    subscription_json = Column(Text)
    status = Column(Integer, default=1)  # 1=有效 0=已失效
    created_at = Column(DateTime)
    updated_at = Column(DateTime)
