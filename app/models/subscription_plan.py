from sqlalchemy import BigInteger, Boolean, Column, Integer, Numeric, Text, func
from sqlalchemy.dialects.postgresql import JSONB, TIMESTAMP

from app.database import Base


class SubscriptionPlan(Base):
    __tablename__ = "subscription_plans"

    id = Column(BigInteger, primary_key=True, autoincrement=True)
    code = Column(Text, nullable=False, unique=True)
    name = Column(Text, nullable=False)
    description = Column(Text)
    is_active = Column(Boolean, nullable=False, default=True)
    is_public = Column(Boolean, nullable=False, default=True)
    is_enterprise = Column(Boolean, nullable=False, default=False)
    billing_period_days = Column(Integer, nullable=False, default=30)
    currency = Column(Text, nullable=False, default="TJS")
    price = Column(Numeric(12, 2), nullable=False, default=0)
    included_chats = Column(Integer, nullable=False, default=0)
    overage_chat_price = Column(Numeric(12, 2), nullable=False, default=0)
    assistant_limit = Column(Integer, nullable=False, default=1)
    integrations_per_channel_limit = Column(Integer, nullable=False, default=1)
    sort_order = Column(Integer, nullable=False, default=0)
    features = Column(JSONB, nullable=False, default=dict)
    created_at = Column(TIMESTAMP(timezone=True), server_default=func.now())
    updated_at = Column(TIMESTAMP(timezone=True), server_default=func.now(), onupdate=func.now())
