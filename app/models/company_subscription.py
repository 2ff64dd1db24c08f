from sqlalchemy import BigInteger, Column, ForeignKey, Integer, Numeric, Text, func
from sqlalchemy.dialects.postgresql import JSONB, TIMESTAMP
from sqlalchemy.orm import relationship

from app.database import Base


class CompanySubscription(Base):
    __tablename__ = "company_subscriptions"

    id = Column(BigInteger, primary_key=True, autoincrement=True)
    company_id = Column(BigInteger, ForeignKey("companies.id"), nullable=False, unique=True)
    user_id = Column(BigInteger, ForeignKey("users.id"), nullable=False, unique=True)
    subscription_plan_id = Column(BigInteger, ForeignKey("subscription_plans.id"))
    status = Column(Text, nullable=False, default="inactive")
    quantity = Column(Integer, nullable=False, default=0)
    billing_cycle_days = Column(Integer, nullable=False, default=30)
    assistant_limit_override = Column(Integer)
    integrations_per_channel_override = Column(Integer)
    included_chats_override = Column(Integer)
    overage_chat_price_override = Column(Numeric(12, 2))
    chat_count_current_period = Column(Integer, nullable=False, default=0)
    chat_period_started_at = Column(TIMESTAMP(timezone=True))
    chat_period_ends_at = Column(TIMESTAMP(timezone=True))
    starts_at = Column(TIMESTAMP(timezone=True))
    expires_at = Column(TIMESTAMP(timezone=True))
    renewal_due_at = Column(TIMESTAMP(timezone=True))
    paid_at = Column(TIMESTAMP(timezone=True))
    canceled_at = Column(TIMESTAMP(timezone=True))
    grace_ends_at = Column(TIMESTAMP(timezone=True))
    subscription_metadata = Column("metadata", JSONB, nullable=False, default=dict)
    created_at = Column(TIMESTAMP(timezone=True), server_default=func.now())
    updated_at = Column(TIMESTAMP(timezone=True), server_default=func.now(), onupdate=func.now())

    company = relationship("Company", back_populates="subscription")
    plan = relationship("SubscriptionPlan")
