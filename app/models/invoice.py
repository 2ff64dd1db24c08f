from sqlalchemy import BigInteger, Column, ForeignKey, Integer, Numeric, Text, func
from sqlalchemy.dialects.postgresql import JSONB, TIMESTAMP
from sqlalchemy.orm import relationship

from app.database import Base


class Invoice(Base):
    __tablename__ = "invoices"

    id = Column(BigInteger, primary_key=True, autoincrement=True)
    company_id = Column(BigInteger, ForeignKey("companies.id"), nullable=False)
    user_id = Column(BigInteger, ForeignKey("users.id"), nullable=False)
    company_subscription_id = Column(BigInteger, ForeignKey("company_subscriptions.id"))
    subscription_plan_id = Column(BigInteger, ForeignKey("subscription_plans.id"))
    number = Column(Text, nullable=False, unique=True)
    status = Column(Text, nullable=False, default="draft")  # draft, issued, paid, overdue, void, failed
    currency = Column(Text, nullable=False, default="TJS")
    subtotal = Column(Numeric(12, 2), nullable=False, default=0)
    overage_amount = Column(Numeric(12, 2), nullable=False, default=0)
    total = Column(Numeric(12, 2), nullable=False, default=0)
    amount_paid = Column(Numeric(12, 2), nullable=False, default=0)
    chat_included = Column(Integer, nullable=False, default=0)
    chat_used = Column(Integer, nullable=False, default=0)
    chat_overage = Column(Integer, nullable=False, default=0)
    unit_overage_price = Column(Numeric(12, 2), nullable=False, default=0)
    period_started_at = Column(TIMESTAMP(timezone=True))
    period_ended_at = Column(TIMESTAMP(timezone=True))
    issued_at = Column(TIMESTAMP(timezone=True))
    due_at = Column(TIMESTAMP(timezone=True))
    paid_at = Column(TIMESTAMP(timezone=True))
    notes = Column(Text)
    invoice_metadata = Column("metadata", JSONB, nullable=False, default=dict)
    created_at = Column(TIMESTAMP(timezone=True), server_default=func.now())
    updated_at = Column(TIMESTAMP(timezone=True), server_default=func.now(), onupdate=func.now())

    subscription = relationship("CompanySubscription")
    plan = relationship("SubscriptionPlan")
