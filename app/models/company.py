from sqlalchemy import BigInteger, Column, ForeignKey, Text, func
from sqlalchemy.dialects.postgresql import JSONB, TIMESTAMP
from sqlalchemy.orm import relationship

from app.database import Base


class Company(Base):
    __tablename__ = "companies"

    id = Column(BigInteger, primary_key=True, autoincrement=True)
    user_id = Column(BigInteger, ForeignKey("users.id"), nullable=False, unique=True)
    name = Column(Text, nullable=False)
    slug = Column(Text, unique=True)
    short_description = Column(Text)
    industry = Column(Text)
    primary_goal = Column(Text)
    contact_email = Column(Text)
    contact_phone = Column(Text)
    website = Column(Text)
    status = Column(Text, nullable=False, default="active")  # active, inactive, archived
    settings = Column(JSONB, nullable=False, default=dict)
    created_at = Column(TIMESTAMP(timezone=True), server_default=func.now())
    updated_at = Column(TIMESTAMP(timezone=True), server_default=func.now(), onupdate=func.now())

    user = relationship("User", back_populates="company")
    subscription = relationship("CompanySubscription", back_populates="company", uselist=False)
    assistants = relationship("Assistant", back_populates="company", order_by="Assistant.id")
