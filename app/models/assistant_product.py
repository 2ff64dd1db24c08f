from sqlalchemy import BigInteger, Boolean, Column, ForeignKey, Integer, Numeric, Text, func
from sqlalchemy.dialects.postgresql import JSONB, TIMESTAMP

from app.database import Base


class AssistantProduct(Base):
    __tablename__ = "assistant_products"

    id = Column(BigInteger, primary_key=True, autoincrement=True)
    user_id = Column(BigInteger, ForeignKey("users.id"), nullable=False)
    company_id = Column(BigInteger, ForeignKey("companies.id"), nullable=False)
    assistant_id = Column(BigInteger, ForeignKey("assistants.id"), nullable=False)
    name = Column(Text, nullable=False)
    sku = Column(Text)
    description = Column(Text)
    terms_conditions = Column(Text)
    price = Column(Numeric(12, 2), nullable=False, default=0)
    currency = Column(Text, nullable=False, default="TJS")
    stock_quantity = Column(Integer, nullable=False, default=0)
    is_unlimited_stock = Column(Boolean, nullable=False, default=False)
    photo_urls = Column(JSONB, nullable=False, default=list)
    is_active = Column(Boolean, nullable=False, default=True)
    sort_order = Column(Integer, nullable=False, default=0)
    product_metadata = Column("metadata", JSONB, nullable=False, default=dict)
    created_at = Column(TIMESTAMP(timezone=True), server_default=func.now())
    updated_at = Column(TIMESTAMP(timezone=True), server_default=func.now(), onupdate=func.now())
