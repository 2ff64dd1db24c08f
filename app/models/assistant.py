from sqlalchemy import BigInteger, Boolean, Column, ForeignKey, Text, func
from sqlalchemy.dialects.postgresql import JSONB, TIMESTAMP
from sqlalchemy.orm import relationship

from app.database import Base


class Assistant(Base):
    __tablename__ = "assistants"

    id = Column(BigInteger, primary_key=True, autoincrement=True)
    user_id = Column(BigInteger, ForeignKey("users.id"), nullable=False)
    company_id = Column(BigInteger, ForeignKey("companies.id"), nullable=False)
    name = Column(Text, nullable=False)
    openai_assistant_id = Column(Text, unique=True)
    openai_vector_store_id = Column(Text)
    instructions = Column(Text)
    restrictions = Column(Text)
    conversation_tone = Column(Text, nullable=False, default="polite")  # polite, concise, friendly, formal, custom
    is_active = Column(Boolean, nullable=False, default=True)
    enable_file_search = Column(Boolean, nullable=False, default=True)
    enable_file_analysis = Column(Boolean, nullable=False, default=False)
    enable_voice = Column(Boolean, nullable=False, default=False)
    enable_web_search = Column(Boolean, nullable=False, default=False)
    settings = Column(JSONB, nullable=False, default=dict)
    created_at = Column(TIMESTAMP(timezone=True), server_default=func.now())
    updated_at = Column(TIMESTAMP(timezone=True), server_default=func.now(), onupdate=func.now())

    company = relationship("Company", back_populates="assistants")
    channels = relationship("AssistantChannel", back_populates="assistant")
    services = relationship("AssistantService", order_by="AssistantService.sort_order")
    products = relationship("AssistantProduct", order_by="AssistantProduct.sort_order")
