from sqlalchemy import BigInteger, Boolean, Column, ForeignKey, Text, UniqueConstraint, func
from sqlalchemy.dialects.postgresql import JSONB, TIMESTAMP
from sqlalchemy.orm import relationship

from app.database import Base


class AssistantChannel(Base):
    __tablename__ = "assistant_channels"
    __table_args__ = (UniqueConstraint("assistant_id", "channel", name="assistant_channels_assistant_channel_unique"),)

    id = Column(BigInteger, primary_key=True, autoincrement=True)
    user_id = Column(BigInteger, ForeignKey("users.id"), nullable=False)
    company_id = Column(BigInteger, ForeignKey("companies.id"), nullable=False)
    assistant_id = Column(BigInteger, ForeignKey("assistants.id"), nullable=False)
    channel = Column(Text, nullable=False)  # instagram, telegram, whatsapp, widget, webchat, other
    name = Column(Text)
    external_account_id = Column(Text, index=True)
    is_active = Column(Boolean, nullable=False, default=True)
    credentials = Column(JSONB, nullable=False, default=dict)
    settings = Column(JSONB, nullable=False, default=dict)
    channel_metadata = Column("metadata", JSONB, nullable=False, default=dict)
    created_at = Column(TIMESTAMP(timezone=True), server_default=func.now())
    updated_at = Column(TIMESTAMP(timezone=True), server_default=func.now(), onupdate=func.now())

    assistant = relationship("Assistant", back_populates="channels")

    def credential(self, key: str) -> str:
        value = (self.credentials or {}).get(key)
        return str(value).strip() if value is not None else ""
