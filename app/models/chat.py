from sqlalchemy import BigInteger, Column, ForeignKey, Integer, Text, UniqueConstraint, func
from sqlalchemy.dialects.postgresql import JSONB, TIMESTAMP
from sqlalchemy.orm import relationship

from app.database import Base


class Chat(Base):
    __tablename__ = "chats"
    __table_args__ = (
        UniqueConstraint("company_id", "channel", "channel_chat_id", name="chats_company_channel_chat_unique"),
    )

    id = Column(BigInteger, primary_key=True, autoincrement=True)
    user_id = Column(BigInteger, ForeignKey("users.id"), nullable=False)
    company_id = Column(BigInteger, ForeignKey("companies.id"), nullable=False)
    assistant_id = Column(BigInteger, ForeignKey("assistants.id"))
    assistant_channel_id = Column(BigInteger, ForeignKey("assistant_channels.id"))
    channel = Column(Text, nullable=False)
    channel_chat_id = Column(Text, nullable=False)
    channel_user_id = Column(Text)
    name = Column(Text)
    avatar = Column(Text)
    last_message_preview = Column(Text)
    last_message_at = Column(TIMESTAMP(timezone=True))
    unread_count = Column(Integer, nullable=False, default=0)
    status = Column(Text, nullable=False, default="open")  # open, pending, closed, archived
    chat_metadata = Column("metadata", JSONB, nullable=False, default=dict)
    created_at = Column(TIMESTAMP(timezone=True), server_default=func.now())
    updated_at = Column(TIMESTAMP(timezone=True), server_default=func.now(), onupdate=func.now())

    messages = relationship("ChatMessage", back_populates="chat", order_by="ChatMessage.id")
