from sqlalchemy import BigInteger, Column, ForeignKey, Text, UniqueConstraint, func
from sqlalchemy.dialects.postgresql import JSONB, TIMESTAMP
from sqlalchemy.orm import relationship

from app.database import Base


class ChatMessage(Base):
    __tablename__ = "chat_messages"
    __table_args__ = (
        UniqueConstraint("chat_id", "channel_message_id", name="chat_messages_chat_channel_message_unique"),
    )

    id = Column(BigInteger, primary_key=True, autoincrement=True)
    user_id = Column(BigInteger, ForeignKey("users.id"), nullable=False)
    company_id = Column(BigInteger, ForeignKey("companies.id"), nullable=False)
    chat_id = Column(BigInteger, ForeignKey("chats.id"), nullable=False)
    assistant_id = Column(BigInteger, ForeignKey("assistants.id"))
    sender_type = Column(Text, nullable=False)  # customer, assistant, agent, system
    direction = Column(Text, nullable=False)  # inbound, outbound
    status = Column(Text, nullable=False, default="received")
    channel_message_id = Column(Text)
    message_type = Column(Text, nullable=False, default="text")  # text, image, video, voice, audio, link, file
    text = Column(Text)
    media_url = Column(Text)
    media_mime_type = Column(Text)
    media_size = Column(BigInteger)
    link_url = Column(Text)
    attachments = Column(JSONB)
    payload = Column(JSONB)
    sent_at = Column(TIMESTAMP(timezone=True))
    delivered_at = Column(TIMESTAMP(timezone=True))
    read_at = Column(TIMESTAMP(timezone=True))
    failed_at = Column(TIMESTAMP(timezone=True))
    created_at = Column(TIMESTAMP(timezone=True), server_default=func.now())
    updated_at = Column(TIMESTAMP(timezone=True), server_default=func.now(), onupdate=func.now())

    chat = relationship("Chat", back_populates="messages")
