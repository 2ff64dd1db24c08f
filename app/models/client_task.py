from sqlalchemy import BigInteger, Boolean, Column, ForeignKey, Integer, Text, func
from sqlalchemy.dialects.postgresql import JSONB, TIMESTAMP

from app.database import Base


class CompanyClientTask(Base):
    __tablename__ = "company_client_tasks"

    id = Column(BigInteger, primary_key=True, autoincrement=True)
    user_id = Column(BigInteger, ForeignKey("users.id"), nullable=False)
    company_id = Column(BigInteger, ForeignKey("companies.id"), nullable=False)
    company_client_id = Column(BigInteger, ForeignKey("company_clients.id"), nullable=False)
    assistant_id = Column(BigInteger, ForeignKey("assistants.id"))
    company_calendar_event_id = Column(BigInteger, ForeignKey("company_calendar_events.id"))
    description = Column(Text, nullable=False)
    status = Column(Text, nullable=False, default="todo")  # todo, in_progress, done, canceled
    board_column = Column(Text, nullable=False, default="todo")
    position = Column(Integer, nullable=False, default=0)
    priority = Column(Text, nullable=False, default="normal")  # low, normal, high, urgent
    sync_with_calendar = Column(Boolean, nullable=False, default=True)
    scheduled_at = Column(TIMESTAMP(timezone=True))
    due_at = Column(TIMESTAMP(timezone=True))
    completed_at = Column(TIMESTAMP(timezone=True))
    task_metadata = Column("metadata", JSONB, nullable=False, default=dict)
    created_at = Column(TIMESTAMP(timezone=True), server_default=func.now())
    updated_at = Column(TIMESTAMP(timezone=True), server_default=func.now(), onupdate=func.now())
