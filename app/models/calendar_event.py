from typing import Optional

from sqlalchemy import BigInteger, Column, ForeignKey, Text, func
from sqlalchemy.dialects.postgresql import JSONB, TIMESTAMP

from app.database import Base
from app.models.client_order import _positive_int


class CompanyCalendarEvent(Base):
    __tablename__ = "company_calendar_events"

    id = Column(BigInteger, primary_key=True, autoincrement=True)
    user_id = Column(BigInteger, ForeignKey("users.id"), nullable=False)
    company_id = Column(BigInteger, ForeignKey("companies.id"), nullable=False)
    company_client_id = Column(BigInteger, ForeignKey("company_clients.id"))
    assistant_id = Column(BigInteger, ForeignKey("assistants.id"))
    assistant_service_id = Column(BigInteger, ForeignKey("assistant_services.id"))
    title = Column(Text, nullable=False)
    description = Column(Text)
    starts_at = Column(TIMESTAMP(timezone=True), nullable=False)
    ends_at = Column(TIMESTAMP(timezone=True))
    timezone = Column(Text, nullable=False, default="UTC")
    status = Column(Text, nullable=False, default="scheduled")  # scheduled, confirmed, completed, canceled, no_show
    location = Column(Text)
    meeting_link = Column(Text)
    reminders = Column(JSONB, nullable=False, default=list)
    event_metadata = Column("metadata", JSONB, nullable=False, default=dict)
    created_at = Column(TIMESTAMP(timezone=True), server_default=func.now())
    updated_at = Column(TIMESTAMP(timezone=True), server_default=func.now(), onupdate=func.now())

    @property
    def linked_order_id(self) -> Optional[int]:
        return _positive_int((self.event_metadata or {}).get("order_id"))
