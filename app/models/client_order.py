from typing import Optional

from sqlalchemy import BigInteger, Column, ForeignKey, Integer, Numeric, Text, func
from sqlalchemy.dialects.postgresql import JSONB, TIMESTAMP
from sqlalchemy.orm import relationship

from app.database import Base


class CompanyClientOrder(Base):
    __tablename__ = "company_client_orders"

    id = Column(BigInteger, primary_key=True, autoincrement=True)
    user_id = Column(BigInteger, ForeignKey("users.id"), nullable=False)
    company_id = Column(BigInteger, ForeignKey("companies.id"), nullable=False)
    company_client_id = Column(BigInteger, ForeignKey("company_clients.id"), nullable=False)
    assistant_id = Column(BigInteger, ForeignKey("assistants.id"))
    assistant_service_id = Column(BigInteger, ForeignKey("assistant_services.id"))
    service_name = Column(Text, nullable=False)
    quantity = Column(Integer, nullable=False, default=1)
    unit_price = Column(Numeric(12, 2), nullable=False, default=0)
    total_price = Column(Numeric(12, 2), nullable=False, default=0)
    currency = Column(Text, nullable=False, default="TJS")
    status = Column(Text, nullable=False, default="new")  # new, in_progress, appointments, completed
    ordered_at = Column(TIMESTAMP(timezone=True))
    completed_at = Column(TIMESTAMP(timezone=True))
    notes = Column(Text)
    order_metadata = Column("metadata", JSONB, nullable=False, default=dict)
    created_at = Column(TIMESTAMP(timezone=True), server_default=func.now())
    updated_at = Column(TIMESTAMP(timezone=True), server_default=func.now(), onupdate=func.now())

    client = relationship("CompanyClient")

    @property
    def linked_event_id(self) -> Optional[int]:
        appointment = (self.order_metadata or {}).get("appointment")
        if not isinstance(appointment, dict):
            return None
        return _positive_int(appointment.get("calendar_event_id"))

    @property
    def is_archived(self) -> bool:
        return (self.order_metadata or {}).get("archived") in (True, 1, "1")


def _positive_int(value) -> Optional[int]:
    try:
        number = int(value)
    except (TypeError, ValueError):
        return None
    return number if number > 0 else None
