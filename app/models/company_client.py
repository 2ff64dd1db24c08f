from sqlalchemy import BigInteger, Column, ForeignKey, Text, UniqueConstraint, func
from sqlalchemy.dialects.postgresql import JSONB, TIMESTAMP

from app.database import Base


class CompanyClient(Base):
    __tablename__ = "company_clients"
    __table_args__ = (UniqueConstraint("company_id", "phone", name="company_clients_company_phone_unique"),)

    id = Column(BigInteger, primary_key=True, autoincrement=True)
    user_id = Column(BigInteger, ForeignKey("users.id"), nullable=False)
    company_id = Column(BigInteger, ForeignKey("companies.id"), nullable=False)
    name = Column(Text, nullable=False)
    phone = Column(Text, nullable=False)
    email = Column(Text)
    notes = Column(Text)
    status = Column(Text, nullable=False, default="active")  # active, archived, blocked
    client_metadata = Column("metadata", JSONB, nullable=False, default=dict)
    created_at = Column(TIMESTAMP(timezone=True), server_default=func.now())
    updated_at = Column(TIMESTAMP(timezone=True), server_default=func.now(), onupdate=func.now())
