from sqlalchemy import BigInteger, Column, ForeignKey, Integer, Text, func
from sqlalchemy.dialects.postgresql import JSONB, TIMESTAMP

from app.database import Base


class CompanyClientQuestion(Base):
    __tablename__ = "company_client_questions"

    id = Column(BigInteger, primary_key=True, autoincrement=True)
    user_id = Column(BigInteger, ForeignKey("users.id"), nullable=False)
    company_id = Column(BigInteger, ForeignKey("companies.id"), nullable=False)
    company_client_id = Column(BigInteger, ForeignKey("company_clients.id"), nullable=False)
    assistant_id = Column(BigInteger, ForeignKey("assistants.id"))
    description = Column(Text, nullable=False)
    status = Column(Text, nullable=False, default="open")  # open, in_progress, answered, closed
    board_column = Column(Text, nullable=False, default="new")
    position = Column(Integer, nullable=False, default=0)
    resolved_at = Column(TIMESTAMP(timezone=True))
    question_metadata = Column("metadata", JSONB, nullable=False, default=dict)
    created_at = Column(TIMESTAMP(timezone=True), server_default=func.now())
    updated_at = Column(TIMESTAMP(timezone=True), server_default=func.now(), onupdate=func.now())
