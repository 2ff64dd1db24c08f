from sqlalchemy import BigInteger, Column, Text, func
from sqlalchemy.dialects.postgresql import TIMESTAMP
from sqlalchemy.orm import relationship

from app.database import Base


class User(Base):
    __tablename__ = "users"

    id = Column(BigInteger, primary_key=True, autoincrement=True)
    name = Column(Text, nullable=False)
    email = Column(Text, unique=True)
    phone = Column(Text)
    status = Column(Text, nullable=False, default="active")  # active, blocked
    created_at = Column(TIMESTAMP(timezone=True), server_default=func.now())
    updated_at = Column(TIMESTAMP(timezone=True), server_default=func.now(), onupdate=func.now())

    company = relationship("Company", back_populates="user", uselist=False)

    @property
    def is_active(self) -> bool:
        return (self.status or "active") == "active"
