from sqlalchemy import Column, DateTime, Integer, String

from card_activation.database import Base


class AttemptEntry(Base):
    __tablename__ = "card_attempts"

    key = Column(String(64), primary_key=True)
    failures = Column(Integer, nullable=False, default=0)
    locked_until = Column(DateTime(timezone=True), nullable=True)
    updated_at = Column(DateTime(timezone=True), nullable=False)
