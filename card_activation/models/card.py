from sqlalchemy import Boolean, Column, DateTime, String

from card_activation.database import Base


class CardEntry(Base):
    __tablename__ = "cards"

    id = Column(String(36), primary_key=True)
    owner_profile_id = Column(String(255), nullable=True)
    pin_hash = Column(String(128), nullable=False)
    card_token = Column(String(64), nullable=False, unique=True, index=True)
    is_active = Column(Boolean, nullable=False, default=False)
    activated_at = Column(DateTime(timezone=True), nullable=True)
    activated_by = Column(String(255), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False)
