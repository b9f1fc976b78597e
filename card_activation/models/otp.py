from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Index, Integer, String

from card_activation.database import Base


class CardOtpEntry(Base):
    __tablename__ = "card_otps"

    id = Column(Integer, primary_key=True)
    card_id = Column(String(36), ForeignKey("cards.id"), nullable=False, index=True)
    otp_hash = Column(String(128), nullable=False)
    sent_to = Column(String(255), nullable=False)
    channel = Column(String(16), nullable=False)
    expires_at = Column(DateTime(timezone=True), nullable=False)
    used = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime(timezone=True), nullable=False)

    __table_args__ = (Index("ix_card_otps_card_created", "card_id", "created_at"),)
