import uuid
from datetime import datetime

from sqlalchemy import Column, DateTime, ForeignKey, Integer, String, Text

from checkout.db.base_class import Base


class GiftCard(Base):
    __tablename__ = "gift_cards"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    code = Column(String(32), nullable=False, unique=True, index=True)
    payment_id = Column(String(36), ForeignKey("payments.id"), nullable=False, unique=True)
    status = Column(String(16), nullable=False, default="active")

    amount = Column(Integer, nullable=False)
    remaining_balance = Column(Integer, nullable=False)
    expires_at = Column(DateTime, nullable=False)

    sender_name = Column(String(200), nullable=False)
    sender_email = Column(String(254), nullable=False)
    sender_phone = Column(String(32), nullable=True)
    recipient_name = Column(String(200), nullable=False)
    recipient_email = Column(String(254), nullable=True)
    message = Column(Text, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
