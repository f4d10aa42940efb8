from datetime import datetime

from sqlalchemy import JSON, Column, DateTime, ForeignKey, Integer, String, Text

from checkout.db.base_class import Base


class PendingOrder(Base):
    """Customer details parked until the owning push payment settles."""

    __tablename__ = "pending_orders"

    payment_id = Column(
        String(36), ForeignKey("payments.id", ondelete="CASCADE"), primary_key=True
    )
    customer_name = Column(String(200), nullable=False)
    customer_email = Column(String(254), nullable=False)
    customer_phone = Column(String(32), nullable=True)
    quantity = Column(Integer, nullable=False, default=1)
    note = Column(Text, nullable=True)
    # Product-specific extras, e.g. gift card recipient
    details = Column(JSON, nullable=False, default=dict)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
