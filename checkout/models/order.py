import uuid
from datetime import datetime

from sqlalchemy import Column, DateTime, ForeignKey, Integer, String
from sqlalchemy.orm import relationship

from checkout.db.base_class import Base


class ArtOrder(Base):
    __tablename__ = "art_orders"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    order_reference = Column(String(32), nullable=False, unique=True, index=True)
    payment_id = Column(String(36), ForeignKey("payments.id"), nullable=False, unique=True)
    product_id = Column(String(36), ForeignKey("products.id"), nullable=False, index=True)
    status = Column(String(16), nullable=False, default="CONFIRMED")

    customer_name = Column(String(200), nullable=False)
    customer_email = Column(String(254), nullable=False)
    customer_phone = Column(String(32), nullable=True)

    quantity = Column(Integer, nullable=False)
    # Stock taken at creation; put back verbatim on cancel
    reserved_quantity = Column(Integer, nullable=False)
    unit_price = Column(Integer, nullable=False)
    total_price = Column(Integer, nullable=False)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(
        DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False
    )

    product = relationship("Product")
