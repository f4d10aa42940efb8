import uuid
from datetime import datetime

from sqlalchemy import Column, DateTime, ForeignKey, Integer, String
from sqlalchemy.orm import relationship

from checkout.db.base_class import Base


class Booking(Base):
    __tablename__ = "bookings"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    reference = Column(String(32), nullable=False, unique=True, index=True)
    payment_id = Column(String(36), ForeignKey("payments.id"), nullable=False, unique=True)
    course_id = Column(String(36), ForeignKey("course_instances.id"), nullable=False, index=True)
    status = Column(String(16), nullable=False, default="CONFIRMED")

    customer_name = Column(String(200), nullable=False)
    customer_email = Column(String(254), nullable=False)
    customer_phone = Column(String(32), nullable=True)

    number_of_participants = Column(Integer, nullable=False)
    # What was added to the course counter; released verbatim on cancel
    reserved_participants = Column(Integer, nullable=False)
    unit_price = Column(Integer, nullable=False)
    total_price = Column(Integer, nullable=False)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(
        DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False
    )

    course = relationship("CourseInstance")
