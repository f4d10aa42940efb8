import enum
import uuid
from datetime import datetime

from sqlalchemy import JSON, Column, DateTime, Index, Integer, String, Text

from checkout.db.base_class import Base
from checkout.models.payment import enum_column


class JobType(str, enum.Enum):
    PAYMENT_CONFIRMATION = "payment_confirmation"
    BOOKING_CONFIRMATION = "booking_confirmation"
    GIFT_CARD_DELIVERY = "gift_card_delivery"
    ORDER_CONFIRMATION = "order_confirmation"


class JobStatus(str, enum.Enum):
    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


class NotificationJob(Base):
    __tablename__ = "notification_jobs"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    job_type = enum_column(JobType, nullable=False)
    payload = Column(JSON, nullable=False)
    status = enum_column(JobStatus, nullable=False, default=JobStatus.PENDING)
    attempts = Column(Integer, nullable=False, default=0)
    max_retries = Column(Integer, nullable=False)
    next_attempt_at = Column(DateTime, nullable=False)
    # Set on every claim; later writes must present the same token
    claim_token = Column(String(36), nullable=True)
    claimed_at = Column(DateTime, nullable=True)
    last_error = Column(Text, nullable=True)
    payment_reference = Column(String(64), nullable=True, index=True)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(
        DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False
    )

    __table_args__ = (
        Index("ix_notification_jobs_claim", "status", "next_attempt_at", "created_at"),
    )
