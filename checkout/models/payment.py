import enum
import uuid
from datetime import datetime

from sqlalchemy import JSON, CheckConstraint, Column, DateTime, Enum, Index, Integer, String

from checkout.db.base_class import Base


class PaymentMethod(str, enum.Enum):
    PUSH = "PUSH"
    INVOICE = "INVOICE"


class ProductType(str, enum.Enum):
    COURSE = "COURSE"
    GIFT_CARD = "GIFT_CARD"
    ART_PRODUCT = "ART_PRODUCT"


class PaymentStatus(str, enum.Enum):
    CREATED = "CREATED"
    PAID = "PAID"
    DECLINED = "DECLINED"
    ERROR = "ERROR"


TERMINAL_STATUSES = frozenset(
    {PaymentStatus.PAID, PaymentStatus.DECLINED, PaymentStatus.ERROR}
)


def enum_column(enum_cls, **kwargs):
    """Store the enum's value (not its member name) in a plain VARCHAR."""
    return Column(
        Enum(
            enum_cls,
            native_enum=False,
            length=32,
            values_callable=lambda members: [m.value for m in members],
        ),
        **kwargs,
    )


class Payment(Base):
    __tablename__ = "payments"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    # Caller-visible idempotency key; never updated after insert
    reference = Column(String(64), nullable=False, unique=True, index=True)
    method = enum_column(PaymentMethod, nullable=False)
    product_type = enum_column(ProductType, nullable=False)
    product_id = Column(String(64), nullable=False)
    # Minor currency units
    amount = Column(Integer, nullable=False)
    status = enum_column(PaymentStatus, nullable=False, default=PaymentStatus.CREATED)
    fulfillment_id = Column(String(36), nullable=True)
    # "metadata" is reserved on declarative classes
    meta = Column("metadata", JSON, nullable=False, default=dict)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(
        DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False
    )

    __table_args__ = (
        CheckConstraint("amount > 0", name="ck_payments_amount_positive"),
        Index("ix_payments_status_created", "status", "created_at"),
    )

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES
