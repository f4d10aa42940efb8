from checkout.models.booking import Booking
from checkout.models.course import CourseInstance
from checkout.models.document import StoredDocument
from checkout.models.gift_card import GiftCard
from checkout.models.job import JobStatus, JobType, NotificationJob
from checkout.models.order import ArtOrder
from checkout.models.payment import (
    TERMINAL_STATUSES,
    Payment,
    PaymentMethod,
    PaymentStatus,
    ProductType,
)
from checkout.models.pending_order import PendingOrder
from checkout.models.product import Product

__all__ = [
    "ArtOrder",
    "Booking",
    "CourseInstance",
    "GiftCard",
    "JobStatus",
    "JobType",
    "NotificationJob",
    "Payment",
    "PaymentMethod",
    "PaymentStatus",
    "PendingOrder",
    "Product",
    "ProductType",
    "StoredDocument",
    "TERMINAL_STATUSES",
]
