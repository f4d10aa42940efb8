"""Request/response bodies and the typed notification payloads."""

from datetime import date, datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic import ValidationError as PydanticValidationError
from pydantic.alias_generators import to_camel

from checkout.errors import UnknownJobTypeError, ValidationError
from checkout.models.job import JobStatus, JobType
from checkout.models.payment import PaymentMethod, PaymentStatus, ProductType

EMAIL_PATTERN = r"^[^@\s]+@[^@\s]+\.[^@\s]+$"


class CamelModel(BaseModel):
    """Accepts both ``productType`` and ``product_type`` on input."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# ---------- order submission ----------

class CustomerInfo(CamelModel):
    first_name: str = Field(..., min_length=1, max_length=100)
    last_name: str = Field(..., min_length=1, max_length=100)
    email: str = Field(..., pattern=EMAIL_PATTERN, max_length=254)
    phone: Optional[str] = Field(None, max_length=32)
    note: Optional[str] = Field(None, max_length=2000)

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()


class InvoiceDetails(CamelModel):
    address: str = Field(..., min_length=1, max_length=200)
    postal_code: str = Field(..., min_length=1, max_length=20)
    city: str = Field(..., min_length=1, max_length=100)
    reference: Optional[str] = Field(None, max_length=100)


class GiftCardDetails(CamelModel):
    recipient_name: str = Field(..., min_length=1, max_length=200)
    recipient_email: Optional[str] = Field(None, pattern=EMAIL_PATTERN, max_length=254)
    message: Optional[str] = Field(None, max_length=1000)


class OrderSubmission(CamelModel):
    reference: Optional[str] = None
    amount: int = Field(..., gt=0, description="Minor currency units")
    product_type: ProductType
    product_id: str = Field(..., min_length=1, max_length=64)
    quantity: int = Field(1, ge=1, le=100)
    customer_info: CustomerInfo
    payment_method: PaymentMethod
    payer_phone: Optional[str] = None
    invoice_details: Optional[InvoiceDetails] = None
    gift_card: Optional[GiftCardDetails] = None

    @model_validator(mode="after")
    def _method_requirements(self) -> "OrderSubmission":
        if self.payment_method is PaymentMethod.INVOICE and self.invoice_details is None:
            raise ValueError("invoiceDetails is required for invoice payments")
        if self.payment_method is PaymentMethod.PUSH and not (
            self.payer_phone or self.customer_info.phone
        ):
            raise ValueError("payerPhone is required for push payments")
        return self


class SubmissionResponse(CamelModel):
    reference: str
    status: PaymentStatus
    duplicate: bool = False


class PaymentRead(CamelModel):
    reference: str
    method: PaymentMethod
    product_type: ProductType
    product_id: str
    amount: int
    status: PaymentStatus
    fulfillment_id: Optional[str] = None
    created_at: datetime
    updated_at: datetime

    model_config = ConfigDict(from_attributes=True)


class BookingUpdate(CamelModel):
    number_of_participants: Optional[int] = Field(None, ge=1, le=100)
    customer_name: Optional[str] = Field(None, min_length=1, max_length=200)
    customer_email: Optional[str] = Field(None, pattern=EMAIL_PATTERN, max_length=254)
    customer_phone: Optional[str] = Field(None, max_length=32)


class GiftCardBalanceUpdate(CamelModel):
    remaining_balance: int


class JobRead(CamelModel):
    id: str
    job_type: JobType
    status: JobStatus
    attempts: int
    max_retries: int
    next_attempt_at: datetime
    last_error: Optional[str] = None
    payment_reference: Optional[str] = None
    created_at: datetime
    updated_at: datetime

    model_config = ConfigDict(from_attributes=True)


class JobStatusReport(CamelModel):
    counts: Dict[str, int]
    recent: List[JobRead]


# ---------- notification payloads ----------

class CustomerSnapshot(BaseModel):
    name: str
    email: str
    phone: Optional[str] = None


class InvoiceSnapshot(BaseModel):
    invoice_number: str
    due_date: date
    address: str
    postal_code: str
    city: str
    reference: Optional[str] = None


class NotificationPayload(BaseModel):
    """Everything a message needs, copied at enqueue time.

    Templates never query the database, so later edits to bookings or
    products cannot change what a retried job sends.
    """

    model_config = ConfigDict(extra="forbid")

    payment_reference: str
    payment_method: PaymentMethod
    amount: int
    currency: str
    customer: CustomerSnapshot
    invoice: Optional[InvoiceSnapshot] = None


class BookingConfirmationPayload(NotificationPayload):
    booking_reference: str
    course_title: str
    course_start: Optional[datetime] = None
    course_location: Optional[str] = None
    participants: int
    unit_price: int


class GiftCardDeliveryPayload(NotificationPayload):
    gift_card_code: str
    expires_at: datetime
    recipient_name: str
    recipient_email: Optional[str] = None
    message: Optional[str] = None


class OrderConfirmationPayload(NotificationPayload):
    order_reference: str
    product_title: str
    quantity: int
    unit_price: int


class PaymentConfirmationPayload(NotificationPayload):
    product_type: ProductType
    product_title: str
    fulfillment_reference: Optional[str] = None


JOB_PAYLOADS = {
    JobType.PAYMENT_CONFIRMATION: PaymentConfirmationPayload,
    JobType.BOOKING_CONFIRMATION: BookingConfirmationPayload,
    JobType.GIFT_CARD_DELIVERY: GiftCardDeliveryPayload,
    JobType.ORDER_CONFIRMATION: OrderConfirmationPayload,
}


def parse_payload(job_type: JobType, payload: Any) -> NotificationPayload:
    """Validate ``payload`` against the model registered for ``job_type``."""
    try:
        model = JOB_PAYLOADS[JobType(job_type)]
    except (KeyError, ValueError):
        raise UnknownJobTypeError(f"Unknown job type: {job_type!r}") from None

    if isinstance(payload, model):
        return payload
    if isinstance(payload, BaseModel):
        payload = payload.model_dump()
    try:
        return model.model_validate(payload)
    except PydanticValidationError as exc:
        raise ValidationError(f"Invalid {JobType(job_type).value} payload: {exc}") from exc
