"""Creation and cancellation of bookings, gift cards and art orders.

Each product type has one builder. All builders return a
:class:`FulfillmentCreated` carrying the notification to enqueue, so the
reconciliation engine handles every variant the same way.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, Optional, Tuple

from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession

from checkout.config import Settings
from checkout.errors import FulfillmentError, NotFoundError, ValidationError
from checkout.models.booking import Booking
from checkout.models.course import CourseInstance
from checkout.models.gift_card import GiftCard
from checkout.models.job import JobType
from checkout.models.order import ArtOrder
from checkout.models.payment import Payment, ProductType
from checkout.models.product import Product
from checkout.references import (
    generate_booking_reference,
    generate_gift_card_code,
    generate_order_reference,
)
from checkout.schemas import (
    BookingConfirmationPayload,
    BookingUpdate,
    CustomerSnapshot,
    GiftCardDeliveryPayload,
    InvoiceSnapshot,
    NotificationPayload,
    OrderConfirmationPayload,
)
from checkout.services import capacity


@dataclass(frozen=True)
class FulfillmentRequest:
    payment: Payment
    customer: CustomerSnapshot
    quantity: int
    note: Optional[str] = None
    details: Dict[str, Any] = field(default_factory=dict)
    invoice: Optional[InvoiceSnapshot] = None


@dataclass(frozen=True)
class FulfillmentCreated:
    product_type: ProductType
    entity_id: str
    reference: str
    job_type: JobType
    payload: NotificationPayload
    warnings: Tuple[str, ...] = ()
    job_id: Optional[str] = None


def _base_payload(request: FulfillmentRequest, settings: Settings) -> Dict[str, Any]:
    payment = request.payment
    return {
        "payment_reference": payment.reference,
        "payment_method": payment.method,
        "amount": payment.amount,
        "currency": settings.currency,
        "customer": request.customer,
        "invoice": request.invoice,
    }


async def create_booking(
    db: AsyncSession, settings: Settings, request: FulfillmentRequest
) -> FulfillmentCreated:
    payment = request.payment
    course = await db.get(CourseInstance, payment.product_id)
    if course is None:
        raise FulfillmentError(f"Course {payment.product_id} no longer exists")

    # The payment is already accepted: an overbooking is flagged, not refused
    load = await capacity.add_participants(db, course.id, request.quantity)
    warnings: Tuple[str, ...] = ()
    if load.overbooked:
        warnings = (
            f"Course '{course.title}' overbooked by payment {payment.reference}: "
            f"{load.current}/{load.maximum} participants",
        )

    booking = Booking(
        reference=generate_booking_reference(),
        payment_id=payment.id,
        course_id=course.id,
        customer_name=request.customer.name,
        customer_email=request.customer.email,
        customer_phone=request.customer.phone,
        number_of_participants=request.quantity,
        reserved_participants=request.quantity,
        unit_price=course.price,
        total_price=payment.amount,
    )
    db.add(booking)
    await db.flush()

    payload = BookingConfirmationPayload(
        **_base_payload(request, settings),
        booking_reference=booking.reference,
        course_title=course.title,
        course_start=course.start_date,
        course_location=course.location,
        participants=request.quantity,
        unit_price=course.price,
    )
    return FulfillmentCreated(
        ProductType.COURSE,
        booking.id,
        booking.reference,
        JobType.BOOKING_CONFIRMATION,
        payload,
        warnings,
    )


async def create_gift_card(
    db: AsyncSession, settings: Settings, request: FulfillmentRequest
) -> FulfillmentCreated:
    payment = request.payment
    details = request.details
    gift_card = GiftCard(
        code=generate_gift_card_code(),
        payment_id=payment.id,
        amount=payment.amount,
        remaining_balance=payment.amount,
        expires_at=datetime.utcnow() + timedelta(days=settings.gift_card_valid_days),
        sender_name=request.customer.name,
        sender_email=request.customer.email,
        sender_phone=request.customer.phone,
        recipient_name=details.get("recipient_name") or request.customer.name,
        recipient_email=details.get("recipient_email"),
        message=details.get("message"),
    )
    db.add(gift_card)
    await db.flush()

    payload = GiftCardDeliveryPayload(
        **_base_payload(request, settings),
        gift_card_code=gift_card.code,
        expires_at=gift_card.expires_at,
        recipient_name=gift_card.recipient_name,
        recipient_email=gift_card.recipient_email,
        message=gift_card.message,
    )
    return FulfillmentCreated(
        ProductType.GIFT_CARD,
        gift_card.id,
        gift_card.code,
        JobType.GIFT_CARD_DELIVERY,
        payload,
    )


async def create_art_order(
    db: AsyncSession, settings: Settings, request: FulfillmentRequest
) -> FulfillmentCreated:
    payment = request.payment
    product = await db.get(Product, payment.product_id)
    if product is None:
        raise FulfillmentError(f"Product {payment.product_id} no longer exists")

    left = await capacity.take_stock(db, product.id, request.quantity)
    warnings: Tuple[str, ...] = ()
    if left < 0:
        warnings = (
            f"Product '{product.title}' oversold by payment {payment.reference}: "
            f"stock now {left}",
        )

    order = ArtOrder(
        order_reference=generate_order_reference(),
        payment_id=payment.id,
        product_id=product.id,
        customer_name=request.customer.name,
        customer_email=request.customer.email,
        customer_phone=request.customer.phone,
        quantity=request.quantity,
        reserved_quantity=request.quantity,
        unit_price=product.price,
        total_price=payment.amount,
    )
    db.add(order)
    await db.flush()

    payload = OrderConfirmationPayload(
        **_base_payload(request, settings),
        order_reference=order.order_reference,
        product_title=product.title,
        quantity=request.quantity,
        unit_price=product.price,
    )
    return FulfillmentCreated(
        ProductType.ART_PRODUCT,
        order.id,
        order.order_reference,
        JobType.ORDER_CONFIRMATION,
        payload,
        warnings,
    )


BUILDERS = {
    ProductType.COURSE: create_booking,
    ProductType.GIFT_CARD: create_gift_card,
    ProductType.ART_PRODUCT: create_art_order,
}


async def create_fulfillment(
    db: AsyncSession, settings: Settings, request: FulfillmentRequest
) -> FulfillmentCreated:
    builder = BUILDERS[request.payment.product_type]
    return await builder(db, settings, request)


async def load_fulfillment(db: AsyncSession, payment: Payment):
    """Return the Booking, GiftCard or ArtOrder linked to ``payment``."""
    model = {
        ProductType.COURSE: Booking,
        ProductType.GIFT_CARD: GiftCard,
        ProductType.ART_PRODUCT: ArtOrder,
    }[payment.product_type]
    if payment.fulfillment_id is None:
        return None
    return await db.get(model, payment.fulfillment_id)


# ---------- lifecycle after creation ----------

async def cancel_booking(db: AsyncSession, booking_id: str, alerts=None) -> Booking:
    """Cancel a booking and release the seats it originally took.

    Later edits to ``number_of_participants`` do not change what is released.
    A second cancel is a no-op. Operators are alerted when the course counter
    was already lower than the seats being released.
    """
    booking = await db.get(Booking, booking_id)
    if booking is None:
        raise NotFoundError(f"Booking {booking_id} not found")

    result = await db.execute(
        update(Booking)
        .where(Booking.id == booking_id, Booking.status == "CONFIRMED")
        .values(status="CANCELLED", updated_at=datetime.utcnow())
        .execution_options(synchronize_session=False)
    )
    if result.rowcount == 1:
        shortfall = await capacity.release_participants(
            db, booking.course_id, booking.reserved_participants
        )
        if shortfall and alerts is not None:
            await alerts.alert(
                f"Course {booking.course_id}: cancelling {booking.reference} released "
                f"{shortfall} seats more than were counted"
            )
        logging.info(
            "Booking %s cancelled, released %s seats on course %s",
            booking.reference,
            booking.reserved_participants,
            booking.course_id,
        )
    await db.refresh(booking)
    return booking


async def update_booking(db: AsyncSession, booking_id: str, changes: BookingUpdate) -> Booking:
    booking = await db.get(Booking, booking_id)
    if booking is None:
        raise NotFoundError(f"Booking {booking_id} not found")
    for name, value in changes.model_dump(exclude_unset=True, exclude_none=True).items():
        setattr(booking, name, value)
    await db.flush()
    return booking


async def cancel_art_order(db: AsyncSession, order_id: str) -> ArtOrder:
    order = await db.get(ArtOrder, order_id)
    if order is None:
        raise NotFoundError(f"Order {order_id} not found")

    result = await db.execute(
        update(ArtOrder)
        .where(ArtOrder.id == order_id, ArtOrder.status == "CONFIRMED")
        .values(status="CANCELLED", updated_at=datetime.utcnow())
        .execution_options(synchronize_session=False)
    )
    if result.rowcount == 1:
        await capacity.restore_stock(db, order.product_id, order.reserved_quantity)
        logging.info(
            "Order %s cancelled, restored %s units of product %s",
            order.order_reference,
            order.reserved_quantity,
            order.product_id,
        )
    await db.refresh(order)
    return order


async def update_gift_card_balance(
    db: AsyncSession,
    gift_card_id: str,
    remaining_balance: int,
    now: Optional[datetime] = None,
) -> GiftCard:
    """Record what is left on a gift card after it was used in the studio.

    The balance stays between 0 and the original amount. Reaching 0 marks
    the card ``used``; used and expired cards cannot be changed.
    """
    gift_card = await db.get(GiftCard, gift_card_id)
    if gift_card is None:
        raise NotFoundError(f"Gift card {gift_card_id} not found")
    if remaining_balance < 0:
        raise ValidationError("Remaining balance cannot be negative")
    if remaining_balance > gift_card.amount:
        raise ValidationError(
            f"Remaining balance cannot exceed the original amount of {gift_card.amount}"
        )
    if gift_card.expires_at <= (now or datetime.utcnow()):
        raise ValidationError(
            f"Gift card {gift_card.code} expired on {gift_card.expires_at:%Y-%m-%d}"
        )

    status = "used" if remaining_balance == 0 else "active"
    result = await db.execute(
        update(GiftCard)
        .where(GiftCard.id == gift_card_id, GiftCard.status == "active")
        .values(remaining_balance=remaining_balance, status=status)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        raise ValidationError(f"Gift card {gift_card.code} is {gift_card.status}")
    await db.refresh(gift_card)
    logging.info(
        "Gift card %s balance set to %s of %s (%s)",
        gift_card.code,
        remaining_balance,
        gift_card.amount,
        status,
    )
    return gift_card
