"""Operator edits to fulfilled bookings, gift cards and art orders."""

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from checkout.api.deps import get_db, get_services, require_operator
from checkout.container import Services
from checkout.schemas import BookingUpdate, GiftCardBalanceUpdate
from checkout.services import fulfillment

router = APIRouter(prefix="/api", tags=["fulfillment"], dependencies=[Depends(require_operator)])


def _booking_body(booking) -> dict:
    return {
        "id": booking.id,
        "reference": booking.reference,
        "status": booking.status,
        "courseId": booking.course_id,
        "numberOfParticipants": booking.number_of_participants,
        "reservedParticipants": booking.reserved_participants,
        "customerName": booking.customer_name,
        "customerEmail": booking.customer_email,
    }


@router.patch("/bookings/{booking_id}")
async def update_booking(
    booking_id: str, changes: BookingUpdate, db: AsyncSession = Depends(get_db)
):
    """Edit contact details or the participant count.

    Course capacity is not touched; a later cancel releases what the
    booking originally reserved.
    """
    booking = await fulfillment.update_booking(db, booking_id, changes)
    await db.commit()
    return _booking_body(booking)


@router.delete("/bookings/{booking_id}")
async def cancel_booking(
    booking_id: str,
    db: AsyncSession = Depends(get_db),
    services: Services = Depends(get_services),
):
    booking = await fulfillment.cancel_booking(db, booking_id, services.alerts)
    await db.commit()
    return _booking_body(booking)


@router.delete("/orders/{order_id}")
async def cancel_order(order_id: str, db: AsyncSession = Depends(get_db)):
    order = await fulfillment.cancel_art_order(db, order_id)
    await db.commit()
    return {
        "id": order.id,
        "orderReference": order.order_reference,
        "status": order.status,
        "quantity": order.quantity,
        "reservedQuantity": order.reserved_quantity,
    }


@router.patch("/gift-cards/{gift_card_id}")
async def update_gift_card_balance(
    gift_card_id: str, change: GiftCardBalanceUpdate, db: AsyncSession = Depends(get_db)
):
    gift_card = await fulfillment.update_gift_card_balance(
        db, gift_card_id, change.remaining_balance
    )
    await db.commit()
    return {
        "id": gift_card.id,
        "code": gift_card.code,
        "status": gift_card.status,
        "amount": gift_card.amount,
        "remainingBalance": gift_card.remaining_balance,
        "expiresAt": gift_card.expires_at.isoformat(),
    }
