"""Working memory for push payments that have not settled yet."""

from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from checkout.errors import AlreadyStagedError, NotFoundError
from checkout.models.pending_order import PendingOrder


@dataclass(frozen=True)
class StagedOrder:
    customer_name: str
    customer_email: str
    customer_phone: Optional[str]
    quantity: int
    note: Optional[str] = None
    details: Dict[str, Any] = field(default_factory=dict)


async def stage(db: AsyncSession, payment_id: str, order: StagedOrder) -> None:
    existing = await db.get(PendingOrder, payment_id)
    if existing is not None:
        raise AlreadyStagedError(f"Payment {payment_id} already has a staged order")
    db.add(
        PendingOrder(
            payment_id=payment_id,
            customer_name=order.customer_name,
            customer_email=order.customer_email,
            customer_phone=order.customer_phone,
            quantity=order.quantity,
            note=order.note,
            details=dict(order.details),
        )
    )
    await db.flush()


async def consume(db: AsyncSession, payment_id: str) -> StagedOrder:
    """Read and delete the staged row; only one caller can get it."""
    result = await db.execute(select(PendingOrder).filter_by(payment_id=payment_id))
    row = result.scalars().first()
    if row is None:
        raise NotFoundError(f"No staged order for payment {payment_id}")

    staged = StagedOrder(
        customer_name=row.customer_name,
        customer_email=row.customer_email,
        customer_phone=row.customer_phone,
        quantity=row.quantity,
        note=row.note,
        details=dict(row.details or {}),
    )
    deleted = await db.execute(
        delete(PendingOrder)
        .where(PendingOrder.payment_id == payment_id)
        .execution_options(synchronize_session=False)
    )
    if deleted.rowcount != 1:
        raise NotFoundError(f"Staged order for payment {payment_id} was consumed concurrently")
    db.expunge(row)
    return staged


async def discard(db: AsyncSession, payment_id: str) -> bool:
    result = await db.execute(
        delete(PendingOrder)
        .where(PendingOrder.payment_id == payment_id)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount > 0
