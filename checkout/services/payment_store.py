"""Persistence of :class:`Payment` records.

Functions take the caller's ``AsyncSession`` and never commit; the caller
decides the transaction boundary.
"""

from datetime import datetime
from typing import Any, Dict, Optional

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from checkout.errors import (
    DuplicateReferenceError,
    InvalidTransitionError,
    NotFoundError,
    ValidationError,
)
from checkout.models.payment import (
    Payment,
    PaymentMethod,
    PaymentStatus,
    ProductType,
)


async def find_by_reference(db: AsyncSession, reference: str) -> Optional[Payment]:
    result = await db.execute(select(Payment).filter_by(reference=reference))
    return result.scalars().first()


async def get_by_reference(db: AsyncSession, reference: str) -> Payment:
    payment = await find_by_reference(db, reference)
    if payment is None:
        raise NotFoundError(f"Payment {reference} not found")
    return payment


async def _reload(db: AsyncSession, payment_id: str) -> Payment:
    result = await db.execute(
        select(Payment)
        .where(Payment.id == payment_id)
        .execution_options(populate_existing=True)
    )
    return result.scalars().one()


async def create_payment(
    db: AsyncSession,
    *,
    reference: str,
    method: PaymentMethod,
    product_type: ProductType,
    product_id: str,
    amount: int,
    metadata: Optional[Dict[str, Any]] = None,
    status: PaymentStatus = PaymentStatus.CREATED,
) -> Payment:
    """Insert a payment, or raise :class:`DuplicateReferenceError`.

    Must be the first write of its transaction: a unique-key violation rolls
    the whole session back before the existing record is fetched.
    """
    if amount <= 0:
        raise ValidationError("amount must be a positive integer")

    existing = await find_by_reference(db, reference)
    if existing is not None:
        raise DuplicateReferenceError(reference, existing)

    payment = Payment(
        reference=reference,
        method=method,
        product_type=product_type,
        product_id=product_id,
        amount=amount,
        status=status,
        meta=dict(metadata or {}),
    )
    db.add(payment)
    try:
        await db.flush()
    except IntegrityError:
        # Lost the race against a concurrent submission with the same key
        await db.rollback()
        raise DuplicateReferenceError(reference, await find_by_reference(db, reference))
    return payment


async def update_status(
    db: AsyncSession,
    payment_id: str,
    new_status: PaymentStatus,
    *,
    metadata: Optional[Dict[str, Any]] = None,
) -> Payment:
    """Move a CREATED payment to a terminal status.

    The guard lives in the WHERE clause, so two concurrent callbacks for the
    same payment cannot both succeed. Anything else raises
    :class:`InvalidTransitionError`.
    """
    if new_status is PaymentStatus.CREATED:
        raise InvalidTransitionError(payment_id, None, new_status)

    values: Dict[Any, Any] = {Payment.status: new_status, Payment.updated_at: datetime.utcnow()}
    if metadata is not None:
        values[Payment.meta] = metadata

    result = await db.execute(
        update(Payment)
        .where(Payment.id == payment_id, Payment.status == PaymentStatus.CREATED)
        .values(values)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        current = await db.scalar(select(Payment.status).where(Payment.id == payment_id))
        if current is None:
            raise NotFoundError(f"Payment {payment_id} not found")
        raise InvalidTransitionError(payment_id, current, new_status)
    return await _reload(db, payment_id)


async def link_fulfillment(db: AsyncSession, payment_id: str, fulfillment_id: str) -> bool:
    """Point the payment at its fulfillment entity, once."""
    result = await db.execute(
        update(Payment)
        .where(Payment.id == payment_id, Payment.fulfillment_id.is_(None))
        .values(fulfillment_id=fulfillment_id, updated_at=datetime.utcnow())
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


async def merge_metadata(db: AsyncSession, payment_id: str, extra: Dict[str, Any]) -> Payment:
    payment = await _reload(db, payment_id)
    merged = dict(payment.meta or {})
    merged.update(extra)
    await db.execute(
        update(Payment)
        .where(Payment.id == payment_id)
        .values({Payment.meta: merged, Payment.updated_at: datetime.utcnow()})
        .execution_options(synchronize_session=False)
    )
    return await _reload(db, payment_id)


async def claim_initiation(db: AsyncSession, payment_id: str, stale_before: datetime) -> bool:
    """Take over a push request that never reached the provider.

    Returns False while another submission holds a fresh
    ``gateway_initiating_at`` marker or once the provider has answered.
    The write is guarded on ``updated_at`` so only one caller can win.
    """
    payment = await _reload(db, payment_id)
    meta = dict(payment.meta or {})
    if payment.status is not PaymentStatus.CREATED or meta.get("gateway_request_id"):
        return False
    started = meta.get("gateway_initiating_at")
    if started and datetime.fromisoformat(started) > stale_before:
        return False

    now = datetime.utcnow()
    meta["gateway_initiating_at"] = now.isoformat()
    result = await db.execute(
        update(Payment)
        .where(Payment.id == payment_id, Payment.updated_at == payment.updated_at)
        .values({Payment.meta: meta, Payment.updated_at: now})
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1
