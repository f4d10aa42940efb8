"""Participant and stock counters.

Counters only move through ``SET col = col + :delta`` so that concurrent
confirmations for the same course or product never lose an update.
"""

import logging
from dataclasses import dataclass
from typing import Optional

from sqlalchemy import case, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from checkout.errors import NotFoundError
from checkout.models.course import CourseInstance
from checkout.models.product import Product


@dataclass(frozen=True)
class CourseLoad:
    current: int
    maximum: Optional[int]

    @property
    def overbooked(self) -> bool:
        return self.maximum is not None and self.current > self.maximum


async def add_participants(db: AsyncSession, course_id: str, delta: int) -> CourseLoad:
    result = await db.execute(
        update(CourseInstance)
        .where(CourseInstance.id == course_id)
        .values(current_participants=CourseInstance.current_participants + delta)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        raise NotFoundError(f"Course {course_id} not found")

    row = (
        await db.execute(
            select(
                CourseInstance.current_participants, CourseInstance.max_participants
            ).where(CourseInstance.id == course_id)
        )
    ).one()
    load = CourseLoad(current=row[0], maximum=row[1])
    if load.overbooked:
        logging.warning(
            "Course %s is overbooked: %s participants, max %s",
            course_id,
            load.current,
            load.maximum,
        )
    return load


async def release_participants(db: AsyncSession, course_id: str, delta: int) -> int:
    """Give back ``delta`` seats; returns how many could not be released.

    The counter stops at zero. A non-zero shortfall means the counter had
    drifted below what the booking reserved.
    """
    current = CourseInstance.current_participants
    result = await db.execute(
        update(CourseInstance)
        .where(CourseInstance.id == course_id, current >= delta)
        .values(current_participants=current - delta)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount == 1:
        return 0

    before = await db.scalar(select(current).where(CourseInstance.id == course_id))
    if before is None:
        return 0
    await db.execute(
        update(CourseInstance)
        .where(CourseInstance.id == course_id)
        .values(current_participants=case((current >= delta, current - delta), else_=0))
        .execution_options(synchronize_session=False)
    )
    shortfall = max(delta - before, 0)
    if shortfall:
        logging.warning(
            "Course %s had %s participants, cannot release %s; counter set to 0",
            course_id,
            before,
            delta,
        )
    return shortfall


async def take_stock(db: AsyncSession, product_id: str, quantity: int) -> int:
    """Decrement stock and return what is left (negative means oversold)."""
    stock = Product.stock_quantity
    result = await db.execute(
        update(Product)
        .where(Product.id == product_id)
        .values(stock_quantity=stock - quantity, in_stock=stock - quantity > 0)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        raise NotFoundError(f"Product {product_id} not found")

    left = await db.scalar(select(Product.stock_quantity).where(Product.id == product_id))
    if left < 0:
        logging.warning("Product %s is oversold: stock now %s", product_id, left)
    return left


async def restore_stock(db: AsyncSession, product_id: str, quantity: int) -> None:
    stock = Product.stock_quantity
    await db.execute(
        update(Product)
        .where(Product.id == product_id)
        .values(stock_quantity=stock + quantity, in_stock=stock + quantity > 0)
        .execution_options(synchronize_session=False)
    )
