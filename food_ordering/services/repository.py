"""
Row lookups shared by the engine services.

Every ``*_for_update`` helper issues ``SELECT ... FOR UPDATE`` and refreshes
any instance already in the identity map, so the caller decides on the
locked, current row state.
"""

from datetime import datetime
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from food_ordering.core.exceptions import NotFoundError
from food_ordering.models import (
    Coupon,
    CouponRedemption,
    Order,
    Payment,
    PaymentStatus,
    SavedCard,
    User,
)


async def get_user(session: AsyncSession, user_id: str) -> Optional[User]:
    result = await session.execute(select(User).where(User.id == user_id))
    return result.scalar_one_or_none()


async def get_order(
    session: AsyncSession,
    order_id: str,
    user_id: Optional[str] = None,
    for_update: bool = False,
) -> Order:
    """Load an order (optionally scoped to its owner) or raise ``NotFoundError``."""
    query = select(Order).where(Order.id == order_id)
    if user_id is not None:
        query = query.where(Order.user_id == user_id)
    if for_update:
        query = query.with_for_update()
    result = await session.execute(query.execution_options(populate_existing=True))
    order = result.scalar_one_or_none()
    if order is None:
        raise NotFoundError("Order not found", reason="order_not_found")
    return order


async def get_coupon_by_code(
    session: AsyncSession,
    code: str,
    for_update: bool = False,
) -> Coupon:
    query = select(Coupon).where(Coupon.code == code)
    if for_update:
        query = query.with_for_update()
    result = await session.execute(query.execution_options(populate_existing=True))
    coupon = result.scalar_one_or_none()
    if coupon is None:
        raise NotFoundError("Coupon not found", reason="coupon_not_found")
    return coupon


async def get_redemption_for_update(
    session: AsyncSession,
    order_id: str,
) -> Optional[CouponRedemption]:
    result = await session.execute(
        select(CouponRedemption)
        .where(CouponRedemption.order_id == order_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def get_payment_by_reference(
    session: AsyncSession,
    reference: str,
    for_update: bool = False,
) -> Optional[Payment]:
    query = select(Payment).where(Payment.reference == reference)
    if for_update:
        query = query.with_for_update()
    result = await session.execute(query.execution_options(populate_existing=True))
    return result.scalar_one_or_none()


async def get_successful_payment(
    session: AsyncSession,
    order_id: str,
    exclude_payment_id: Optional[str] = None,
) -> Optional[Payment]:
    """The settled payment of an order, if any."""
    query = select(Payment).where(
        Payment.order_id == order_id,
        Payment.status == PaymentStatus.SUCCESS,
    )
    if exclude_payment_id is not None:
        query = query.where(Payment.id != exclude_payment_id)
    result = await session.execute(query.limit(1))
    return result.scalar_one_or_none()


async def get_saved_card(
    session: AsyncSession,
    card_id: str,
    user_id: str,
    for_update: bool = False,
    reusable_only: bool = False,
) -> Optional[SavedCard]:
    query = select(SavedCard).where(SavedCard.id == card_id, SavedCard.user_id == user_id)
    if reusable_only:
        query = query.where(SavedCard.reusable.is_(True))
    if for_update:
        query = query.with_for_update()
    result = await session.execute(query.execution_options(populate_existing=True))
    return result.scalar_one_or_none()


async def get_open_payment(
    session: AsyncSession,
    order_id: str,
    created_after: Optional[datetime] = None,
    reference_prefix: Optional[str] = None,
) -> Optional[Payment]:
    """The newest ``initialized`` payment of an order, if any."""
    query = select(Payment).where(
        Payment.order_id == order_id,
        Payment.status == PaymentStatus.INITIALIZED,
    )
    if created_after is not None:
        query = query.where(Payment.created_at > created_after)
    if reference_prefix is not None:
        query = query.where(Payment.reference.startswith(reference_prefix))
    result = await session.execute(query.order_by(Payment.created_at.desc()).limit(1))
    return result.scalar_one_or_none()
