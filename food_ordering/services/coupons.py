"""
Coupon Reservation Manager

Admission control for bounded coupons:
- ``reserve_coupon_slot`` increments ``redemptions_count`` with one
  conditional UPDATE, so two concurrent requests can never both take the
  last slot
- ``release_coupon_slot`` gives a slot back, floored at zero
- apply / remove / release keep the order's coupon snapshot, its amounts and
  its single ``CouponRedemption`` row consistent inside one transaction

A ``consumed`` redemption belongs to a settled payment and is never released.
"""

import logging
import re
import secrets
import string
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Optional

from sqlalchemy import case, func, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from food_ordering.core.config import get_settings
from food_ordering.core.exceptions import (
    ConflictError,
    CouponRejectedError,
    ValidationError,
)
from food_ordering.core.money import ZERO, quantize, to_decimal
from food_ordering.core.timeutils import as_utc, utcnow
from food_ordering.database import transaction
from food_ordering.models import (
    Coupon,
    CouponRedemption,
    DiscountType,
    Order,
    OrderStatus,
    RedemptionStatus,
)
from food_ordering.services import repository

logger = logging.getLogger(__name__)

COUPON_CODE_PATTERN = re.compile(r"^[A-Z0-9_-]{4,40}$")
GENERATED_CODE_PREFIX = "CPN"
GENERATED_CODE_ALPHABET = string.ascii_uppercase + string.digits

LIMIT_REACHED = "Coupon redemption limit reached"


@dataclass(frozen=True)
class DiscountBreakdown:
    total_amount: Decimal
    discount_amount: Decimal
    payable_amount: Decimal


@dataclass
class CouponApplication:
    """Result of validate / apply for the API layer."""
    order: Order
    coupon: Coupon
    breakdown: DiscountBreakdown
    already_applied: bool = False


# =============================================================================
# PURE RULES
# =============================================================================

def normalize_coupon_code(raw: Optional[str]) -> str:
    code = (raw or "").strip().upper()
    if not COUPON_CODE_PATTERN.match(code):
        raise ValidationError(
            "Coupon code must be 4-40 characters of A-Z, 0-9, '_' or '-'",
            reason="invalid_coupon_code",
        )
    return code


def check_coupon_window(coupon: Coupon, now: Optional[datetime] = None) -> Optional[str]:
    """
    Return why the coupon cannot be used right now, or ``None``.

    The cap is checked here only as a fast rejection; the authoritative
    check is the conditional UPDATE in ``reserve_coupon_slot``.
    """
    now = now or utcnow()
    if not coupon.is_active:
        return "Coupon is not active"
    starts_at = as_utc(coupon.starts_at)
    if starts_at is not None and starts_at > now:
        return "Coupon is not active yet"
    expires_at = as_utc(coupon.expires_at)
    if expires_at is not None and expires_at <= now:
        return "Coupon has expired"
    if coupon.max_redemptions is not None and coupon.redemptions_count >= coupon.max_redemptions:
        return LIMIT_REACHED
    return None


def _raise_if_unavailable(coupon: Coupon, now: datetime) -> None:
    problem = check_coupon_window(coupon, now)
    if problem is None:
        return
    if problem == LIMIT_REACHED:
        raise ConflictError(problem, reason="coupon_limit_reached")
    raise CouponRejectedError(problem, reason="coupon_unavailable")


def compute_discount(total_amount, coupon: Coupon) -> DiscountBreakdown:
    """
    Discount and payable amount for ``total_amount`` under ``coupon``.

    The discount is rounded to 2 places (half-up) before subtraction. A
    result that is not strictly positive is rejected, never clamped.
    """
    total = to_decimal(total_amount)
    if total <= ZERO:
        raise CouponRejectedError("Invalid order amount", reason="invalid_amount")

    value = to_decimal(coupon.discount_value)
    if value <= ZERO:
        raise CouponRejectedError("Invalid coupon discount value", reason="invalid_discount")

    if coupon.discount_type == DiscountType.PERCENTAGE:
        if value > Decimal("100"):
            raise CouponRejectedError(
                "Percentage discount cannot exceed 100", reason="invalid_discount"
            )
        discount = quantize(total * value / Decimal("100"))
    elif coupon.discount_type == DiscountType.FIXED:
        discount = quantize(value)
    else:
        raise CouponRejectedError("Unsupported coupon type", reason="invalid_discount")

    payable = quantize(total - discount)
    if payable <= ZERO:
        raise CouponRejectedError(
            "Coupon discount would reduce order to zero or below",
            reason="discount_exceeds_total",
        )
    return DiscountBreakdown(total_amount=quantize(total), discount_amount=discount, payable_amount=payable)


# =============================================================================
# SLOT ACCOUNTING
# =============================================================================

async def reserve_coupon_slot(
    session: AsyncSession,
    coupon_id: str,
    now: Optional[datetime] = None,
) -> bool:
    """
    Take one redemption slot. Must run inside the caller's transaction.

    Returns False when the coupon is inactive, outside its window or full.
    """
    now = now or utcnow()
    result = await session.execute(
        update(Coupon)
        .where(
            Coupon.id == coupon_id,
            Coupon.is_active.is_(True),
            or_(Coupon.starts_at.is_(None), Coupon.starts_at <= now),
            or_(Coupon.expires_at.is_(None), Coupon.expires_at > now),
            or_(
                Coupon.max_redemptions.is_(None),
                Coupon.redemptions_count < Coupon.max_redemptions,
            ),
        )
        .values(redemptions_count=Coupon.redemptions_count + 1, updated_at=now)
        .execution_options(synchronize_session=False)
    )
    reserved = result.rowcount == 1
    if reserved:
        logger.debug(f"Reserved slot on coupon {coupon_id}")
    return reserved


async def release_coupon_slot(session: AsyncSession, coupon_id: str) -> None:
    """Give one slot back; the count never drops below zero."""
    await session.execute(
        update(Coupon)
        .where(Coupon.id == coupon_id)
        .values(
            redemptions_count=case(
                (Coupon.redemptions_count > 0, Coupon.redemptions_count - 1),
                else_=0,
            ),
            updated_at=utcnow(),
        )
        .execution_options(synchronize_session=False)
    )
    logger.debug(f"Released slot on coupon {coupon_id}")


def _snapshot_coupon(order: Order, coupon: Coupon, breakdown: DiscountBreakdown) -> None:
    order.coupon_id = coupon.id
    order.coupon_code = coupon.code
    order.coupon_discount_type = coupon.discount_type
    order.coupon_discount_value = coupon.discount_value
    order.discount_amount = breakdown.discount_amount
    order.payable_amount = breakdown.payable_amount


def _clear_coupon(order: Order) -> None:
    order.coupon_id = None
    order.coupon_code = None
    order.coupon_discount_type = None
    order.coupon_discount_value = None
    order.discount_amount = ZERO
    order.payable_amount = quantize(order.total_amount)


# =============================================================================
# ORDER-LEVEL OPERATIONS
# =============================================================================

async def validate_coupon_for_order(
    session: AsyncSession,
    user_id: str,
    order_id: str,
    raw_code: str,
) -> CouponApplication:
    """Preview the discount without reserving anything."""
    code = normalize_coupon_code(raw_code)
    async with transaction(session):
        order = await repository.get_order(session, order_id, user_id=user_id)
        if order.status != OrderStatus.PENDING:
            raise ValidationError(
                "Coupon can only be applied to pending orders", reason="order_not_pending"
            )
        coupon = await repository.get_coupon_by_code(session, code)
        already_applied = order.coupon_id == coupon.id
        if not already_applied:
            _raise_if_unavailable(coupon, utcnow())
        breakdown = compute_discount(order.total_amount, coupon)

    return CouponApplication(order=order, coupon=coupon, breakdown=breakdown, already_applied=already_applied)


async def apply_coupon(
    session: AsyncSession,
    user_id: str,
    order_id: str,
    raw_code: str,
) -> CouponApplication:
    """
    Attach a coupon to a pending order.

    Handles a first apply, a swap from another coupon, an idempotent re-apply
    of the same coupon and a re-reserve after release. Any failure rolls the
    whole transaction back, so no partial reservation is ever visible.
    """
    code = normalize_coupon_code(raw_code)
    now = utcnow()

    async with transaction(session):
        order = await repository.get_order(session, order_id, user_id=user_id, for_update=True)
        if order.status != OrderStatus.PENDING:
            raise ValidationError(
                "Coupon can only be applied to pending orders", reason="order_not_pending"
            )

        coupon = await repository.get_coupon_by_code(session, code, for_update=True)
        redemption = await repository.get_redemption_for_update(session, order.id)

        if redemption is not None and redemption.status == RedemptionStatus.CONSUMED:
            raise ConflictError(
                "Coupon for this order is already consumed", reason="coupon_consumed"
            )

        already_applied = (
            redemption is not None
            and redemption.coupon_id == coupon.id
            and redemption.status == RedemptionStatus.RESERVED
        )
        if not already_applied:
            _raise_if_unavailable(coupon, now)
            await ensure_no_payment_in_progress(session, order.id)

        breakdown = compute_discount(order.total_amount, coupon)

        if redemption is None:
            session.add(CouponRedemption(
                coupon_id=coupon.id,
                order_id=order.id,
                user_id=user_id,
                status=RedemptionStatus.RESERVED,
            ))
            await _reserve_or_conflict(session, coupon.id, now)
        elif redemption.coupon_id != coupon.id:
            if redemption.status == RedemptionStatus.RESERVED:
                await release_coupon_slot(session, redemption.coupon_id)
            logger.info(
                f"Swapping coupon on order {order.id}: {redemption.coupon_id} -> {coupon.id}"
            )
            redemption.coupon_id = coupon.id
            redemption.status = RedemptionStatus.RESERVED
            await _reserve_or_conflict(session, coupon.id, now)
        elif redemption.status == RedemptionStatus.RELEASED:
            redemption.status = RedemptionStatus.RESERVED
            await _reserve_or_conflict(session, coupon.id, now)

        _snapshot_coupon(order, coupon, breakdown)

    logger.info(
        f"Coupon {coupon.code} applied to order {order.id}: "
        f"discount={breakdown.discount_amount} payable={breakdown.payable_amount}"
        f"{' (re-apply)' if already_applied else ''}"
    )
    return CouponApplication(order=order, coupon=coupon, breakdown=breakdown, already_applied=already_applied)


async def ensure_no_payment_in_progress(session: AsyncSession, order_id: str) -> None:
    """
    Refuse coupon changes while a recent checkout is open on the order.

    The open payment was created for the current payable amount. An older
    one no longer blocks; settlement refuses it if the amounts then differ.
    """
    ttl = timedelta(minutes=get_settings().payment_session_ttl_minutes)
    payment = await repository.get_open_payment(session, order_id, created_after=utcnow() - ttl)
    if payment is not None:
        raise ConflictError(
            "A payment is in progress for this order",
            reason="payment_in_progress",
            details={"reference": payment.reference},
        )


async def _reserve_or_conflict(session: AsyncSession, coupon_id: str, now: datetime) -> None:
    if not await reserve_coupon_slot(session, coupon_id, now):
        logger.info(f"Coupon {coupon_id} reservation lost: limit reached or window closed")
        raise ConflictError(LIMIT_REACHED, reason="coupon_limit_reached")


async def release_order_coupon(session: AsyncSession, order: Order) -> bool:
    """
    Detach the coupon from a locked order. Must run inside the caller's transaction.

    Only a ``reserved`` redemption gives its slot back. When the redemption
    was consumed the order keeps its settled amounts. Returns True when a
    slot was released.
    """
    redemption = await repository.get_redemption_for_update(session, order.id)
    if redemption is not None and redemption.status == RedemptionStatus.CONSUMED:
        return False

    released = False
    if redemption is not None and redemption.status == RedemptionStatus.RESERVED:
        await release_coupon_slot(session, redemption.coupon_id)
        redemption.status = RedemptionStatus.RELEASED
        released = True
        logger.info(f"Released coupon reservation for order {order.id}")

    _clear_coupon(order)
    return released


async def remove_coupon(session: AsyncSession, user_id: str, order_id: str) -> Order:
    async with transaction(session):
        order = await repository.get_order(session, order_id, user_id=user_id, for_update=True)
        if order.status != OrderStatus.PENDING:
            raise ValidationError(
                "Coupon can only be removed from pending orders", reason="order_not_pending"
            )
        if order.coupon_id is None and order.coupon_code is None:
            raise ValidationError("No coupon applied on this order", reason="no_coupon")
        await ensure_no_payment_in_progress(session, order.id)
        await release_order_coupon(session, order)
    return order


async def consume_order_redemption(session: AsyncSession, order_id: str) -> bool:
    """Finalize a reserved redemption (payment settled). Caller's transaction."""
    redemption = await repository.get_redemption_for_update(session, order_id)
    if redemption is None or redemption.status != RedemptionStatus.RESERVED:
        return False
    redemption.status = RedemptionStatus.CONSUMED
    logger.info(f"Consumed coupon redemption {redemption.id} for order {order_id}")
    return True


# =============================================================================
# ADMIN
# =============================================================================

def generate_coupon_code(length: int = 9) -> str:
    suffix = "".join(secrets.choice(GENERATED_CODE_ALPHABET) for _ in range(length))
    return f"{GENERATED_CODE_PREFIX}{suffix}"


async def create_coupon(
    session: AsyncSession,
    discount_type: DiscountType,
    discount_value,
    code: Optional[str] = None,
    description: Optional[str] = None,
    max_redemptions: Optional[int] = None,
    starts_at: Optional[datetime] = None,
    expires_at: Optional[datetime] = None,
    is_active: bool = True,
) -> Coupon:
    code = normalize_coupon_code(code) if code else generate_coupon_code()
    value = quantize(to_decimal(discount_value))
    starts_at = as_utc(starts_at)
    expires_at = as_utc(expires_at)

    if value <= ZERO:
        raise ValidationError("discountValue must be positive", reason="invalid_discount")
    if discount_type == DiscountType.PERCENTAGE and value > Decimal("100"):
        raise ValidationError("Percentage discount cannot exceed 100", reason="invalid_discount")
    if max_redemptions is not None and max_redemptions <= 0:
        raise ValidationError("maxRedemptions must be a positive integer", reason="invalid_limit")
    if starts_at and expires_at and expires_at <= starts_at:
        raise ValidationError("expiresAt must be after startsAt", reason="invalid_window")

    coupon = Coupon(
        code=code,
        description=description,
        discount_type=discount_type,
        discount_value=value,
        max_redemptions=max_redemptions,
        redemptions_count=0,
        starts_at=starts_at,
        expires_at=expires_at,
        is_active=is_active,
    )
    try:
        async with transaction(session):
            session.add(coupon)
    except IntegrityError as e:
        raise ConflictError("Coupon code already exists", reason="duplicate_code") from e

    logger.info(f"Coupon created: {coupon.code} ({discount_type.value} {value})")
    return coupon


async def list_coupons(
    session: AsyncSession,
    page: int = 1,
    limit: int = 20,
    active: Optional[bool] = None,
) -> tuple[list[Coupon], int]:
    """Newest first; returns ``(coupons, total)``."""
    count_query = select(func.count()).select_from(Coupon)
    query = select(Coupon).order_by(Coupon.created_at.desc())
    if active is not None:
        count_query = count_query.where(Coupon.is_active.is_(active))
        query = query.where(Coupon.is_active.is_(active))

    async with transaction(session):
        total = (await session.execute(count_query)).scalar_one()
        result = await session.execute(query.offset((page - 1) * limit).limit(limit))
        coupons = list(result.scalars().all())
    return coupons, total
