"""
Order assembly and lifecycle.

Orders are priced from the catalog at checkout and carry a copy of the
delivery address, so later edits to the catalog or the address book never
change an existing order. Status changes go through the order state
machine; cancelling gives back a reserved coupon slot.
"""

import logging
from collections import OrderedDict
from dataclasses import dataclass
from typing import Optional, Sequence

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from food_ordering.core.exceptions import ConflictError, NotFoundError, ValidationError
from food_ordering.core.money import ZERO, quantize, to_decimal
from food_ordering.database import transaction
from food_ordering.models import FoodItem, Order, OrderItem, OrderStatus, UserAddress
from food_ordering.services import repository
from food_ordering.services.coupons import release_order_coupon
from food_ordering.services.order_state import ensure_transition, parse_status

logger = logging.getLogger(__name__)

MAX_LINE_QUANTITY = 100
MAX_PAGE_SIZE = 100


@dataclass(frozen=True)
class OrderLine:
    food_id: str
    quantity: int


def _merge_lines(lines: Sequence[OrderLine]) -> "OrderedDict[str, int]":
    merged: OrderedDict[str, int] = OrderedDict()
    for line in lines:
        if line.quantity < 1 or line.quantity > MAX_LINE_QUANTITY:
            raise ValidationError(
                f"Quantity must be between 1 and {MAX_LINE_QUANTITY}", reason="invalid_quantity"
            )
        merged[line.food_id] = merged.get(line.food_id, 0) + line.quantity
    return merged


def _copy_address(order: Order, address: UserAddress) -> None:
    order.delivery_address_id = address.id
    order.delivery_label = address.label
    order.delivery_recipient_name = address.recipient_name
    order.delivery_phone = address.phone
    order.delivery_address_line1 = address.address_line1
    order.delivery_address_line2 = address.address_line2
    order.delivery_city = address.city
    order.delivery_state = address.state
    order.delivery_country = address.country
    order.delivery_postal_code = address.postal_code
    order.delivery_notes = address.notes


async def _resolve_address(
    session: AsyncSession,
    user_id: str,
    address_id: Optional[str],
) -> Optional[UserAddress]:
    query = select(UserAddress).where(UserAddress.user_id == user_id)
    if address_id:
        result = await session.execute(query.where(UserAddress.id == address_id))
        address = result.scalar_one_or_none()
        if address is None:
            raise NotFoundError("Delivery address not found", reason="address_not_found")
        return address
    result = await session.execute(
        query.where(UserAddress.is_default.is_(True)).order_by(UserAddress.created_at.desc()).limit(1)
    )
    return result.scalar_one_or_none()


async def create_order(
    session: AsyncSession,
    user_id: str,
    lines: Sequence[OrderLine],
    address_id: Optional[str] = None,
) -> Order:
    """Create a ``pending`` order priced from the catalog."""
    if not lines:
        raise ValidationError("Order must contain at least one item", reason="empty_order")
    quantities = _merge_lines(lines)

    async with transaction(session):
        if await repository.get_user(session, user_id) is None:
            raise NotFoundError("User not found", reason="user_not_found")

        result = await session.execute(select(FoodItem).where(FoodItem.id.in_(list(quantities))))
        foods = {food.id: food for food in result.scalars().all()}

        missing = [food_id for food_id in quantities if food_id not in foods]
        if missing:
            raise NotFoundError("Some items do not exist", reason="item_not_found", details={"items": missing})
        unavailable = [foods[food_id].name for food_id in quantities if not foods[food_id].available]
        if unavailable:
            raise ConflictError(
                "Some items are no longer available",
                reason="items_unavailable",
                details={"items": unavailable},
            )

        total = quantize(sum(
            (to_decimal(foods[food_id].price) * quantity for food_id, quantity in quantities.items()),
            ZERO,
        ))
        order = Order(
            user_id=user_id,
            total_amount=total,
            discount_amount=ZERO,
            payable_amount=total,
            status=OrderStatus.PENDING,
        )
        address = await _resolve_address(session, user_id, address_id)
        if address is not None:
            _copy_address(order, address)
        session.add(order)
        await session.flush()

        for food_id, quantity in quantities.items():
            food = foods[food_id]
            session.add(OrderItem(
                order_id=order.id,
                food_id=food.id,
                name=food.name,
                quantity=quantity,
                price_at_order=to_decimal(food.price),
            ))

    logger.info(f"Order {order.id} created for user {user_id}: {len(quantities)} items, total {total}")
    return order


async def get_order(session: AsyncSession, user_id: str, order_id: str) -> Order:
    """An order with its line items, scoped to its owner."""
    async with transaction(session):
        result = await session.execute(
            select(Order)
            .options(selectinload(Order.items))
            .where(Order.id == order_id, Order.user_id == user_id)
            .execution_options(populate_existing=True)
        )
        order = result.scalar_one_or_none()
    if order is None:
        raise NotFoundError("Order not found", reason="order_not_found")
    return order


async def list_orders(
    session: AsyncSession,
    user_id: str,
    page: int = 1,
    limit: int = 20,
    status: Optional[str] = None,
) -> tuple[list[Order], int]:
    page = max(page, 1)
    limit = min(max(limit, 1), MAX_PAGE_SIZE)

    conditions = [Order.user_id == user_id]
    if status:
        conditions.append(Order.status == parse_status(status))

    async with transaction(session):
        total = (await session.execute(
            select(func.count()).select_from(Order).where(*conditions)
        )).scalar_one()
        result = await session.execute(
            select(Order)
            .where(*conditions)
            .order_by(Order.created_at.desc())
            .offset((page - 1) * limit)
            .limit(limit)
        )
        orders = list(result.scalars().all())
    return orders, total


async def update_order_status(session: AsyncSession, order_id: str, status: str) -> tuple[Order, OrderStatus]:
    """
    Admin status change through the state machine.

    Returns the order and its previous status. Moving to ``cancelled``
    releases a reserved coupon.
    """
    requested = parse_status(status)
    async with transaction(session):
        order = await repository.get_order(session, order_id, for_update=True)
        previous = order.status
        ensure_transition(previous, requested)
        if requested == OrderStatus.CANCELLED:
            await release_order_coupon(session, order)
        order.status = requested

    logger.info(f"Order {order.id} status: {previous.value} -> {requested.value}")
    return order, previous


async def cancel_order(session: AsyncSession, user_id: str, order_id: str) -> Order:
    """Customer cancellation; only pending orders qualify."""
    async with transaction(session):
        order = await repository.get_order(session, order_id, user_id=user_id, for_update=True)
        if order.status != OrderStatus.PENDING:
            raise ValidationError(
                f"Cannot cancel order in '{order.status.value}' status. Only pending orders can be cancelled.",
                reason="order_not_pending",
            )
        ensure_transition(order.status, OrderStatus.CANCELLED)
        await release_order_coupon(session, order)
        order.status = OrderStatus.CANCELLED

    logger.info(f"Order {order.id} cancelled by customer {user_id}")
    return order
