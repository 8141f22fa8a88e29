from decimal import Decimal

import pytest
from sqlalchemy import select

from food_ordering.core.exceptions import (
    ConflictError,
    InvalidTransitionError,
    NotFoundError,
    ValidationError,
)
from food_ordering.database import transaction
from food_ordering.models import Coupon, CouponRedemption, Order, OrderItem, OrderStatus, RedemptionStatus
from food_ordering.services import coupons as coupon_service
from food_ordering.services import orders as order_service
from food_ordering.services.orders import OrderLine


class TestCreateOrder:
    async def test_prices_from_catalog_and_snapshots_address(self, session, user, menu, fetch_all):
        order = await order_service.create_order(session, user.id, [
            OrderLine(food_id=menu["jollof"].id, quantity=2),
            OrderLine(food_id=menu["suya"].id, quantity=1),
            OrderLine(food_id=menu["jollof"].id, quantity=1),
        ])

        assert order.status == OrderStatus.PENDING
        assert order.total_amount == Decimal("9000.00")
        assert order.discount_amount == Decimal("0.00")
        assert order.payable_amount == Decimal("9000.00")
        assert order.delivery_city == "Lekki"
        assert order.delivery_recipient_name == "Ada Obi"

        items = await fetch_all(select(OrderItem).where(OrderItem.order_id == order.id))
        quantities = {item.name: item.quantity for item in items}
        assert quantities == {"Jollof Rice": 3, "Suya Platter": 1}
        assert {item.price_at_order for item in items} == {Decimal("2500.00"), Decimal("1500.00")}

    async def test_without_address(self, session, make_user, menu):
        bare = await make_user(email="bare@example.com")
        order = await order_service.create_order(session, bare.id, [OrderLine(menu["suya"].id, 1)])
        assert order.delivery_address_id is None

    async def test_unavailable_items(self, session, user, menu):
        with pytest.raises(ConflictError) as exc_info:
            await order_service.create_order(session, user.id, [OrderLine(menu["pepper_soup"].id, 1)])
        assert exc_info.value.details == {"items": ["Pepper Soup"]}

    async def test_unknown_items(self, session, user, menu):
        with pytest.raises(NotFoundError):
            await order_service.create_order(session, user.id, [OrderLine("no-such-food", 1)])

    @pytest.mark.parametrize("lines", [[], [OrderLine("x", 0)], [OrderLine("x", 101)]])
    async def test_invalid_lines(self, session, user, lines):
        with pytest.raises(ValidationError):
            await order_service.create_order(session, user.id, lines)

    async def test_unknown_address(self, session, user, menu):
        with pytest.raises(NotFoundError, match="address"):
            await order_service.create_order(
                session, user.id, [OrderLine(menu["suya"].id, 1)], address_id="missing"
            )


class TestReadOrders:
    async def test_get_order_includes_items(self, session, user, menu, make_order):
        order = await make_order(user, menu)
        loaded = await order_service.get_order(session, user.id, order.id)
        assert len(loaded.items) == 2

    async def test_list_orders_paginates_and_filters(self, session, user, menu, make_order):
        for _ in range(3):
            await make_order(user, menu)
        await make_order(user, menu, status=OrderStatus.CANCELLED)

        page, total = await order_service.list_orders(session, user.id, page=1, limit=2)
        assert total == 4
        assert len(page) == 2

        cancelled, total = await order_service.list_orders(session, user.id, status="cancelled")
        assert total == 1
        assert cancelled[0].status == OrderStatus.CANCELLED


class TestStatusChanges:
    async def test_admin_walks_the_state_machine(self, session, user, menu, make_order, fetch):
        order = await make_order(user, menu)
        for status in ("confirmed", "preparing", "out_for_delivery", "completed"):
            updated, previous = await order_service.update_order_status(session, order.id, status)
            assert updated.status.value == status
        assert (await fetch(Order, order.id)).status == OrderStatus.COMPLETED

    async def test_illegal_transition(self, session, user, menu, make_order):
        order = await make_order(user, menu)
        with pytest.raises(InvalidTransitionError):
            await order_service.update_order_status(session, order.id, "completed")

    async def test_admin_cancel_releases_reserved_coupon(
        self, session, user, menu, make_order, make_coupon, fetch, fetch_all
    ):
        order = await make_order(user, menu)
        coupon = await make_coupon(max_redemptions=1)
        await coupon_service.apply_coupon(session, user.id, order.id, "WELCOME20")
        await order_service.update_order_status(session, order.id, "confirmed")

        await order_service.update_order_status(session, order.id, "cancelled")

        assert (await fetch(Coupon, coupon.id)).redemptions_count == 0
        [redemption] = await fetch_all(select(CouponRedemption).where(CouponRedemption.order_id == order.id))
        assert redemption.status == RedemptionStatus.RELEASED

    async def test_admin_cancel_keeps_consumed_coupon(self, session, user, menu, make_order, make_coupon, fetch):
        order = await make_order(user, menu)
        coupon = await make_coupon(max_redemptions=1)
        await coupon_service.apply_coupon(session, user.id, order.id, "WELCOME20")
        await order_service.update_order_status(session, order.id, "confirmed")
        async with transaction(session):
            await coupon_service.consume_order_redemption(session, order.id)

        await order_service.update_order_status(session, order.id, "cancelled")

        stored = await fetch(Order, order.id)
        assert stored.coupon_code == "WELCOME20"
        assert stored.payable_amount == Decimal("5200.00")
        assert (await fetch(Coupon, coupon.id)).redemptions_count == 1

    async def test_customer_cancel_requires_pending(self, session, user, menu, make_order):
        order = await make_order(user, menu, status=OrderStatus.CONFIRMED)
        with pytest.raises(ValidationError, match="Only pending orders"):
            await order_service.cancel_order(session, user.id, order.id)
