import asyncio
from datetime import timedelta
from decimal import Decimal

import pytest
from sqlalchemy import select

from food_ordering.core.exceptions import (
    ConflictError,
    CouponRejectedError,
    NotFoundError,
    ValidationError,
)
from food_ordering.core.timeutils import utcnow
from food_ordering.database import transaction
from food_ordering.models import (
    Coupon,
    CouponRedemption,
    DiscountType,
    Order,
    OrderStatus,
    RedemptionStatus,
)
from food_ordering.services import coupons as coupon_service
from food_ordering.services.coupons import (
    LIMIT_REACHED,
    check_coupon_window,
    compute_discount,
    normalize_coupon_code,
    release_coupon_slot,
    reserve_coupon_slot,
)
from food_ordering.services.orders import cancel_order


def _coupon(discount_type=DiscountType.PERCENTAGE, value="20.00", **kwargs):
    return Coupon(
        code="TEST",
        discount_type=discount_type,
        discount_value=Decimal(value),
        redemptions_count=kwargs.pop("redemptions_count", 0),
        is_active=kwargs.pop("is_active", True),
        **kwargs,
    )


# =============================================================================
# PURE RULES
# =============================================================================

class TestComputeDiscount:
    def test_percentage(self):
        breakdown = compute_discount(Decimal("6500.00"), _coupon(value="20"))
        assert breakdown.total_amount == Decimal("6500.00")
        assert breakdown.discount_amount == Decimal("1300.00")
        assert breakdown.payable_amount == Decimal("5200.00")

    def test_percentage_rounds_half_up(self):
        breakdown = compute_discount(Decimal("99.99"), _coupon(value="15"))
        assert breakdown.discount_amount == Decimal("15.00")
        assert breakdown.payable_amount == Decimal("84.99")

    def test_fixed(self):
        breakdown = compute_discount("6500", _coupon(DiscountType.FIXED, "500"))
        assert breakdown.discount_amount == Decimal("500.00")
        assert breakdown.payable_amount == Decimal("6000.00")

    @pytest.mark.parametrize("discount_type,value", [
        (DiscountType.FIXED, "6500.00"),
        (DiscountType.FIXED, "9000.00"),
        (DiscountType.PERCENTAGE, "100"),
    ])
    def test_discount_may_not_zero_the_order(self, discount_type, value):
        with pytest.raises(CouponRejectedError) as exc_info:
            compute_discount(Decimal("6500.00"), _coupon(discount_type, value))
        assert exc_info.value.reason == "discount_exceeds_total"
        assert exc_info.value.status_code == 400

    def test_percentage_over_100(self):
        with pytest.raises(CouponRejectedError, match="cannot exceed 100"):
            compute_discount(Decimal("6500.00"), _coupon(value="150"))

    def test_non_positive_total(self):
        with pytest.raises(CouponRejectedError, match="Invalid order amount"):
            compute_discount(Decimal("0"), _coupon())


class TestCouponWindow:
    def test_usable(self):
        assert check_coupon_window(_coupon()) is None

    def test_inactive(self):
        assert check_coupon_window(_coupon(is_active=False)) == "Coupon is not active"

    def test_not_started(self):
        coupon = _coupon(starts_at=utcnow() + timedelta(days=1))
        assert check_coupon_window(coupon) == "Coupon is not active yet"

    def test_expired(self):
        coupon = _coupon(expires_at=utcnow() - timedelta(seconds=1))
        assert check_coupon_window(coupon) == "Coupon has expired"

    def test_exhausted(self):
        coupon = _coupon(max_redemptions=3, redemptions_count=3)
        assert check_coupon_window(coupon) == LIMIT_REACHED


class TestNormalizeCode:
    def test_trims_and_uppercases(self):
        assert normalize_coupon_code("  welcome-20 ") == "WELCOME-20"

    @pytest.mark.parametrize("raw", [None, "", "ab", "has space", "X" * 41])
    def test_rejects_malformed(self, raw):
        with pytest.raises(ValidationError) as exc_info:
            normalize_coupon_code(raw)
        assert exc_info.value.reason == "invalid_coupon_code"


# =============================================================================
# APPLY / REMOVE / SWAP
# =============================================================================

class TestApplyCoupon:
    async def test_first_apply_reserves_a_slot(self, session, user, menu, make_order, make_coupon, fetch, fetch_all):
        order = await make_order(user, menu)
        coupon = await make_coupon(max_redemptions=5)

        application = await coupon_service.apply_coupon(session, user.id, order.id, "welcome20")

        assert not application.already_applied
        assert application.breakdown.payable_amount == Decimal("5200.00")
        stored = await fetch(Order, order.id)
        assert stored.coupon_code == "WELCOME20"
        assert stored.coupon_discount_type == DiscountType.PERCENTAGE
        assert stored.discount_amount == Decimal("1300.00")
        assert stored.payable_amount == Decimal("5200.00")
        assert (await fetch(Coupon, coupon.id)).redemptions_count == 1
        [redemption] = await fetch_all(select(CouponRedemption).where(CouponRedemption.order_id == order.id))
        assert redemption.status == RedemptionStatus.RESERVED
        assert redemption.coupon_id == coupon.id

    async def test_reapply_is_idempotent(self, session, user, menu, make_order, make_coupon, fetch):
        order = await make_order(user, menu)
        coupon = await make_coupon(max_redemptions=1)

        await coupon_service.apply_coupon(session, user.id, order.id, "WELCOME20")
        again = await coupon_service.apply_coupon(session, user.id, order.id, "WELCOME20")

        assert again.already_applied
        assert (await fetch(Coupon, coupon.id)).redemptions_count == 1

    async def test_swap_moves_the_slot(self, session, user, menu, make_order, make_coupon, fetch, fetch_all):
        order = await make_order(user, menu)
        first = await make_coupon(code="WELCOME20")
        second = await make_coupon(code="FLAT500", discount_type=DiscountType.FIXED, discount_value="500.00")

        await coupon_service.apply_coupon(session, user.id, order.id, "WELCOME20")
        await coupon_service.apply_coupon(session, user.id, order.id, "FLAT500")

        assert (await fetch(Coupon, first.id)).redemptions_count == 0
        assert (await fetch(Coupon, second.id)).redemptions_count == 1
        stored = await fetch(Order, order.id)
        assert stored.coupon_code == "FLAT500"
        assert stored.payable_amount == Decimal("6000.00")
        redemptions = await fetch_all(select(CouponRedemption).where(CouponRedemption.order_id == order.id))
        assert len(redemptions) == 1
        assert redemptions[0].coupon_id == second.id

    async def test_failed_swap_keeps_the_original_reservation(
        self, session, user, menu, make_order, make_coupon, fetch
    ):
        order = await make_order(user, menu)
        first = await make_coupon(code="WELCOME20")
        full = await make_coupon(code="SOLDOUT", max_redemptions=1, redemptions_count=1)

        await coupon_service.apply_coupon(session, user.id, order.id, "WELCOME20")
        with pytest.raises(ConflictError) as exc_info:
            await coupon_service.apply_coupon(session, user.id, order.id, "SOLDOUT")

        assert exc_info.value.status_code == 409
        assert (await fetch(Coupon, first.id)).redemptions_count == 1
        assert (await fetch(Coupon, full.id)).redemptions_count == 1
        assert (await fetch(Order, order.id)).coupon_code == "WELCOME20"

    async def test_limit_reached_is_a_conflict(self, session, user, menu, make_order, make_coupon):
        first_order = await make_order(user, menu)
        second_order = await make_order(user, menu)
        await make_coupon(max_redemptions=1)

        await coupon_service.apply_coupon(session, user.id, first_order.id, "WELCOME20")
        with pytest.raises(ConflictError) as exc_info:
            await coupon_service.apply_coupon(session, user.id, second_order.id, "WELCOME20")

        assert exc_info.value.message == LIMIT_REACHED
        assert exc_info.value.reason == "coupon_limit_reached"

    async def test_expired_coupon_is_rejected(self, session, user, menu, make_order, make_coupon):
        order = await make_order(user, menu)
        await make_coupon(expires_at=utcnow() - timedelta(hours=1))

        with pytest.raises(CouponRejectedError) as exc_info:
            await coupon_service.apply_coupon(session, user.id, order.id, "WELCOME20")
        assert exc_info.value.status_code == 400

    async def test_unknown_coupon(self, session, user, menu, make_order):
        order = await make_order(user, menu)
        with pytest.raises(NotFoundError):
            await coupon_service.apply_coupon(session, user.id, order.id, "NOPE1234")

    async def test_only_pending_orders(self, session, user, menu, make_order, make_coupon):
        order = await make_order(user, menu, status=OrderStatus.CONFIRMED)
        await make_coupon()

        with pytest.raises(ValidationError, match="pending orders"):
            await coupon_service.apply_coupon(session, user.id, order.id, "WELCOME20")

    async def test_other_customers_order_is_not_found(self, session, user, make_user, menu, make_order, make_coupon):
        order = await make_order(user, menu)
        stranger = await make_user(email="stranger@example.com")
        await make_coupon()

        with pytest.raises(NotFoundError):
            await coupon_service.apply_coupon(session, stranger.id, order.id, "WELCOME20")

    async def test_consumed_coupon_cannot_be_swapped(self, session, user, menu, make_order, make_coupon):
        order = await make_order(user, menu)
        await make_coupon(code="WELCOME20")
        await make_coupon(code="FLAT500", discount_type=DiscountType.FIXED, discount_value="500.00")
        await coupon_service.apply_coupon(session, user.id, order.id, "WELCOME20")
        async with transaction(session):
            assert await coupon_service.consume_order_redemption(session, order.id)

        with pytest.raises(ConflictError, match="already consumed"):
            await coupon_service.apply_coupon(session, user.id, order.id, "FLAT500")

    async def test_validate_does_not_reserve(self, session, user, menu, make_order, make_coupon, fetch):
        order = await make_order(user, menu)
        coupon = await make_coupon(max_redemptions=1)

        preview = await coupon_service.validate_coupon_for_order(session, user.id, order.id, "WELCOME20")

        assert preview.breakdown.payable_amount == Decimal("5200.00")
        assert (await fetch(Coupon, coupon.id)).redemptions_count == 0
        assert (await fetch(Order, order.id)).coupon_id is None


class TestRemoveAndRelease:
    async def test_remove_restores_amounts_and_slot(self, session, user, menu, make_order, make_coupon, fetch, fetch_all):
        order = await make_order(user, menu)
        coupon = await make_coupon(max_redemptions=1)
        await coupon_service.apply_coupon(session, user.id, order.id, "WELCOME20")

        await coupon_service.remove_coupon(session, user.id, order.id)

        stored = await fetch(Order, order.id)
        assert stored.coupon_id is None
        assert stored.coupon_code is None
        assert stored.discount_amount == Decimal("0.00")
        assert stored.payable_amount == Decimal("6500.00")
        assert (await fetch(Coupon, coupon.id)).redemptions_count == 0
        [redemption] = await fetch_all(select(CouponRedemption).where(CouponRedemption.order_id == order.id))
        assert redemption.status == RedemptionStatus.RELEASED

    async def test_reapply_after_release_reserves_again(self, session, user, menu, make_order, make_coupon, fetch):
        order = await make_order(user, menu)
        coupon = await make_coupon(max_redemptions=1)
        await coupon_service.apply_coupon(session, user.id, order.id, "WELCOME20")
        await coupon_service.remove_coupon(session, user.id, order.id)

        application = await coupon_service.apply_coupon(session, user.id, order.id, "WELCOME20")

        assert not application.already_applied
        assert (await fetch(Coupon, coupon.id)).redemptions_count == 1

    async def test_remove_without_coupon(self, session, user, menu, make_order):
        order = await make_order(user, menu)
        with pytest.raises(ValidationError, match="No coupon applied"):
            await coupon_service.remove_coupon(session, user.id, order.id)

    async def test_cancel_releases_reservation(self, session, user, menu, make_order, make_coupon, fetch):
        order = await make_order(user, menu)
        coupon = await make_coupon(max_redemptions=1)
        await coupon_service.apply_coupon(session, user.id, order.id, "WELCOME20")

        await cancel_order(session, user.id, order.id)

        assert (await fetch(Order, order.id)).status == OrderStatus.CANCELLED
        assert (await fetch(Coupon, coupon.id)).redemptions_count == 0

    async def test_release_never_goes_negative(self, session, make_coupon, fetch):
        coupon = await make_coupon()
        async with transaction(session):
            await release_coupon_slot(session, coupon.id)
        assert (await fetch(Coupon, coupon.id)).redemptions_count == 0


# =============================================================================
# CONCURRENCY
# =============================================================================

class TestConcurrentReservations:
    async def test_slot_reservations_never_exceed_the_cap(self, session_factory, make_coupon, fetch):
        coupon = await make_coupon(max_redemptions=5)

        async def attempt() -> bool:
            async with session_factory() as s:
                async with transaction(s):
                    return await reserve_coupon_slot(s, coupon.id)

        results = await asyncio.gather(*[attempt() for _ in range(20)])

        assert results.count(True) == 5
        assert (await fetch(Coupon, coupon.id)).redemptions_count == 5

    async def test_concurrent_applies_admit_exactly_the_limit(
        self, session_factory, user, menu, make_order, make_coupon, fetch, fetch_all
    ):
        coupon = await make_coupon(max_redemptions=4)
        orders = [await make_order(user, menu) for _ in range(12)]

        async def apply(order_id: str):
            async with session_factory() as s:
                return await coupon_service.apply_coupon(s, user.id, order_id, "WELCOME20")

        results = await asyncio.gather(*[apply(o.id) for o in orders], return_exceptions=True)

        wins = [r for r in results if not isinstance(r, Exception)]
        losses = [r for r in results if isinstance(r, Exception)]
        assert len(wins) == 4
        assert len(losses) == 8
        assert all(isinstance(e, ConflictError) and e.reason == "coupon_limit_reached" for e in losses)
        assert (await fetch(Coupon, coupon.id)).redemptions_count == 4
        reserved = await fetch_all(
            select(CouponRedemption).where(CouponRedemption.status == RedemptionStatus.RESERVED)
        )
        assert len(reserved) == 4
        discounted = await fetch_all(select(Order).where(Order.coupon_id == coupon.id))
        assert len(discounted) == 4


# =============================================================================
# ADMIN
# =============================================================================

class TestCreateCoupon:
    async def test_generated_code(self, session):
        coupon = await coupon_service.create_coupon(session, DiscountType.FIXED, "250")
        assert coupon.code.startswith("CPN")
        assert len(coupon.code) == 12
        assert coupon.discount_value == Decimal("250.00")
        assert coupon.redemptions_count == 0

    async def test_duplicate_code(self, session):
        await coupon_service.create_coupon(session, DiscountType.PERCENTAGE, "10", code="dup-code")
        with pytest.raises(ConflictError, match="already exists"):
            await coupon_service.create_coupon(session, DiscountType.PERCENTAGE, "15", code="DUP-CODE")

    @pytest.mark.parametrize("kwargs,message", [
        ({"discount_type": DiscountType.PERCENTAGE, "discount_value": "0"}, "must be positive"),
        ({"discount_type": DiscountType.PERCENTAGE, "discount_value": "101"}, "cannot exceed 100"),
        ({"discount_type": DiscountType.FIXED, "discount_value": "5", "max_redemptions": 0}, "positive integer"),
    ])
    async def test_invalid_input(self, session, kwargs, message):
        with pytest.raises(ValidationError, match=message):
            await coupon_service.create_coupon(session, **kwargs)

    async def test_window_must_be_ordered(self, session):
        now = utcnow()
        with pytest.raises(ValidationError, match="expiresAt must be after startsAt"):
            await coupon_service.create_coupon(
                session, DiscountType.FIXED, "5", starts_at=now, expires_at=now - timedelta(days=1)
            )

    async def test_list_filters_by_active(self, session, make_coupon):
        await make_coupon(code="LIVE1")
        await make_coupon(code="DEAD1", is_active=False)

        coupons, total = await coupon_service.list_coupons(session, active=True)

        assert total == 1
        assert [c.code for c in coupons] == ["LIVE1"]
