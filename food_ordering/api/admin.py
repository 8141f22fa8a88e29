"""
Admin endpoints: order status changes and coupon management.
"""

from typing import Optional

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from food_ordering.api.deps import require_admin
from food_ordering.database import get_db
from food_ordering.schemas import (
    CouponCreate,
    CouponListResponse,
    CouponResponse,
    ErrorResponse,
    OrderStatusResponse,
    OrderStatusUpdate,
)
from food_ordering.services import coupons as coupon_service
from food_ordering.services import orders as order_service

router = APIRouter(prefix="/api/admin", tags=["Admin"], dependencies=[Depends(require_admin)])


@router.patch(
    "/orders/{order_id}/status",
    response_model=OrderStatusResponse,
    responses={400: {"model": ErrorResponse}, 404: {"model": ErrorResponse}},
)
async def update_order_status(
    order_id: str,
    body: OrderStatusUpdate,
    db: AsyncSession = Depends(get_db),
) -> OrderStatusResponse:
    """Move an order along the state machine; cancelling releases its coupon."""
    order, previous = await order_service.update_order_status(db, order_id, body.status)
    return OrderStatusResponse(
        message="Order status updated",
        order_id=order.id,
        previous_status=previous.value,
        new_status=order.status.value,
    )


@router.post(
    "/coupons",
    response_model=CouponResponse,
    status_code=status.HTTP_201_CREATED,
    responses={400: {"model": ErrorResponse}, 409: {"model": ErrorResponse}},
    tags=["Coupons"],
)
async def create_coupon(
    body: CouponCreate,
    db: AsyncSession = Depends(get_db),
) -> CouponResponse:
    coupon = await coupon_service.create_coupon(
        db,
        discount_type=body.discount_type,
        discount_value=body.discount_value,
        code=body.code,
        description=body.description,
        max_redemptions=body.max_redemptions,
        starts_at=body.starts_at,
        expires_at=body.expires_at,
        is_active=body.is_active,
    )
    return CouponResponse.model_validate(coupon)


@router.get("/coupons", response_model=CouponListResponse, tags=["Coupons"])
async def list_coupons(
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    active: Optional[bool] = Query(None),
    db: AsyncSession = Depends(get_db),
) -> CouponListResponse:
    coupons, total = await coupon_service.list_coupons(db, page=page, limit=limit, active=active)
    return CouponListResponse(
        page=page,
        limit=limit,
        total=total,
        coupons=[CouponResponse.model_validate(coupon) for coupon in coupons],
    )
