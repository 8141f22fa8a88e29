"""
Customer order endpoints, including coupon validate / apply / remove.
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from food_ordering.api.deps import get_current_user_id
from food_ordering.database import get_db
from food_ordering.models import OrderStatus
from food_ordering.schemas import (
    CouponCodeRequest,
    CouponPreviewResponse,
    ErrorResponse,
    OrderCreate,
    OrderDetailResponse,
    OrderListResponse,
    OrderResponse,
    OrderStatusResponse,
)
from food_ordering.services import coupons as coupon_service
from food_ordering.services import orders as order_service
from food_ordering.services.coupons import CouponApplication

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/orders", tags=["Orders"])


def _preview(application: CouponApplication, message: str) -> CouponPreviewResponse:
    return CouponPreviewResponse(
        message=message,
        order_id=application.order.id,
        coupon_code=application.coupon.code,
        discount_type=application.coupon.discount_type,
        discount_value=application.coupon.discount_value,
        total_amount=application.breakdown.total_amount,
        discount_amount=application.breakdown.discount_amount,
        payable_amount=application.breakdown.payable_amount,
        already_applied=application.already_applied,
    )


# =============================================================================
# ORDERS
# =============================================================================

@router.post(
    "",
    response_model=OrderResponse,
    status_code=status.HTTP_201_CREATED,
    responses={400: {"model": ErrorResponse}, 404: {"model": ErrorResponse}, 409: {"model": ErrorResponse}},
    summary="Create Order",
)
async def create_order(
    order_data: OrderCreate,
    user_id: str = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db),
) -> OrderResponse:
    """Create a pending order priced from the catalog."""
    order = await order_service.create_order(
        db,
        user_id,
        [order_service.OrderLine(food_id=item.food_id, quantity=item.quantity) for item in order_data.items],
        address_id=order_data.address_id,
    )
    return OrderResponse.model_validate(order)


@router.get("", response_model=OrderListResponse, summary="List Orders")
async def list_orders(
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    status_filter: Optional[str] = Query(None, alias="status"),
    user_id: str = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db),
) -> OrderListResponse:
    """Retrieve the caller's orders, newest first."""
    orders, total = await order_service.list_orders(db, user_id, page=page, limit=limit, status=status_filter)
    return OrderListResponse(
        page=page,
        limit=limit,
        total=total,
        orders=[OrderResponse.model_validate(order) for order in orders],
    )


@router.get(
    "/{order_id}",
    response_model=OrderDetailResponse,
    responses={404: {"model": ErrorResponse}},
)
async def get_order(
    order_id: str,
    user_id: str = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db),
) -> OrderDetailResponse:
    order = await order_service.get_order(db, user_id, order_id)
    return OrderDetailResponse.model_validate(order)


@router.post(
    "/{order_id}/cancel",
    response_model=OrderStatusResponse,
    responses={400: {"model": ErrorResponse}, 404: {"model": ErrorResponse}},
)
async def cancel_order(
    order_id: str,
    user_id: str = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db),
) -> OrderStatusResponse:
    order = await order_service.cancel_order(db, user_id, order_id)
    return OrderStatusResponse(
        message="Order cancelled",
        order_id=order.id,
        previous_status=OrderStatus.PENDING.value,
        new_status=order.status.value,
    )


# =============================================================================
# COUPONS
# =============================================================================

@router.post(
    "/{order_id}/coupon/validate",
    response_model=CouponPreviewResponse,
    responses={400: {"model": ErrorResponse}, 404: {"model": ErrorResponse}, 409: {"model": ErrorResponse}},
    tags=["Coupons"],
)
async def validate_coupon(
    order_id: str,
    body: CouponCodeRequest,
    user_id: str = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db),
) -> CouponPreviewResponse:
    """Preview a coupon's effect without reserving it."""
    application = await coupon_service.validate_coupon_for_order(db, user_id, order_id, body.code)
    return _preview(application, "Coupon is valid")


@router.post(
    "/{order_id}/coupon/apply",
    response_model=CouponPreviewResponse,
    responses={400: {"model": ErrorResponse}, 404: {"model": ErrorResponse}, 409: {"model": ErrorResponse}},
    tags=["Coupons"],
)
async def apply_coupon(
    order_id: str,
    body: CouponCodeRequest,
    user_id: str = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db),
) -> CouponPreviewResponse:
    application = await coupon_service.apply_coupon(db, user_id, order_id, body.code)
    message = "Coupon already applied" if application.already_applied else "Coupon applied successfully"
    return _preview(application, message)


@router.delete(
    "/{order_id}/coupon",
    response_model=OrderResponse,
    responses={400: {"model": ErrorResponse}, 404: {"model": ErrorResponse}, 409: {"model": ErrorResponse}},
    tags=["Coupons"],
)
async def remove_coupon(
    order_id: str,
    user_id: str = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db),
) -> OrderResponse:
    order = await coupon_service.remove_coupon(db, user_id, order_id)
    logger.info(f"Coupon removed from order {order.id}")
    return OrderResponse.model_validate(order)
