"""
Pydantic Schemas for Request/Response Validation

Covers the order, coupon, payment and saved-card endpoints.
Monetary fields are ``Decimal`` and serialize as 2-place strings.
"""

from datetime import datetime
from decimal import Decimal
from typing import List, Optional

from pydantic import BaseModel, Field, field_validator

from food_ordering.models import DiscountType, OrderStatus


# =============================================================================
# ORDER SCHEMAS
# =============================================================================

class OrderItemCreate(BaseModel):
    """Single catalog item in a new order."""
    food_id: str = Field(..., min_length=1, max_length=36)
    quantity: int = Field(..., ge=1, le=100, examples=[2])


class OrderCreate(BaseModel):
    """Request schema for creating a new order."""
    items: List[OrderItemCreate] = Field(..., min_length=1)
    address_id: Optional[str] = Field(None, max_length=36)


class OrderItemResponse(BaseModel):
    id: str
    food_id: str
    name: str
    quantity: int
    price_at_order: Decimal

    class Config:
        from_attributes = True


class OrderResponse(BaseModel):
    """Response schema for a single order."""
    id: str
    user_id: str
    status: OrderStatus
    total_amount: Decimal
    discount_amount: Decimal
    payable_amount: Decimal
    coupon_code: Optional[str] = None
    coupon_discount_type: Optional[DiscountType] = None
    coupon_discount_value: Optional[Decimal] = None
    delivery_address_id: Optional[str] = None
    delivery_label: Optional[str] = None
    delivery_recipient_name: Optional[str] = None
    delivery_phone: Optional[str] = None
    delivery_address_line1: Optional[str] = None
    delivery_address_line2: Optional[str] = None
    delivery_city: Optional[str] = None
    delivery_state: Optional[str] = None
    delivery_country: Optional[str] = None
    delivery_postal_code: Optional[str] = None
    delivery_notes: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class OrderDetailResponse(OrderResponse):
    items: List[OrderItemResponse] = []


class OrderListResponse(BaseModel):
    """Response for listing multiple orders."""
    page: int
    limit: int
    total: int
    orders: List[OrderResponse]


class OrderStatusUpdate(BaseModel):
    status: str = Field(..., min_length=1, examples=["confirmed"])


class OrderStatusResponse(BaseModel):
    success: bool = True
    message: str
    order_id: str
    previous_status: Optional[str] = None
    new_status: str


# =============================================================================
# COUPON SCHEMAS
# =============================================================================

class CouponCodeRequest(BaseModel):
    code: str = Field(..., min_length=1, max_length=64, examples=["WELCOME20"])


class CouponPreviewResponse(BaseModel):
    """Result of validating or applying a coupon to an order."""
    success: bool = True
    message: str
    order_id: str
    coupon_code: str
    discount_type: DiscountType
    discount_value: Decimal
    total_amount: Decimal
    discount_amount: Decimal
    payable_amount: Decimal
    already_applied: bool = False


class CouponCreate(BaseModel):
    code: Optional[str] = Field(None, max_length=40)
    description: Optional[str] = Field(None, max_length=255)
    discount_type: DiscountType
    discount_value: Decimal
    max_redemptions: Optional[int] = None
    starts_at: Optional[datetime] = None
    expires_at: Optional[datetime] = None
    is_active: bool = True

    @field_validator("code")
    @classmethod
    def blank_code_is_generated(cls, v: Optional[str]) -> Optional[str]:
        if v is None or not v.strip():
            return None
        return v


class CouponResponse(BaseModel):
    id: str
    code: str
    description: Optional[str] = None
    discount_type: DiscountType
    discount_value: Decimal
    max_redemptions: Optional[int] = None
    redemptions_count: int
    starts_at: Optional[datetime] = None
    expires_at: Optional[datetime] = None
    is_active: bool
    created_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class CouponListResponse(BaseModel):
    page: int
    limit: int
    total: int
    coupons: List[CouponResponse]


# =============================================================================
# PAYMENT SCHEMAS
# =============================================================================

class PaymentInitializeRequest(BaseModel):
    order_id: str = Field(..., min_length=1, max_length=36)
    callback_url: Optional[str] = Field(None, examples=["https://shop.example.com/paid"])
    save_card: bool = False


class PaymentInitializeResponse(BaseModel):
    success: bool = True
    message: str = "Payment initialized successfully"
    order_id: str
    reference: str
    authorization_url: str
    access_code: Optional[str] = None
    amount: Decimal
    currency: str
    save_card: bool = False


class PaymentOutcomeResponse(BaseModel):
    """Verify and saved-card results."""
    success: bool = True
    message: str
    reference: str
    order_id: str
    status: str
    order_status: Optional[str] = None


class SavedCardChargeRequest(BaseModel):
    order_id: str = Field(..., min_length=1, max_length=36)
    card_id: str = Field(..., min_length=1, max_length=36)


class AttachCardRequest(BaseModel):
    reference: str = Field(..., min_length=6, max_length=120)


class SavedCardResponse(BaseModel):
    id: str
    provider: str
    last4: Optional[str] = None
    exp_month: Optional[str] = None
    exp_year: Optional[str] = None
    card_type: Optional[str] = None
    bank: Optional[str] = None
    account_name: Optional[str] = None
    is_default: bool
    last_used_at: Optional[datetime] = None
    created_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class SavedCardListResponse(BaseModel):
    cards: List[SavedCardResponse]


class WebhookAck(BaseModel):
    message: str


# =============================================================================
# GENERIC SCHEMAS
# =============================================================================

class MessageResponse(BaseModel):
    success: bool = True
    message: str


class ErrorResponse(BaseModel):
    """Standard error response."""
    success: bool = False
    error: str
    reason: str


class HealthResponse(BaseModel):
    """Health check response."""
    status: str
    database: str
    redis: str
    payment_gateway: str
    notification_service: str
    timestamp: datetime
