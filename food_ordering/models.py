"""
SQLAlchemy Database Models

Order / payment / coupon consistency engine:
- Orders with coupon and delivery-address snapshots
- Bounded coupons with per-order redemption records
- Payments (at most one successful payment per order)
- Saved reusable card authorizations
- Webhook event receipts (de-duplication ledger)

Users, addresses and food items are owned by other parts of the system;
they are modelled here only as far as the engine reads them.
"""

import enum
import uuid

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    text,
)
from sqlalchemy.orm import relationship

from food_ordering.core.timeutils import utcnow
from food_ordering.database import Base


def _uuid() -> str:
    return str(uuid.uuid4())


def _enum(enum_cls: type[enum.Enum], name: str) -> Enum:
    """Store enum values (lowercase) rather than member names."""
    return Enum(
        enum_cls,
        name=name,
        values_callable=lambda members: [m.value for m in members],
        validate_strings=True,
    )


Money = Numeric(12, 2)


# =============================================================================
# ENUMS
# =============================================================================

class OrderStatus(str, enum.Enum):
    """Order status workflow."""
    PENDING = "pending"
    CONFIRMED = "confirmed"
    PREPARING = "preparing"
    OUT_FOR_DELIVERY = "out_for_delivery"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class DiscountType(str, enum.Enum):
    PERCENTAGE = "percentage"
    FIXED = "fixed"


class RedemptionStatus(str, enum.Enum):
    """reserved -> consumed | released; consumed is final."""
    RESERVED = "reserved"
    CONSUMED = "consumed"
    RELEASED = "released"


class PaymentStatus(str, enum.Enum):
    INITIALIZED = "initialized"
    SUCCESS = "success"
    FAILED = "failed"
    ABANDONED = "abandoned"


# =============================================================================
# EXTERNAL COLLABORATORS (read-only for the engine)
# =============================================================================

class User(Base):
    __tablename__ = "users"

    id = Column(String(36), primary_key=True, default=_uuid)
    email = Column(String(255), unique=True, nullable=True)
    full_name = Column(String(150), nullable=True)
    phone = Column(String(20), unique=True, nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow)

    def __repr__(self):
        return f"<User {self.id} - {self.email}>"


class UserAddress(Base):
    """Saved delivery address; copied onto an order at checkout."""
    __tablename__ = "user_addresses"

    id = Column(String(36), primary_key=True, default=_uuid)
    user_id = Column(String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    label = Column(String(100), nullable=True)
    recipient_name = Column(String(120), nullable=False)
    phone = Column(String(30), nullable=False)
    address_line1 = Column(String(255), nullable=False)
    address_line2 = Column(String(255), nullable=True)
    city = Column(String(120), nullable=False)
    state = Column(String(120), nullable=False)
    country = Column(String(120), nullable=False, default="Nigeria")
    postal_code = Column(String(30), nullable=True)
    notes = Column(String(500), nullable=True)
    is_default = Column(Boolean, default=False, nullable=False)
    created_at = Column(DateTime(timezone=True), default=utcnow)


class FoodItem(Base):
    """Catalog entry; prices are copied onto order items."""
    __tablename__ = "food_items"

    id = Column(String(36), primary_key=True, default=_uuid)
    name = Column(String(255), nullable=False)
    price = Column(Money, nullable=False)
    currency = Column(String(10), default="NGN", nullable=False)
    available = Column(Boolean, default=True, nullable=False)


# =============================================================================
# ORDERS
# =============================================================================

class Order(Base):
    """
    Customer order.

    Created ``pending`` at checkout, advanced by the status state machine
    and by settlement, never physically deleted by the engine.
    Invariant: ``payable_amount = total_amount - discount_amount > 0``.
    """
    __tablename__ = "orders"
    __table_args__ = (
        CheckConstraint("payable_amount > 0", name="ck_orders_payable_positive"),
        CheckConstraint("discount_amount >= 0", name="ck_orders_discount_non_negative"),
    )

    id = Column(String(36), primary_key=True, default=_uuid)
    user_id = Column(String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)

    # =========================================================================
    # PRICING
    # =========================================================================
    total_amount = Column(Money, nullable=False)
    discount_amount = Column(Money, nullable=False, default=0)
    payable_amount = Column(Money, nullable=False)

    # =========================================================================
    # COUPON SNAPSHOT
    # =========================================================================
    coupon_id = Column(String(36), ForeignKey("coupons.id", ondelete="SET NULL"), nullable=True, index=True)
    coupon_code = Column(String(40), nullable=True, index=True)
    coupon_discount_type = Column(_enum(DiscountType, "order_coupon_discount_type"), nullable=True)
    coupon_discount_value = Column(Money, nullable=True)

    # =========================================================================
    # DELIVERY SNAPSHOT
    # =========================================================================
    delivery_address_id = Column(
        String(36), ForeignKey("user_addresses.id", ondelete="SET NULL"), nullable=True, index=True
    )
    delivery_label = Column(String(100), nullable=True)
    delivery_recipient_name = Column(String(120), nullable=True)
    delivery_phone = Column(String(30), nullable=True)
    delivery_address_line1 = Column(String(255), nullable=True)
    delivery_address_line2 = Column(String(255), nullable=True)
    delivery_city = Column(String(120), nullable=True)
    delivery_state = Column(String(120), nullable=True)
    delivery_country = Column(String(120), nullable=True)
    delivery_postal_code = Column(String(30), nullable=True)
    delivery_notes = Column(String(500), nullable=True)

    # =========================================================================
    # ORDER STATUS
    # =========================================================================
    status = Column(
        _enum(OrderStatus, "order_status"),
        default=OrderStatus.PENDING,
        nullable=False,
        index=True,
    )

    # =========================================================================
    # TIMESTAMPS
    # =========================================================================
    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    items = relationship("OrderItem", back_populates="order", lazy="raise")

    def __repr__(self):
        return f"<Order {self.id} - {self.status.value} - {self.payable_amount}>"


class OrderItem(Base):
    __tablename__ = "order_items"

    id = Column(String(36), primary_key=True, default=_uuid)
    order_id = Column(String(36), ForeignKey("orders.id", ondelete="CASCADE"), nullable=False, index=True)
    food_id = Column(String(36), ForeignKey("food_items.id"), nullable=False)
    name = Column(String(255), nullable=False)
    quantity = Column(Integer, nullable=False)
    price_at_order = Column(Money, nullable=False)

    order = relationship("Order", back_populates="items")


# =============================================================================
# COUPONS
# =============================================================================

class Coupon(Base):
    """
    Discount coupon with an optional redemption cap.

    ``redemptions_count`` counts reserved and consumed redemptions and only
    ever moves through a single conditional UPDATE.
    """
    __tablename__ = "coupons"
    __table_args__ = (
        CheckConstraint("redemptions_count >= 0", name="ck_coupons_count_non_negative"),
        CheckConstraint(
            "max_redemptions IS NULL OR redemptions_count <= max_redemptions",
            name="ck_coupons_count_within_cap",
        ),
        CheckConstraint("discount_value > 0", name="ck_coupons_value_positive"),
    )

    id = Column(String(36), primary_key=True, default=_uuid)
    code = Column(String(40), nullable=False, unique=True)
    description = Column(String(255), nullable=True)
    discount_type = Column(_enum(DiscountType, "coupon_discount_type"), nullable=False)
    discount_value = Column(Money, nullable=False)
    max_redemptions = Column(Integer, nullable=True)
    redemptions_count = Column(Integer, nullable=False, default=0)
    starts_at = Column(DateTime(timezone=True), nullable=True)
    expires_at = Column(DateTime(timezone=True), nullable=True, index=True)
    is_active = Column(Boolean, nullable=False, default=True, index=True)
    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    def __repr__(self):
        return f"<Coupon {self.code} - {self.redemptions_count}/{self.max_redemptions}>"


class CouponRedemption(Base):
    """Binds one coupon usage to one order (at most one row per order)."""
    __tablename__ = "coupon_redemptions"
    __table_args__ = (
        UniqueConstraint("order_id", name="uq_coupon_redemptions_order"),
        Index("ix_coupon_redemptions_coupon_status", "coupon_id", "status"),
    )

    id = Column(String(36), primary_key=True, default=_uuid)
    coupon_id = Column(String(36), ForeignKey("coupons.id", ondelete="CASCADE"), nullable=False)
    order_id = Column(String(36), ForeignKey("orders.id", ondelete="CASCADE"), nullable=False)
    user_id = Column(String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    status = Column(
        _enum(RedemptionStatus, "coupon_redemption_status"),
        nullable=False,
        default=RedemptionStatus.RESERVED,
    )
    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)


# =============================================================================
# PAYMENTS
# =============================================================================

class Payment(Base):
    """
    One payment attempt against an order.

    initialized -> success | failed | abandoned. The partial unique index
    makes a second successful payment for the same order impossible.
    """
    __tablename__ = "payments"
    __table_args__ = (
        Index(
            "uq_payments_order_success",
            "order_id",
            unique=True,
            postgresql_where=text("status = 'success'"),
            sqlite_where=text("status = 'success'"),
        ),
    )

    id = Column(String(36), primary_key=True, default=_uuid)
    order_id = Column(String(36), ForeignKey("orders.id", ondelete="CASCADE"), nullable=False, index=True)
    user_id = Column(String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    provider = Column(String(20), nullable=False, default="paystack")
    reference = Column(String(120), nullable=False, unique=True)
    amount = Column(Money, nullable=False)
    currency = Column(String(10), nullable=False, default="NGN")
    status = Column(
        _enum(PaymentStatus, "payment_status"),
        nullable=False,
        default=PaymentStatus.INITIALIZED,
        index=True,
    )
    save_card = Column(Boolean, nullable=False, default=False)
    gateway_response = Column(Text, nullable=True)  # opaque JSON
    paid_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    def __repr__(self):
        return f"<Payment {self.reference} - {self.status.value}>"


class SavedCard(Base):
    """Reusable gateway authorization a user can be debited with."""
    __tablename__ = "user_payment_cards"
    __table_args__ = (
        UniqueConstraint("user_id", "signature", name="uq_user_payment_cards_signature"),
    )

    id = Column(String(36), primary_key=True, default=_uuid)
    user_id = Column(String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    provider = Column(String(20), nullable=False, default="paystack")
    authorization_code = Column(String(255), nullable=False)
    signature = Column(String(255), nullable=False)
    last4 = Column(String(4), nullable=True)
    exp_month = Column(String(2), nullable=True)
    exp_year = Column(String(4), nullable=True)
    card_type = Column(String(50), nullable=True)
    bank = Column(String(120), nullable=True)
    account_name = Column(String(120), nullable=True)
    reusable = Column(Boolean, nullable=False, default=True)
    is_default = Column(Boolean, nullable=False, default=False)
    last_used_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)


# =============================================================================
# WEBHOOK DE-DUPLICATION
# =============================================================================

class WebhookEventReceipt(Base):
    """
    First sighting of a signed webhook delivery.

    Unique per (provider, signature_hash). ``processed_at`` is set only in the
    transaction that commits the event's business effects.
    """
    __tablename__ = "webhook_event_receipts"
    __table_args__ = (
        UniqueConstraint("provider", "signature_hash", name="uq_webhook_receipts_provider_signature"),
        Index("ix_webhook_receipts_provider_reference", "provider", "reference"),
    )

    id = Column(String(36), primary_key=True, default=_uuid)
    provider = Column(String(20), nullable=False)
    event_id = Column(String(120), nullable=True)
    reference = Column(String(120), nullable=True)
    signature_hash = Column(String(64), nullable=False)
    payload_hash = Column(String(64), nullable=False)
    first_seen_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    processed_at = Column(DateTime(timezone=True), nullable=True, index=True)

    def __repr__(self):
        state = "processed" if self.processed_at else "pending"
        return f"<WebhookEventReceipt {self.provider}:{self.signature_hash[:12]} - {state}>"
