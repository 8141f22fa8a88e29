"""
HTTP routers.

    orders    customer orders and coupon application
    payments  checkout, verification, saved cards and the gateway webhook
    admin     order status changes and coupon management
"""

from food_ordering.api.admin import router as admin_router
from food_ordering.api.orders import router as orders_router
from food_ordering.api.payments import router as payments_router

__all__ = ["admin_router", "orders_router", "payments_router"]
