"""
Payment Gateway Factory

Provides a single entry point for obtaining a payment gateway instance.
The factory pattern allows the rest of the application to remain agnostic
about which implementation is being used.

Usage:
    from food_ordering.services.payment import get_payment_gateway

    # Returns MockPaymentGateway or PaystackGateway based on ENV_MODE
    gateway = get_payment_gateway()

    result = await gateway.verify_transaction("PSK-1A2B3C4D-...")

Environment Switching:
    - ENV_MODE=development → MockPaymentGateway (no API calls)
    - ENV_MODE=staging → PaystackGateway (test keys)
    - ENV_MODE=production → PaystackGateway (live keys)
"""

import logging
from functools import lru_cache

from food_ordering.core.config import get_settings
from food_ordering.services.payment.base import (
    BasePaymentGateway,
    CardAuthorization,
    InitializeResult,
    TransactionResult,
)
from food_ordering.services.payment.mock import MockPaymentGateway
from food_ordering.services.payment.paystack import PaystackGateway

logger = logging.getLogger(__name__)


@lru_cache()
def get_payment_gateway() -> BasePaymentGateway:
    """
    Get the configured payment gateway instance.

    The instance is cached (singleton pattern) so the HTTP connection pool
    and the mock's in-memory transactions are shared.

    Raises:
        ValueError: If a real gateway is required but not configured
    """
    settings = get_settings()

    if not settings.use_real_services:
        logger.info("Payment Gateway: Using MockPaymentGateway (development mode)")
        return MockPaymentGateway(
            webhook_secret=settings.paystack_webhook_secret or "mock-webhook-secret",
            min_latency=0.05,
            max_latency=0.2,
        )

    logger.info(f"Payment Gateway: Using PaystackGateway ({settings.env_mode.value} mode)")
    return PaystackGateway()


def reset_payment_gateway() -> None:
    """
    Clear the cached gateway instance.

    The next call to get_payment_gateway() will create a new instance.
    """
    get_payment_gateway.cache_clear()
    logger.debug("Payment gateway cache cleared")


__all__ = [
    "get_payment_gateway",
    "reset_payment_gateway",
    "BasePaymentGateway",
    "CardAuthorization",
    "InitializeResult",
    "TransactionResult",
    "MockPaymentGateway",
    "PaystackGateway",
]
