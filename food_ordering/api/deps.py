"""
Shared FastAPI dependencies.

Caller identity is established upstream (gateway or session service); the
API trusts ``X-User-Id`` for customers and checks ``X-Admin-Key`` against
the configured admin key.
"""

import hmac
from typing import Optional

from fastapi import Depends, Header, Request

from food_ordering.core.config import get_settings
from food_ordering.core.exceptions import AuthenticationError, ForbiddenError
from food_ordering.services.payment import BasePaymentGateway, get_payment_gateway
from food_ordering.services.receipts import ReceiptDispatcher, get_receipt_dispatcher
from food_ordering.services.throttle import BaseCounterStore, build_limiter, get_counter_store


# =============================================================================
# IDENTITY
# =============================================================================

async def get_current_user_id(x_user_id: Optional[str] = Header(None, alias="X-User-Id")) -> str:
    if not x_user_id or not x_user_id.strip():
        raise AuthenticationError("Authentication required")
    return x_user_id.strip()


async def require_admin(x_admin_key: Optional[str] = Header(None, alias="X-Admin-Key")) -> None:
    expected = get_settings().admin_api_key
    if not x_admin_key:
        raise AuthenticationError("Admin key required")
    if not expected or not hmac.compare_digest(x_admin_key.encode(), expected.encode()):
        raise ForbiddenError("Admin access required", reason="admin_required")


# =============================================================================
# SERVICES
# =============================================================================

def get_gateway() -> BasePaymentGateway:
    return get_payment_gateway()


def get_receipts() -> ReceiptDispatcher:
    return get_receipt_dispatcher()


def get_rate_limit_store() -> BaseCounterStore:
    return get_counter_store()


# =============================================================================
# THROTTLING
# =============================================================================

def client_identity(request: Request) -> str:
    """
    Address the throttle counts against.

    ``X-Forwarded-For`` is only read when ``trusted_proxy_hops`` proxies sit
    in front of the API. Each of them appends the address it saw, so the
    client is the entry the outermost trusted proxy wrote; anything to the
    left of it came from the client and is ignored.
    """
    peer = request.client.host if request.client else "unknown"
    hops = get_settings().trusted_proxy_hops
    if hops <= 0:
        return peer
    forwarded = [
        entry.strip()
        for entry in request.headers.get("x-forwarded-for", "").split(",")
        if entry.strip()
    ]
    if not forwarded:
        return peer
    return forwarded[-hops] if len(forwarded) >= hops else forwarded[0]


async def payment_rate_limit(
    request: Request,
    store: BaseCounterStore = Depends(get_rate_limit_store),
) -> None:
    await build_limiter("payments", store).check(client_identity(request))


async def throttle_rejected_webhook(request: Request, store: BaseCounterStore) -> None:
    """Count a delivery that failed signature checks; signed ones are never throttled."""
    await build_limiter("webhooks", store).check(client_identity(request))
