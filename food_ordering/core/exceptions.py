"""
Error Taxonomy

Every failure the engine reports to a caller is an ``OrderingError``
subclass carrying an HTTP status, a machine-readable ``reason`` and
optional structured ``details`` (for example the existing payment
reference on a conflict).

Validation and conflict errors are shown to the client as-is. Gateway and
store errors always surface with a generic message; the upstream detail is
kept in the logs only.
"""

from typing import Any, Optional


class OrderingError(Exception):
    """Base class for all engine errors."""

    status_code: int = 500
    default_reason: str = "internal_error"
    expose_message: bool = True

    def __init__(
        self,
        message: str,
        reason: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.message = message
        self.reason = reason or self.default_reason
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        """Convert to the JSON body returned by the API."""
        return {
            "success": False,
            "error": self.message,
            "reason": self.reason,
            **self.details,
        }


class ValidationError(OrderingError):
    """Malformed input or a request that is illegal in the current state."""
    status_code = 400
    default_reason = "validation_error"


class InvalidTransitionError(ValidationError):
    """Requested order status is not reachable from the current one."""
    default_reason = "invalid_transition"

    def __init__(self, current: str, requested: str):
        super().__init__(
            f"Cannot transition order from '{current}' to '{requested}'",
            details={"current_status": current, "requested_status": requested},
        )
        self.current = current
        self.requested = requested


class CouponRejectedError(ValidationError):
    """Coupon cannot be used for this order."""
    default_reason = "coupon_rejected"


class AuthenticationError(OrderingError):
    status_code = 401
    default_reason = "unauthenticated"


class ForbiddenError(OrderingError):
    status_code = 403
    default_reason = "forbidden"


class NotFoundError(OrderingError):
    status_code = 404
    default_reason = "not_found"


class ConflictError(OrderingError):
    """Competing or terminal state: limit reached, already paid, consumed."""
    status_code = 409
    default_reason = "conflict"


class PaymentDeclinedError(OrderingError):
    """The gateway declined a debit; the failed attempt has been recorded."""
    status_code = 402
    default_reason = "payment_declined"


class RateLimitedError(OrderingError):
    status_code = 429
    default_reason = "rate_limited"

    def __init__(self, retry_after: int):
        super().__init__(
            "Too many requests, please try again later",
            details={"retry_after": retry_after},
        )
        self.retry_after = retry_after


class GatewayError(OrderingError):
    """
    Upstream payment provider unreachable, timed out, or malformed.

    Safe for the client to retry: no local mutation precedes a gateway call.
    """
    status_code = 502
    default_reason = "gateway_error"
    expose_message = False

    def __init__(self, message: str = "Payment provider request failed", **kwargs):
        super().__init__(message, **kwargs)

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": False,
            "error": "Payment provider is unavailable, please retry",
            "reason": self.reason,
        }


class TransientStoreError(OrderingError):
    """Lock timeout or deadlock; the whole operation may be retried."""
    status_code = 503
    default_reason = "transient_store_error"
    expose_message = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": False,
            "error": "The service is busy, please retry",
            "reason": self.reason,
        }
