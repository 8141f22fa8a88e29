"""
Order Status State Machine

Pure transition-table logic:

    pending          -> confirmed, cancelled
    confirmed        -> preparing, cancelled
    preparing        -> out_for_delivery, cancelled
    out_for_delivery -> completed
    completed, cancelled: terminal
"""

from typing import Union

from food_ordering.core.exceptions import InvalidTransitionError, ValidationError
from food_ordering.models import OrderStatus

ALLOWED_TRANSITIONS: dict[OrderStatus, frozenset[OrderStatus]] = {
    OrderStatus.PENDING: frozenset({OrderStatus.CONFIRMED, OrderStatus.CANCELLED}),
    OrderStatus.CONFIRMED: frozenset({OrderStatus.PREPARING, OrderStatus.CANCELLED}),
    OrderStatus.PREPARING: frozenset({OrderStatus.OUT_FOR_DELIVERY, OrderStatus.CANCELLED}),
    OrderStatus.OUT_FOR_DELIVERY: frozenset({OrderStatus.COMPLETED}),
    OrderStatus.COMPLETED: frozenset(),
    OrderStatus.CANCELLED: frozenset(),
}

TERMINAL_STATUSES = frozenset(
    status for status, targets in ALLOWED_TRANSITIONS.items() if not targets
)


def parse_status(value: Union[str, OrderStatus]) -> OrderStatus:
    """Parse user input into an ``OrderStatus``."""
    if isinstance(value, OrderStatus):
        return value
    try:
        return OrderStatus(str(value).strip().lower())
    except ValueError:
        valid = [s.value for s in OrderStatus]
        raise ValidationError(f"Invalid status. Options: {valid}", reason="invalid_status")


def is_terminal(status: OrderStatus) -> bool:
    return status in TERMINAL_STATUSES


def is_transition_allowed(current: OrderStatus, requested: OrderStatus) -> bool:
    return requested in ALLOWED_TRANSITIONS.get(current, frozenset())


def ensure_transition(current: OrderStatus, requested: OrderStatus) -> None:
    """Raise ``InvalidTransitionError`` unless ``current -> requested`` is legal."""
    if not is_transition_allowed(current, requested):
        raise InvalidTransitionError(current.value, requested.value)
