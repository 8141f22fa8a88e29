import pytest

from food_ordering.core.exceptions import InvalidTransitionError, ValidationError
from food_ordering.models import OrderStatus
from food_ordering.services.order_state import (
    ALLOWED_TRANSITIONS,
    TERMINAL_STATUSES,
    ensure_transition,
    is_terminal,
    is_transition_allowed,
    parse_status,
)


class TestTransitionTable:
    @pytest.mark.parametrize("current,requested", [
        (OrderStatus.PENDING, OrderStatus.CONFIRMED),
        (OrderStatus.PENDING, OrderStatus.CANCELLED),
        (OrderStatus.CONFIRMED, OrderStatus.PREPARING),
        (OrderStatus.CONFIRMED, OrderStatus.CANCELLED),
        (OrderStatus.PREPARING, OrderStatus.OUT_FOR_DELIVERY),
        (OrderStatus.PREPARING, OrderStatus.CANCELLED),
        (OrderStatus.OUT_FOR_DELIVERY, OrderStatus.COMPLETED),
    ])
    def test_allowed(self, current, requested):
        assert is_transition_allowed(current, requested)
        ensure_transition(current, requested)

    @pytest.mark.parametrize("current,requested", [
        (OrderStatus.PENDING, OrderStatus.COMPLETED),
        (OrderStatus.PENDING, OrderStatus.PENDING),
        (OrderStatus.CONFIRMED, OrderStatus.PENDING),
        (OrderStatus.OUT_FOR_DELIVERY, OrderStatus.CANCELLED),
        (OrderStatus.COMPLETED, OrderStatus.CANCELLED),
        (OrderStatus.CANCELLED, OrderStatus.CONFIRMED),
    ])
    def test_rejected(self, current, requested):
        assert not is_transition_allowed(current, requested)
        with pytest.raises(InvalidTransitionError) as exc_info:
            ensure_transition(current, requested)
        assert exc_info.value.status_code == 400
        assert exc_info.value.details == {
            "current_status": current.value,
            "requested_status": requested.value,
        }

    def test_terminal_statuses_have_no_exits(self):
        assert TERMINAL_STATUSES == {OrderStatus.COMPLETED, OrderStatus.CANCELLED}
        for status in TERMINAL_STATUSES:
            assert is_terminal(status)
            assert not ALLOWED_TRANSITIONS[status]
        assert not is_terminal(OrderStatus.PREPARING)


class TestParseStatus:
    def test_case_and_whitespace_insensitive(self):
        assert parse_status("  Out_For_Delivery ") == OrderStatus.OUT_FOR_DELIVERY
        assert parse_status(OrderStatus.PENDING) is OrderStatus.PENDING

    def test_unknown_status(self):
        with pytest.raises(ValidationError) as exc_info:
            parse_status("shipped")
        assert exc_info.value.reason == "invalid_status"
