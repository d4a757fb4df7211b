from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from marketplace.core.errors import InvalidReturnTransition, InvalidStatusTransition
from marketplace.domain.orders import status as st


def test_transition_table_is_closed_and_checked_for_every_pair():
    for current in st.ORDER_STATUSES:
        for target in st.ORDER_STATUSES:
            if target in st.ORDER_TRANSITIONS[current]:
                st.assert_transition(current, target)
            else:
                with pytest.raises(InvalidStatusTransition) as exc:
                    st.assert_transition(current, target)
                assert exc.value.code == "INVALID_STATUS_TRANSITION"
                assert exc.value.status_code == 400


def test_every_target_is_a_known_status():
    for targets in st.ORDER_TRANSITIONS.values():
        assert targets <= set(st.ORDER_STATUSES)


def test_terminal_statuses_have_no_exits():
    for status in st.TERMINAL_STATUSES:
        assert st.allowed_targets(status) == frozenset()


def test_unknown_status_is_rejected():
    with pytest.raises(InvalidStatusTransition):
        st.assert_transition("pending", "teleported")
    with pytest.raises(InvalidStatusTransition):
        st.assert_transition("teleported", "pending")


def test_payment_failed_is_reachable_only_through_payment_confirmation():
    assert not st.can_transition(st.PENDING, st.PAYMENT_FAILED)
    assert st.can_transition(st.PENDING, st.PAYMENT_FAILED, include_system=True)
    assert st.can_transition(st.PAYMENT_FAILED, st.PAYMENT_CONFIRMED)
    assert st.can_transition(st.PAYMENT_FAILED, st.CANCELLED)


def test_refund_statuses_follow_a_settled_refund_on_delivered_orders():
    for target in (st.PARTIALLY_REFUNDED, st.REFUNDED):
        assert not st.can_transition(st.DELIVERED, target)
        assert st.can_transition(st.DELIVERED, target, include_system=True)
        assert not st.can_transition(st.SHIPPED, target, include_system=True)
        assert not st.can_transition(st.CANCELLED, target, include_system=True)
    assert st.can_transition(st.PARTIALLY_REFUNDED, st.REFUNDED)
    assert st.REFUND_STATUS_FOR_PAYMENT == {"refunded": st.REFUNDED, "partially_refunded": st.PARTIALLY_REFUNDED}


def test_cancellable_statuses():
    assert st.can_be_cancelled("pending")
    assert st.can_be_cancelled("out_for_delivery")
    assert not st.can_be_cancelled("delivered")
    assert not st.can_be_cancelled("cancelled")


def test_return_window():
    now = datetime(2026, 3, 1, tzinfo=timezone.utc)
    assert st.can_be_returned("delivered", now - timedelta(days=29), 30, now=now)
    assert st.can_be_returned("completed", now - timedelta(days=30), 30, now=now)
    assert st.can_be_returned("partially_refunded", now - timedelta(days=3), 30, now=now)
    assert not st.can_be_returned("delivered", now - timedelta(days=31), 30, now=now)
    assert not st.can_be_returned("delivered", None, 30, now=now)
    assert not st.can_be_returned("shipped", now - timedelta(days=1), 30, now=now)
    naive = (now - timedelta(days=2)).replace(tzinfo=None)
    assert st.can_be_returned("delivered", naive, 30, now=now)


def test_vendor_sub_orders_move_forward_only():
    assert st.vendor_can_advance("pending", "processing")
    assert st.vendor_can_advance("pending", "shipped")
    assert not st.vendor_can_advance("shipped", "processing")
    assert not st.vendor_can_advance("delivered", "delivered")
    assert not st.vendor_can_advance("cancelled", "shipped")
    assert st.vendor_rank("ready") < st.vendor_rank("shipped")
    assert st.vendor_rank("cancelled") == -1


@pytest.mark.parametrize(
    ("current", "vendor_statuses", "expected"),
    [
        ("ready", ["shipped", "delivered"], "shipped"),
        ("ready", ["shipped", "pending"], None),
        ("ready", ["delivered", "delivered"], "shipped"),
        ("shipped", ["delivered", "delivered"], "delivered"),
        ("out_for_delivery", ["delivered"], "delivered"),
        ("shipped", ["delivered", "shipped"], None),
        ("processing", ["shipped", "shipped"], None),
        ("processing", ["delivered", "delivered"], None),
        ("ready", [], None),
    ],
)
def test_derive_main_status(current, vendor_statuses, expected):
    assert st.derive_main_status(current, vendor_statuses) == expected


def test_return_request_transitions():
    st.assert_return_transition("requested", "approved")
    st.assert_return_transition("requested", "rejected")
    st.assert_return_transition("approved", "received")
    st.assert_return_transition("received", "refunded")
    with pytest.raises(InvalidReturnTransition):
        st.assert_return_transition("requested", "refunded")
    with pytest.raises(InvalidReturnTransition):
        st.assert_return_transition("rejected", "approved")
    with pytest.raises(InvalidReturnTransition):
        st.assert_return_transition("refunded", "received")
