import pytest

from order_status import (OrderStatus, StatusBucket, allowed_transitions, can_transition,
                          normalize_status, status_update)


@pytest.mark.parametrize("raw", [
    "pending", "DELIVERED", "Processing", "cancelled", "Canceled", "completed",
    "deposit_pending", "shipped", "refund requested", "", None, "order_completed",
])
def test_normalize_status_is_idempotent(raw):
    once = normalize_status(raw)
    assert normalize_status(once.value) == once


def test_normalize_status_substring_fallback():
    assert normalize_status("Partially Cancelled") == StatusBucket.CANCELLED
    assert normalize_status("awaiting delivery confirmation") == StatusBucket.COMPLETED
    assert normalize_status("being processed") == StatusBucket.PROCESSING
    assert normalize_status("on hold") == StatusBucket.PENDING


def test_pending_offers_processing_and_cancelled_only():
    assert allowed_transitions("pending") == [OrderStatus.PROCESSING, OrderStatus.CANCELLED]
    assert not can_transition("pending", "shipped")
    assert not can_transition("pending", "delivered")


def test_forward_path_and_terminal_states():
    assert allowed_transitions("processing") == [OrderStatus.SHIPPED]
    assert allowed_transitions("shipped") == [OrderStatus.DELIVERED]
    assert allowed_transitions("delivered") == []
    assert allowed_transitions("cancelled") == []
    assert allowed_transitions("mystery") == []
    assert can_transition("shipped", "Delivered")


def test_delivered_always_marks_paid():
    assert status_update(OrderStatus.DELIVERED) == {"status": "delivered", "payment_status": "paid"}
    assert status_update(OrderStatus.SHIPPED) == {"status": "shipped"}
