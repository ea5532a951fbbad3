"""
Order status: lifecycle transitions and the reporting buckets used by
analytics.
"""
from enum import Enum
from typing import Dict, List, Optional


class OrderStatus(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    PROCESSING = "processing"
    SHIPPED = "shipped"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"


class StatusBucket(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


TRANSITIONS: Dict[OrderStatus, List[OrderStatus]] = {
    OrderStatus.PENDING: [OrderStatus.PROCESSING, OrderStatus.CANCELLED],
    OrderStatus.CONFIRMED: [OrderStatus.PROCESSING],
    OrderStatus.PROCESSING: [OrderStatus.SHIPPED],
    OrderStatus.SHIPPED: [OrderStatus.DELIVERED],
    OrderStatus.DELIVERED: [],
    OrderStatus.CANCELLED: [],
}

# Action labels shown to the seller for each target status
ACTION_LABELS = {
    OrderStatus.PROCESSING: "Accept Order",
    OrderStatus.CANCELLED: "Reject Order",
    OrderStatus.SHIPPED: "Mark as Shipped",
    OrderStatus.DELIVERED: "Mark as Delivered",
}

# Raw strings seen from the backend and older app versions
BUCKET_TABLE: Dict[str, StatusBucket] = {
    "pending": StatusBucket.PENDING,
    "deposit_pending": StatusBucket.PENDING,
    "confirmed": StatusBucket.PENDING,
    "shipped": StatusBucket.PENDING,
    "paid": StatusBucket.PENDING,
    "processing": StatusBucket.PROCESSING,
    "in_process": StatusBucket.PROCESSING,
    "completed": StatusBucket.COMPLETED,
    "complete": StatusBucket.COMPLETED,
    "delivered": StatusBucket.COMPLETED,
    "cancelled": StatusBucket.CANCELLED,
    "canceled": StatusBucket.CANCELLED,
}


def normalize_status(raw: Optional[str]) -> StatusBucket:
    """Map a raw order status string onto its reporting bucket.

    Known strings go through the table; anything else falls back to
    substring matching. A bucket maps to itself, so the function is
    idempotent.
    """
    s = str(raw or "").strip().lower()
    if s in BUCKET_TABLE:
        return BUCKET_TABLE[s]
    if "cancel" in s:
        return StatusBucket.CANCELLED
    if "complet" in s or "deliver" in s:
        return StatusBucket.COMPLETED
    if "process" in s:
        return StatusBucket.PROCESSING
    return StatusBucket.PENDING


def parse_status(raw: Optional[str]) -> Optional[OrderStatus]:
    try:
        return OrderStatus(str(raw or "").strip().lower())
    except ValueError:
        return None


def allowed_transitions(current: Optional[str]) -> List[OrderStatus]:
    status = parse_status(current)
    if status is None:
        return []
    return list(TRANSITIONS[status])


def can_transition(current: Optional[str], target: Optional[str]) -> bool:
    target_status = parse_status(target)
    return target_status is not None and target_status in allowed_transitions(current)


def status_update(target: OrderStatus) -> dict:
    """The single write issued for a transition to `target`."""
    update = {"status": target.value}
    if target == OrderStatus.DELIVERED:
        update["payment_status"] = "paid"
    return update
