"""
Purchase Order State Machine — lifecycle graph and legacy status mapping.

Pure functions only: nothing here touches the database. The side-effecting
half (persist + audit) lives in supply_chain.transitions.

Lifecycle:
  draft              → pending_approval | cancelled
  pending_approval   → approved | cancelled
  approved           → sent_to_supplier | partially_received | fully_received | cancelled
  sent_to_supplier   → partially_received | fully_received | cancelled
  partially_received → partially_received | fully_received | cancelled
  fully_received, cancelled: terminal
"""

from enum import Enum
from typing import Any


class POStatus(str, Enum):
    """Enhanced (fine-grained) purchase order status."""

    DRAFT = "draft"
    PENDING_APPROVAL = "pending_approval"
    APPROVED = "approved"
    SENT_TO_SUPPLIER = "sent_to_supplier"
    PARTIALLY_RECEIVED = "partially_received"
    FULLY_RECEIVED = "fully_received"
    CANCELLED = "cancelled"


VALID_TRANSITIONS: dict[POStatus, frozenset[POStatus]] = {
    POStatus.DRAFT: frozenset({POStatus.PENDING_APPROVAL, POStatus.CANCELLED}),
    POStatus.PENDING_APPROVAL: frozenset({POStatus.APPROVED, POStatus.CANCELLED}),
    POStatus.APPROVED: frozenset(
        {
            POStatus.SENT_TO_SUPPLIER,
            POStatus.PARTIALLY_RECEIVED,
            POStatus.FULLY_RECEIVED,
            POStatus.CANCELLED,
        }
    ),
    POStatus.SENT_TO_SUPPLIER: frozenset(
        {POStatus.PARTIALLY_RECEIVED, POStatus.FULLY_RECEIVED, POStatus.CANCELLED}
    ),
    POStatus.PARTIALLY_RECEIVED: frozenset(
        {POStatus.PARTIALLY_RECEIVED, POStatus.FULLY_RECEIVED, POStatus.CANCELLED}
    ),
    POStatus.FULLY_RECEIVED: frozenset(),
    POStatus.CANCELLED: frozenset(),
}

RECEIVABLE_STATUSES = frozenset(
    {POStatus.APPROVED, POStatus.SENT_TO_SUPPLIER, POStatus.PARTIALLY_RECEIVED}
)

# Coarse status kept for older screens/reports. One direction only:
# the legacy value is always derived, never stored or parsed back.
LEGACY_STATUS_MAP: dict[POStatus, str] = {
    POStatus.DRAFT: "draft",
    POStatus.PENDING_APPROVAL: "draft",
    POStatus.APPROVED: "approved",
    POStatus.SENT_TO_SUPPLIER: "sent",
    POStatus.PARTIALLY_RECEIVED: "partial",
    POStatus.FULLY_RECEIVED: "received",
    POStatus.CANCELLED: "cancelled",
}


def coerce_status(value: Any) -> POStatus | None:
    """Return the POStatus for value, or None when it is not a known status."""
    if isinstance(value, POStatus):
        return value
    try:
        return POStatus(value)
    except ValueError:
        return None


def can_transition(from_status: Any, to_status: Any) -> bool:
    """Whether from_status -> to_status is a legal edge. Never raises."""
    source = coerce_status(from_status)
    target = coerce_status(to_status)
    if source is None or target is None:
        return False
    return target in VALID_TRANSITIONS[source]


def valid_transitions(status: Any) -> list[POStatus]:
    source = coerce_status(status)
    if source is None:
        return []
    return sorted(VALID_TRANSITIONS[source], key=lambda s: list(POStatus).index(s))


def is_terminal(status: Any) -> bool:
    source = coerce_status(status)
    return source is not None and not VALID_TRANSITIONS[source]


def is_receivable(status: Any) -> bool:
    return coerce_status(status) in RECEIVABLE_STATUSES


def legacy_status(status: Any) -> str:
    """Map an enhanced status to the legacy coarse status (draft|sent|approved|partial|received|cancelled)."""
    source = coerce_status(status)
    if source is None:
        raise ValueError(f"Unknown purchase order status: {status!r}")
    return LEGACY_STATUS_MAP[source]


def derive_receipt_status(lines: list[tuple[int, int]]) -> POStatus | None:
    """
    Status implied by (received, ordered) pairs after a receipt.

    Returns FULLY_RECEIVED when every line is complete, PARTIALLY_RECEIVED when
    anything has been received, otherwise None (leave status unchanged).
    """
    if not lines:
        return None
    if all(received == ordered for received, ordered in lines):
        return POStatus.FULLY_RECEIVED
    if any(received > 0 for received, _ in lines):
        return POStatus.PARTIALLY_RECEIVED
    return None


def business_rule_violations(order, target: POStatus, actor_id: str | None) -> list[str]:
    """
    Business rules on top of the graph.

    Entering pending_approval needs lines, a positive total and a supplier.
    Entering approved needs an approver.
    """
    violations: list[str] = []
    if target == POStatus.PENDING_APPROVAL:
        if not order.lines:
            violations.append("Purchase order must have at least one line before approval")
        if order.total is None or order.total <= 0:
            violations.append("Purchase order total must be greater than zero")
        if order.supplier_id is None:
            violations.append("Supplier must be selected before approval")
    if target == POStatus.APPROVED and not actor_id:
        violations.append("Approver information is required")
    return violations
