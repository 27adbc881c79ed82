"""
Receiving Error Taxonomy

Every failure the receiving engine surfaces is a typed exception with:
  - kind:    stable machine-readable code (API-safe, stored in audit records)
  - reason:  human-readable explanation suitable for display
  - details: structured data about the failure

Hierarchy:

    ReceivingError
    ├── InvalidTransition
    ├── NotReceivable
    ├── InvalidQuantity
    ├── OverReceipt
    ├── ProductNotFound
    ├── PurchaseOrderNotFound
    ├── ConcurrentModification   (retryable, nothing left applied)
    ├── LedgerFailure            (triggers compensating rollback)
    ├── PersistenceFailure       (inventory already adjusted, not compensated)
    └── AuditFailure             (never surfaced as a primary failure)
"""

from typing import Any


class ReceivingError(Exception):
    """Base class for all receiving engine errors."""

    kind: str = "receiving_error"
    retryable: bool = False

    def __init__(self, reason: str, **details: Any):
        super().__init__(reason)
        self.reason = reason
        self.details = details

    def as_dict(self) -> dict[str, Any]:
        return {
            "kind": self.kind,
            "reason": self.reason,
            "details": {key: _jsonable(value) for key, value in self.details.items()},
        }


def _jsonable(value: Any) -> Any:
    if isinstance(value, (str, int, float, bool)) or value is None:
        return value
    if isinstance(value, (list, tuple)):
        return [_jsonable(v) for v in value]
    if isinstance(value, dict):
        return {str(k): _jsonable(v) for k, v in value.items()}
    return str(value)


# ── Validation errors (raised before any side effect) ─────────────────────


class InvalidTransition(ReceivingError):
    """Requested status change is not allowed or the caller's view is stale."""

    kind = "invalid_transition"


class NotReceivable(ReceivingError):
    """Purchase order is not in a status that accepts receipts."""

    kind = "not_receivable"


class InvalidQuantity(ReceivingError):
    """A receipt line carries a quantity, cost or attribute that cannot be applied."""

    kind = "invalid_quantity"


class OverReceipt(ReceivingError):
    """Cumulative received quantity would exceed the ordered quantity."""

    kind = "over_receipt"


class ProductNotFound(ReceivingError):
    """A receipt line references a product that is not on the purchase order."""

    kind = "product_not_found"


class PurchaseOrderNotFound(ReceivingError):
    kind = "purchase_order_not_found"


# ── Runtime failures ──────────────────────────────────────────────────────


class ConcurrentModification(ReceivingError):
    """The order changed between read and write. Safe to retry."""

    kind = "concurrent_modification"
    retryable = True


class LedgerFailure(ReceivingError):
    """The Stock Ledger Gateway rejected or failed a stock update."""

    kind = "ledger_failure"


class PersistenceFailure(ReceivingError):
    """
    The order could not be saved after inventory was adjusted.

    Inventory changes are NOT compensated; run reconcile_purchase_order()
    to bring the order back in line with the ledger.
    """

    kind = "persistence_failure"
    compensated = False


class AuditFailure(ReceivingError):
    kind = "audit_failure"
