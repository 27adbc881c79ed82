"""
Reconciliation diagnostics.

Two questions, answered from the append-only records:

  reconcile(product_id)
      Does the ledger's on-hand stock equal the sum of its movements?

  reconcile_purchase_order(po_id)
      Do the order lines agree with what the ledger says was received
      against this order, and with the receipt events that were written?

The second one doubles as the repair path after a PersistenceFailure,
where stock was added but the order write never landed. A repair writes
its own receipt event (mode "reconciliation") for the raised quantities.
"""

import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

import structlog
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from audit.log import AuditAction, AuditEvent, AuditLog
from db.models import PurchaseOrderLine, ReceiptEvent, ReceiptEventLine
from inventory.ledger import MovementType, StockLedgerGateway
from supply_chain.orders import PurchaseOrderRepository, order_snapshot
from supply_chain.state_machine import POStatus, can_transition, derive_receipt_status

logger = structlog.get_logger()

PURCHASE_MOVEMENT_TYPES = frozenset({MovementType.PURCHASE_RECEIPT.value, MovementType.ROLLBACK.value})
REPAIR_RECEIPT_MODE = "reconciliation"


@dataclass(frozen=True)
class StockReconciliation:
    product_id: uuid.UUID
    ledger_stock: int
    expected_stock: int
    discrepancy: int
    movement_count: int
    last_movement_at: datetime | None

    @property
    def is_consistent(self) -> bool:
        return self.discrepancy == 0


@dataclass
class LineReconciliation:
    line_id: uuid.UUID
    product_id: uuid.UUID
    ordered_quantity: int
    received_quantity: int
    ledger_net_quantity: int
    receipt_event_quantity: int
    repaired_to: int | None = None

    @property
    def is_consistent(self) -> bool:
        return self.received_quantity == self.ledger_net_quantity == self.receipt_event_quantity


@dataclass
class PurchaseOrderReconciliation:
    po_id: uuid.UUID
    po_number: str
    stored_status: str
    derived_status: str
    lines: list[LineReconciliation] = field(default_factory=list)
    status_corrected: bool = False
    repaired: bool = False
    issues: list[str] = field(default_factory=list)

    @property
    def is_consistent(self) -> bool:
        return not self.issues


class ReconciliationService:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        repository: PurchaseOrderRepository,
        ledger: StockLedgerGateway,
        audit_log: AuditLog,
    ):
        self._session_factory = session_factory
        self.repository = repository
        self.ledger = ledger
        self.audit_log = audit_log

    async def reconcile(self, product_id: uuid.UUID) -> StockReconciliation:
        ledger_stock = await self.ledger.get_stock(product_id)
        movements = await self.ledger.movements(product_id)
        expected = sum(m.quantity for m in movements)

        result = StockReconciliation(
            product_id=product_id,
            ledger_stock=ledger_stock,
            expected_stock=expected,
            discrepancy=ledger_stock - expected,
            movement_count=len(movements),
            last_movement_at=movements[-1].created_at if movements else None,
        )
        if not result.is_consistent:
            logger.warning(
                "reconciliation.stock_discrepancy",
                product_id=str(product_id),
                ledger_stock=ledger_stock,
                expected_stock=expected,
                discrepancy=result.discrepancy,
            )
        return result

    async def reconcile_purchase_order(
        self,
        po_id: uuid.UUID,
        actor_id: str | None = None,
        *,
        repair: bool = True,
    ) -> PurchaseOrderReconciliation:
        order = await self.repository.get(po_id)
        event_totals = await self._receipt_event_totals(po_id)

        lines: list[LineReconciliation] = []
        issues: list[str] = []
        line_patches: dict[uuid.UUID, dict[str, Any]] = {}
        repaired_lines: list[tuple[PurchaseOrderLine, int]] = []

        for line in order.lines:
            movements = await self.ledger.movements(line.product_id, reference_id=str(po_id))
            ledger_net = sum(m.quantity for m in movements if m.movement_type in PURCHASE_MOVEMENT_TYPES)
            check = LineReconciliation(
                line_id=line.line_id,
                product_id=line.product_id,
                ordered_quantity=line.ordered_quantity,
                received_quantity=line.received_quantity,
                ledger_net_quantity=ledger_net,
                receipt_event_quantity=event_totals.get(line.line_id, 0),
            )
            lines.append(check)
            if check.is_consistent:
                continue

            issues.append(
                f"Line {line.product_name or line.product_id}: order says {line.received_quantity}, "
                f"ledger says {ledger_net}, receipt events say {check.receipt_event_quantity}"
            )
            if repair and line.received_quantity < ledger_net <= line.ordered_quantity:
                check.repaired_to = ledger_net
                line_patches[line.line_id] = {"received_quantity": ledger_net}
                repaired_lines.append((line, ledger_net))

        quantities = [
            (line_patches.get(line.line_id, {}).get("received_quantity", line.received_quantity), line.ordered_quantity)
            for line in order.lines
        ]
        derived = derive_receipt_status(quantities)
        derived_value = derived.value if derived is not None else order.status

        report = PurchaseOrderReconciliation(
            po_id=po_id,
            po_number=order.po_number,
            stored_status=order.status,
            derived_status=derived_value,
            lines=lines,
            issues=issues,
        )

        patch: dict[str, Any] = {}
        if derived_value != order.status and order.status != POStatus.CANCELLED.value:
            if can_transition(order.status, derived_value):
                patch["status"] = derived_value
                if derived == POStatus.FULLY_RECEIVED and order.received_date is None:
                    patch["received_date"] = datetime.utcnow().date()
            report.issues.append(
                f"Stored status '{order.status}' disagrees with line quantities ('{derived_value}')"
            )

        if not repair or (not patch and not line_patches):
            logger.info(
                "reconciliation.purchase_order",
                po_id=str(po_id),
                consistent=report.is_consistent,
                issues=len(report.issues),
            )
            return report

        if line_patches:
            patch["total_received_items"] = sum(received for received, _ in quantities)
            patch["total_pending_items"] = sum(ordered - received for received, ordered in quantities)

        updated = await self.repository.update(
            po_id,
            patch,
            order.version,
            line_patches=line_patches,
            new_records=_repair_receipt_records(po_id, repaired_lines, actor_id),
        )
        report.repaired = bool(line_patches)
        report.status_corrected = "status" in patch

        await self.audit_log.record(
            AuditEvent(
                entity_type="purchase_order",
                entity_id=str(po_id),
                action=AuditAction.STATUS_CORRECTION,
                actor_id=actor_id,
                before=order_snapshot(order),
                after=order_snapshot(updated),
                reason="; ".join(report.issues),
            )
        )
        logger.warning(
            "reconciliation.purchase_order_repaired",
            po_id=str(po_id),
            lines_repaired=len(line_patches),
            status_before=order.status,
            status_after=updated.status,
        )
        return report

    async def _receipt_event_totals(self, po_id: uuid.UUID) -> dict[uuid.UUID, int]:
        query = (
            select(ReceiptEventLine.line_id, func.sum(ReceiptEventLine.delta))
            .join(ReceiptEvent, ReceiptEvent.receipt_event_id == ReceiptEventLine.receipt_event_id)
            .where(ReceiptEvent.po_id == po_id)
            .group_by(ReceiptEventLine.line_id)
        )
        async with self._session_factory() as session:
            rows = (await session.execute(query)).all()
        return {line_id: int(total or 0) for line_id, total in rows}



def _repair_receipt_records(
    po_id: uuid.UUID,
    repaired_lines: list[tuple[PurchaseOrderLine, int]],
    actor_id: str | None,
) -> list[Any]:
    """
    Receipt event covering quantities raised to the ledger value, so that
    receipt event deltas keep summing to each line's received quantity.
    """
    if not repaired_lines:
        return []
    event = ReceiptEvent(
        po_id=po_id,
        mode=REPAIR_RECEIPT_MODE,
        performed_by=actor_id or "system",
        notes="Recorded by reconciliation from ledger movements",
        received_at=datetime.utcnow(),
    )
    records: list[Any] = [event]
    for line, ledger_net in repaired_lines:
        records.append(
            ReceiptEventLine(
                event=event,
                line_id=line.line_id,
                product_id=line.product_id,
                delta=ledger_net - line.received_quantity,
                cumulative_after=ledger_net,
                unit_cost_at_receipt=line.unit_cost,
                condition="good",
            )
        )
    return records
