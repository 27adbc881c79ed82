"""
ReceivingEngine — the interface the rest of the back office calls.

Everything is wired explicitly from a session factory, a stock ledger, an
audit sink and settings. There are no module-level singletons, so tests and
workers can build isolated engines against their own database.
"""

import uuid
from datetime import date
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from alerts.receiving_queue import OverdueAlert, ReceivingQueue, ReceivingQueueEntry
from audit.log import AuditLog, AuditSink, SqlAuditSink
from core.config import Settings, get_settings
from db.models import AuditLogEntry, PurchaseOrder
from inventory.ledger import SqlStockLedger, StockLedgerGateway
from supply_chain.costing import CostReconciliationService
from supply_chain.orders import PurchaseOrderRepository
from supply_chain.receiving import PartialReceiptProcessor, ReceiptContext, ReceiptLineRequest, ReceiptMode, ReceiptResult
from supply_chain.reconciliation import PurchaseOrderReconciliation, ReconciliationService, StockReconciliation
from supply_chain.state_machine import POStatus
from supply_chain.transitions import PurchaseOrderStateMachine


class ReceivingEngine:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        ledger: StockLedgerGateway | None = None,
        audit_sink: AuditSink | None = None,
        settings: Settings | None = None,
    ):
        self.settings = settings or get_settings()
        self.ledger = ledger or SqlStockLedger(session_factory)
        self.audit_log = AuditLog(audit_sink or SqlAuditSink(session_factory))
        self.repository = PurchaseOrderRepository(session_factory)
        self.cost_service = CostReconciliationService(session_factory)
        self.state_machine = PurchaseOrderStateMachine(self.repository, self.audit_log)
        self.receiving = PartialReceiptProcessor(
            self.repository,
            self.ledger,
            self.cost_service,
            self.audit_log,
            self.settings,
        )
        self.queue = ReceivingQueue(session_factory, self.repository, self.audit_log, self.settings)
        self.reconciliation = ReconciliationService(session_factory, self.repository, self.ledger, self.audit_log)

    # ─── Orders ───────────────────────────────────────────────────────────

    async def create_purchase_order(
        self,
        lines: list[dict[str, Any]],
        *,
        supplier_id: uuid.UUID | None = None,
        expected_date: date | None = None,
        created_by: str | None = None,
        notes: str | None = None,
        po_number: str | None = None,
    ) -> PurchaseOrder:
        return await self.repository.create(
            lines=lines,
            supplier_id=supplier_id,
            expected_date=expected_date,
            created_by=created_by,
            notes=notes,
            tax_rate=self.settings.tax_rate,
            po_number=po_number,
        )

    async def get_purchase_order(self, po_id: uuid.UUID) -> PurchaseOrder:
        return await self.repository.get(po_id)

    # ─── Lifecycle ────────────────────────────────────────────────────────

    async def transition(
        self,
        po_id: uuid.UUID,
        from_status: Any,
        to_status: Any,
        reason: str,
        *,
        actor_id: str | None = None,
        actor_name: str | None = None,
    ) -> PurchaseOrder:
        return await self.state_machine.execute_transition(
            po_id, from_status, to_status, reason, actor_id=actor_id, actor_name=actor_name
        )

    async def submit_for_approval(self, po_id: uuid.UUID, actor_id: str, reason: str = "Submitted for approval"):
        return await self.transition(po_id, POStatus.DRAFT, POStatus.PENDING_APPROVAL, reason, actor_id=actor_id)

    async def approve(self, po_id: uuid.UUID, actor_id: str, reason: str = "Approved", actor_name: str | None = None):
        return await self.transition(
            po_id, POStatus.PENDING_APPROVAL, POStatus.APPROVED, reason, actor_id=actor_id, actor_name=actor_name
        )

    async def reject(self, po_id: uuid.UUID, actor_id: str, reason: str, actor_name: str | None = None):
        return await self.transition(
            po_id, POStatus.PENDING_APPROVAL, POStatus.CANCELLED, reason, actor_id=actor_id, actor_name=actor_name
        )

    async def send_to_supplier(self, po_id: uuid.UUID, actor_id: str, reason: str = "Sent to supplier"):
        return await self.transition(po_id, POStatus.APPROVED, POStatus.SENT_TO_SUPPLIER, reason, actor_id=actor_id)

    async def cancel(self, po_id: uuid.UUID, actor_id: str, reason: str) -> PurchaseOrder:
        order = await self.repository.get(po_id)
        return await self.transition(po_id, order.status, POStatus.CANCELLED, reason, actor_id=actor_id)

    # ─── Receiving ────────────────────────────────────────────────────────

    async def receive(
        self,
        po_id: uuid.UUID,
        lines: list[ReceiptLineRequest],
        *,
        mode: ReceiptMode,
        context: ReceiptContext,
    ) -> ReceiptResult:
        return await self.receiving.receive(po_id, lines, mode=mode, context=context)

    # ─── Read side ────────────────────────────────────────────────────────

    async def list_receivable(self, now=None) -> list[ReceivingQueueEntry]:
        return await self.queue.list_receivable(now)

    async def list_overdue_alerts(self, now=None) -> list[OverdueAlert]:
        return await self.queue.list_overdue_alerts(now)

    async def acknowledge_alert(self, po_id: uuid.UUID, user_id: str, notes: str | None = None) -> dict[str, Any]:
        return await self.queue.acknowledge_alert(po_id, user_id, notes)

    # ─── Diagnostics ──────────────────────────────────────────────────────

    async def reconcile(self, product_id: uuid.UUID) -> StockReconciliation:
        return await self.reconciliation.reconcile(product_id)

    async def reconcile_purchase_order(
        self,
        po_id: uuid.UUID,
        actor_id: str | None = None,
        *,
        repair: bool = True,
    ) -> PurchaseOrderReconciliation:
        return await self.reconciliation.reconcile_purchase_order(po_id, actor_id, repair=repair)

    def audit_coverage(self) -> dict[str, Any]:
        return self.audit_log.coverage()

    async def audit_history(self, entity_id: uuid.UUID | str, entity_type: str | None = None) -> list[AuditLogEntry]:
        return await self.audit_log.history(entity_id, entity_type)
