"""
Purchase Order Router — lifecycle, receiving and reconciliation endpoints.

Thin adapter over ReceivingEngine:
  1. Orders are created in 'draft' and moved through the lifecycle by transitions
  2. Goods are received against approved / sent / partially received orders
     (the caller must state whether quantities are cumulative or incremental)
  3. The receiving queue and overdue alerts are read-side projections
  4. Reconciliation endpoints diagnose (and optionally repair) drift

Errors raised by the engine are mapped to HTTP status codes in api.main.
"""

from datetime import date, datetime
from decimal import Decimal
from typing import Any
from uuid import UUID

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from api.deps import get_actor, get_engine
from supply_chain.engine import ReceivingEngine
from supply_chain.receiving import ReceiptContext, ReceiptLineRequest, ReceiptMode

router = APIRouter(prefix="/api/v1/purchase-orders", tags=["purchase-orders"])
inventory_router = APIRouter(prefix="/api/v1/inventory", tags=["inventory"])


# ─── Schemas ────────────────────────────────────────────────────────────────


class POLineResponse(BaseModel):
    line_id: UUID
    product_id: UUID
    product_name: str | None
    ordered_quantity: int
    received_quantity: int
    pending_quantity: int
    unit_cost: Decimal
    line_total: Decimal
    batch_number: str | None
    expiry_date: date | None
    condition: str | None

    model_config = {"from_attributes": True}


class POResponse(BaseModel):
    po_id: UUID
    po_number: str
    supplier_id: UUID | None
    supplier_name: str
    status: str
    legacy_status: str
    version: int
    subtotal: Decimal
    tax: Decimal
    total: Decimal
    expected_date: date | None
    received_date: date | None
    last_received_at: datetime | None
    approved_by: str | None
    approved_at: datetime | None
    rejection_reason: str | None
    total_received_items: int
    total_pending_items: int
    notes: str | None
    created_by: str | None
    created_at: datetime
    updated_at: datetime
    lines: list[POLineResponse]

    model_config = {"from_attributes": True}


class POCreateRequest(BaseModel):
    """Line items accept legacy field spellings (quantity, cost, receivedQty, ...)."""

    lines: list[dict[str, Any]] = Field(..., min_length=1)
    supplier_id: UUID | None = None
    expected_date: date | None = None
    notes: str | None = None
    po_number: str | None = None


class TransitionRequest(BaseModel):
    from_status: str
    to_status: str
    reason: str = Field(..., min_length=1)


class DecisionRequest(BaseModel):
    reason: str = Field(..., min_length=1)


class ReceiptLine(BaseModel):
    product_id: UUID
    quantity: int
    unit_cost: Decimal | None = None
    condition: str = "good"
    batch_number: str | None = None
    expiry_date: date | None = None


class ReceiveRequest(BaseModel):
    """
    mode is required: 'cumulative' means each quantity is the line's new
    received-to-date total, 'incremental' means units arriving now.
    """

    mode: ReceiptMode
    lines: list[ReceiptLine]
    notes: str | None = None
    received_at: datetime | None = None


class ReceiptResponse(BaseModel):
    applied: bool
    receipt_event_id: UUID | None
    status_before: str
    status_after: str
    purchase_order: POResponse
    movements: list[dict[str, Any]]
    cost_adjustments: list[dict[str, Any]]
    warnings: list[str]


class QueueEntryResponse(BaseModel):
    po_id: UUID
    po_number: str
    supplier_name: str
    status: str
    legacy_status: str
    expected_date: date | None
    days_until_expected: int | None
    is_overdue: bool
    priority: str
    total: Decimal
    total_received_items: int
    total_pending_items: int

    model_config = {"from_attributes": True}


class OverdueAlertResponse(BaseModel):
    alert_id: str
    alert_type: str
    po_id: UUID
    po_number: str
    supplier_name: str
    severity: str
    title: str
    description: str
    days_overdue: int
    expected_date: date
    order_value: Decimal
    action_required: str
    is_acknowledged: bool
    acknowledged_by: str | None
    acknowledged_at: datetime | None
    notes: str | None

    model_config = {"from_attributes": True}


class AcknowledgeRequest(BaseModel):
    notes: str | None = None


class AcknowledgeResponse(BaseModel):
    po_id: UUID
    is_acknowledged: bool
    acknowledged_by: str
    acknowledged_at: datetime
    notes: str | None


class LineReconciliationResponse(BaseModel):
    line_id: UUID
    product_id: UUID
    ordered_quantity: int
    received_quantity: int
    ledger_net_quantity: int
    receipt_event_quantity: int
    repaired_to: int | None
    is_consistent: bool

    model_config = {"from_attributes": True}


class POReconciliationResponse(BaseModel):
    po_id: UUID
    po_number: str
    stored_status: str
    derived_status: str
    status_corrected: bool
    repaired: bool
    is_consistent: bool
    issues: list[str]
    lines: list[LineReconciliationResponse]

    model_config = {"from_attributes": True}


class StockReconciliationResponse(BaseModel):
    product_id: UUID
    ledger_stock: int
    expected_stock: int
    discrepancy: int
    movement_count: int
    last_movement_at: datetime | None
    is_consistent: bool

    model_config = {"from_attributes": True}


class AuditEntryResponse(BaseModel):
    audit_id: UUID
    entity_type: str
    entity_id: str
    action: str
    actor_id: str | None
    actor_name: str | None
    before: dict[str, Any] | None
    after: dict[str, Any] | None
    reason: str | None
    created_at: datetime

    model_config = {"from_attributes": True}


# ─── Endpoints ──────────────────────────────────────────────────────────────


@router.post("/", response_model=POResponse, status_code=201)
async def create_purchase_order(
    body: POCreateRequest,
    engine: ReceivingEngine = Depends(get_engine),
    actor: dict = Depends(get_actor),
):
    """Create a draft purchase order."""
    return await engine.create_purchase_order(
        body.lines,
        supplier_id=body.supplier_id,
        expected_date=body.expected_date,
        created_by=actor["user_id"],
        notes=body.notes,
        po_number=body.po_number,
    )


@router.get("/receiving-queue", response_model=list[QueueEntryResponse])
async def list_receiving_queue(engine: ReceivingEngine = Depends(get_engine)):
    """Orders that can be received, soonest expected first."""
    return await engine.list_receivable()


@router.get("/overdue-alerts", response_model=list[OverdueAlertResponse])
async def list_overdue_alerts(engine: ReceivingEngine = Depends(get_engine)):
    return await engine.list_overdue_alerts()


@router.get("/audit-coverage")
async def get_audit_coverage(engine: ReceivingEngine = Depends(get_engine)):
    return engine.audit_coverage()


@router.get("/{po_id}", response_model=POResponse)
async def get_purchase_order(po_id: UUID, engine: ReceivingEngine = Depends(get_engine)):
    return await engine.get_purchase_order(po_id)


@router.post("/{po_id}/transition", response_model=POResponse)
async def transition_purchase_order(
    po_id: UUID,
    body: TransitionRequest,
    engine: ReceivingEngine = Depends(get_engine),
    actor: dict = Depends(get_actor),
):
    """
    Move an order along its lifecycle.

    from_status must match the stored status; a stale view is rejected
    with 409 rather than silently applied.
    """
    return await engine.transition(
        po_id,
        body.from_status,
        body.to_status,
        body.reason,
        actor_id=actor["user_id"],
        actor_name=actor["user_name"],
    )


@router.post("/{po_id}/approve", response_model=POResponse)
async def approve_purchase_order(
    po_id: UUID,
    body: DecisionRequest,
    engine: ReceivingEngine = Depends(get_engine),
    actor: dict = Depends(get_actor),
):
    return await engine.approve(po_id, actor["user_id"], body.reason, actor_name=actor["user_name"])


@router.post("/{po_id}/reject", response_model=POResponse)
async def reject_purchase_order(
    po_id: UUID,
    body: DecisionRequest,
    engine: ReceivingEngine = Depends(get_engine),
    actor: dict = Depends(get_actor),
):
    """Reject an order awaiting approval. The reason is kept on the order."""
    return await engine.reject(po_id, actor["user_id"], body.reason, actor_name=actor["user_name"])


@router.post("/{po_id}/receive", response_model=ReceiptResponse)
async def receive_purchase_order(
    po_id: UUID,
    body: ReceiveRequest,
    engine: ReceivingEngine = Depends(get_engine),
    actor: dict = Depends(get_actor),
):
    """
    Record goods arriving against an order.

    Workflow:
      1. Validate every line (nothing is applied if any line is invalid)
      2. Add stock per line through the ledger
      3. Blend average cost and report price variance
      4. Save line quantities, derived status and the receipt event
    Re-submitting identical cumulative totals is a no-op (applied=false).
    """
    result = await engine.receive(
        po_id,
        [
            ReceiptLineRequest(
                product_id=line.product_id,
                quantity=line.quantity,
                unit_cost=line.unit_cost,
                condition=line.condition,
                batch_number=line.batch_number,
                expiry_date=line.expiry_date,
            )
            for line in body.lines
        ],
        mode=body.mode,
        context=ReceiptContext(
            user_id=actor["user_id"],
            user_name=actor["user_name"],
            notes=body.notes,
            received_at=body.received_at,
        ),
    )
    return ReceiptResponse(
        applied=result.applied,
        receipt_event_id=result.receipt_event_id,
        status_before=result.status_before,
        status_after=result.status_after,
        purchase_order=POResponse.model_validate(result.purchase_order),
        movements=result.movements,
        cost_adjustments=[adj.as_dict() for adj in result.cost_adjustments],
        warnings=result.warnings,
    )


@router.post("/{po_id}/acknowledge-alert", response_model=AcknowledgeResponse)
async def acknowledge_overdue_alert(
    po_id: UUID,
    body: AcknowledgeRequest,
    engine: ReceivingEngine = Depends(get_engine),
    actor: dict = Depends(get_actor),
):
    return await engine.acknowledge_alert(po_id, actor["user_id"], body.notes)


@router.post("/{po_id}/reconcile", response_model=POReconciliationResponse)
async def reconcile_purchase_order(
    po_id: UUID,
    repair: bool = True,
    engine: ReceivingEngine = Depends(get_engine),
    actor: dict = Depends(get_actor),
):
    """Compare order lines with ledger movements and receipt events; repair when asked."""
    return await engine.reconcile_purchase_order(po_id, actor["user_id"], repair=repair)


@router.get("/{po_id}/audit", response_model=list[AuditEntryResponse])
async def get_purchase_order_audit(po_id: UUID, engine: ReceivingEngine = Depends(get_engine)):
    """Audit history for an order, oldest first."""
    return await engine.audit_history(po_id, entity_type="purchase_order")


@inventory_router.get("/{product_id}/reconciliation", response_model=StockReconciliationResponse)
async def reconcile_product_stock(product_id: UUID, engine: ReceivingEngine = Depends(get_engine)):
    return await engine.reconcile(product_id)
