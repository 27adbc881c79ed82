"""
Receiving Module — Partial Receipt Processing with Compensating Rollback.

Called whenever goods arrive against a purchase order, possibly over many
shipments. One receive() call:
  1. Re-reads the order and checks it is receivable
  2. Validates every requested line and computes per-line deltas
     (nothing is touched until every line passes)
  3. Per changed line, in request order:
       a. adds the delta through the Stock Ledger Gateway
       b. reconciles weighted-average cost / price variance
       c. computes the new cumulative received quantity
       d. drafts the receipt event line
  4. Persists line quantities, derived status, the receipt event and cost
     adjustments in one version-checked write
  5. Appends audit records

Quantity conventions — the caller must say which one it is using:
  ReceiptMode.CUMULATIVE   quantity is the line's new received-to-date total.
                           Re-submitting the same totals is a no-op.
  ReceiptMode.INCREMENTAL  quantity is the number of units arriving now.
                           Re-submitting adds them again.

Failure handling:
  - validation errors: raised before any side effect
  - failure on line k: lines k-1..1 are compensated in reverse order
    (cost restored, ledger 'subtract' with movement type 'rollback'),
    then the original error is raised
  - ConcurrentModification at persist time: compensated, safe to retry
  - PersistenceFailure at persist time: NOT compensated; inventory stays
    adjusted and reconcile_purchase_order() repairs the order
"""

import uuid
from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any

import structlog

from audit.log import AuditAction, AuditEvent, AuditLog
from core.config import Settings, get_settings
from core.errors import (
    ConcurrentModification,
    InvalidQuantity,
    NotReceivable,
    OverReceipt,
    PersistenceFailure,
    ProductNotFound,
)
from db.models import CostAdjustment, PurchaseOrder, PurchaseOrderLine, ReceiptEvent, ReceiptEventLine
from inventory.ledger import LedgerContext, MovementType, StockLedgerGateway, StockMode
from supply_chain.costing import CostAdjustmentResult, CostReconciliationService, is_significant, parse_unit_cost
from supply_chain.orders import PurchaseOrderRepository, order_snapshot
from supply_chain.state_machine import POStatus, can_transition, derive_receipt_status, is_receivable

logger = structlog.get_logger()

RECEIPT_CONDITIONS = frozenset({"good", "damaged", "expired", "returned"})


class ReceiptMode(str, Enum):
    CUMULATIVE = "cumulative"
    INCREMENTAL = "incremental"


@dataclass(frozen=True)
class ReceiptLineRequest:
    product_id: uuid.UUID | str
    quantity: int
    unit_cost: Decimal | float | str | None = None
    condition: str = "good"
    batch_number: str | None = None
    expiry_date: date | None = None


@dataclass(frozen=True)
class ReceiptContext:
    user_id: str = "system"
    user_name: str | None = None
    notes: str | None = None
    received_at: datetime | None = None


@dataclass
class PlannedLine:
    line: PurchaseOrderLine
    request: ReceiptLineRequest
    previous: int
    cumulative: int
    unit_cost: Decimal
    days_to_expiry: int | None = None

    @property
    def delta(self) -> int:
        return self.cumulative - self.previous


@dataclass
class AppliedLine:
    plan: PlannedLine
    resulting_stock: int
    cost_adjustment: CostAdjustmentResult | None = None


@dataclass
class ReceiptResult:
    applied: bool
    purchase_order: PurchaseOrder
    status_before: str
    status_after: str
    receipt_event_id: uuid.UUID | None = None
    movements: list[dict[str, Any]] = field(default_factory=list)
    cost_adjustments: list[CostAdjustmentResult] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)


def plan_receipt(
    order: PurchaseOrder,
    lines: list[ReceiptLineRequest],
    mode: ReceiptMode,
    *,
    settings: Settings | None = None,
    today: date | None = None,
) -> list[PlannedLine]:
    """
    Validate a receipt request against the order and compute each line's
    new cumulative total. Pure: raises on the first invalid line and never
    touches storage.

    Batch and expiry rules come from settings and apply only to lines that
    actually receive something; expiry is measured against today.
    """
    mode = ReceiptMode(mode)
    settings = settings or get_settings()
    today = today or datetime.utcnow().date()
    if not lines:
        raise InvalidQuantity("At least one receipt line is required", po_id=order.po_id)

    order_lines = {line.product_id: line for line in order.lines}
    seen: set[uuid.UUID] = set()
    plans: list[PlannedLine] = []

    for index, request in enumerate(lines):
        field_prefix = f"lines[{index}]"
        try:
            product_id = request.product_id if isinstance(request.product_id, uuid.UUID) else uuid.UUID(str(request.product_id))
        except ValueError:
            raise ProductNotFound(
                f"Product {request.product_id} is not on purchase order {order.po_number}",
                field=field_prefix,
                product_id=request.product_id,
            ) from None

        if product_id in seen:
            raise InvalidQuantity(
                f"Product {product_id} appears more than once in this receipt",
                field=field_prefix,
                product_id=product_id,
            )
        seen.add(product_id)

        line = order_lines.get(product_id)
        if line is None:
            raise ProductNotFound(
                f"Product {product_id} is not on purchase order {order.po_number}",
                field=field_prefix,
                product_id=product_id,
            )

        quantity = request.quantity
        if isinstance(quantity, bool) or not isinstance(quantity, int):
            raise InvalidQuantity(
                "Received quantity must be a whole number",
                field=f"{field_prefix}.quantity",
                quantity=quantity,
            )
        if request.condition not in RECEIPT_CONDITIONS:
            raise InvalidQuantity(
                f"Invalid condition code: {request.condition}",
                field=f"{field_prefix}.condition",
                allowed=sorted(RECEIPT_CONDITIONS),
            )

        unit_cost = parse_unit_cost(
            line.unit_cost if request.unit_cost is None else request.unit_cost,
            field=f"{field_prefix}.unit_cost",
            product_id=product_id,
        )

        previous = line.received_quantity
        if mode == ReceiptMode.INCREMENTAL:
            if quantity <= 0:
                raise InvalidQuantity(
                    "Received quantity must be greater than zero",
                    field=f"{field_prefix}.quantity",
                    quantity=quantity,
                )
            cumulative = previous + quantity
        else:
            if quantity < 0:
                raise InvalidQuantity(
                    "Cumulative received quantity must not be negative",
                    field=f"{field_prefix}.quantity",
                    quantity=quantity,
                )
            if quantity < previous:
                raise InvalidQuantity(
                    f"Cumulative received quantity {quantity} is below the {previous} already received",
                    field=f"{field_prefix}.quantity",
                    quantity=quantity,
                    previously_received=previous,
                )
            cumulative = quantity

        if cumulative > line.ordered_quantity:
            raise OverReceipt(
                f"Received quantity {cumulative} for {line.product_name or product_id} "
                f"exceeds ordered quantity {line.ordered_quantity}",
                field=f"{field_prefix}.quantity",
                product_id=product_id,
                ordered_quantity=line.ordered_quantity,
                previously_received=previous,
                requested_total=cumulative,
            )

        days_to_expiry = None
        if cumulative > previous:
            days_to_expiry = _check_batch_and_expiry(request, field_prefix, product_id, settings, today)

        plans.append(
            PlannedLine(
                line=line,
                request=request,
                previous=previous,
                cumulative=cumulative,
                unit_cost=unit_cost,
                days_to_expiry=days_to_expiry,
            )
        )

    return plans


def _check_batch_and_expiry(
    request: ReceiptLineRequest,
    field_prefix: str,
    product_id: uuid.UUID,
    settings: Settings,
    today: date,
) -> int | None:
    """Enforce batch/expiry receiving rules; returns days until expiry when known."""
    if settings.require_batch_tracking and not request.batch_number:
        raise InvalidQuantity(
            "Batch number is required for this product",
            field=f"{field_prefix}.batch_number",
            product_id=product_id,
        )
    if request.expiry_date is None:
        if settings.require_expiry_dates:
            raise InvalidQuantity(
                "Expiry date is required for this product",
                field=f"{field_prefix}.expiry_date",
                product_id=product_id,
            )
        return None

    days_to_expiry = (request.expiry_date - today).days
    if days_to_expiry < 0 and settings.reject_expired_items:
        raise InvalidQuantity(
            f"Expired items rejected (expired {-days_to_expiry} days ago)",
            field=f"{field_prefix}.expiry_date",
            product_id=product_id,
            expiry_date=request.expiry_date,
        )
    return days_to_expiry


class PartialReceiptProcessor:
    def __init__(
        self,
        repository: PurchaseOrderRepository,
        ledger: StockLedgerGateway,
        cost_service: CostReconciliationService,
        audit_log: AuditLog,
        settings: Settings | None = None,
    ):
        self.repository = repository
        self.ledger = ledger
        self.cost_service = cost_service
        self.audit_log = audit_log
        self.settings = settings or get_settings()

    async def receive(
        self,
        po_id: uuid.UUID,
        lines: list[ReceiptLineRequest],
        *,
        mode: ReceiptMode,
        context: ReceiptContext,
    ) -> ReceiptResult:
        order = await self.repository.get(po_id)
        if not is_receivable(order.status):
            raise NotReceivable(
                f"Purchase order {order.po_number} must be approved, sent to supplier, or partially "
                f"received to accept receipts. Current status: {order.status}",
                po_id=po_id,
                status=order.status,
            )

        received_at = context.received_at or datetime.utcnow()
        plans = plan_receipt(order, lines, mode, settings=self.settings, today=received_at.date())
        changed = [plan for plan in plans if plan.delta > 0]
        if not changed:
            logger.info("receiving.noop", po_id=str(po_id), mode=ReceiptMode(mode).value)
            return ReceiptResult(
                applied=False,
                purchase_order=order,
                status_before=order.status,
                status_after=order.status,
            )

        applied: list[AppliedLine] = []
        for plan in changed:
            try:
                resulting_stock = await self.ledger.update_stock(
                    plan.line.product_id,
                    plan.delta,
                    StockMode.ADD,
                    LedgerContext(
                        reference_id=str(po_id),
                        user_id=context.user_id,
                        reason=f"Purchase order {order.po_number} receipt",
                        movement_type=MovementType.PURCHASE_RECEIPT,
                    ),
                )
                applied_line = AppliedLine(plan=plan, resulting_stock=resulting_stock)
                applied.append(applied_line)

                applied_line.cost_adjustment = await self.cost_service.reconcile_receipt(
                    plan.line.product_id,
                    prior_quantity_on_hand=max(resulting_stock - plan.delta, 0),
                    received_quantity=plan.delta,
                    received_unit_cost=plan.unit_cost,
                    ordered_unit_cost=plan.line.unit_cost,
                )
            except Exception as exc:
                logger.error(
                    "receiving.line_failed",
                    po_id=str(po_id),
                    product_id=str(plan.line.product_id),
                    applied_lines=len(applied),
                    error=str(exc),
                )
                await self._compensate(order, applied, context)
                raise

        receipt_event_id = uuid.uuid4()
        line_patches, new_records = self._draft_records(
            order, mode, context, applied, receipt_event_id, received_at
        )

        new_quantities = {plan.line.line_id: plan.cumulative for plan in changed}
        quantities = [
            (new_quantities.get(line.line_id, line.received_quantity), line.ordered_quantity) for line in order.lines
        ]
        total_received = sum(received for received, _ in quantities)
        total_pending = sum(ordered - received for received, ordered in quantities)

        patch: dict[str, Any] = {
            "total_received_items": total_received,
            "total_pending_items": total_pending,
            "last_received_at": received_at,
        }
        derived = derive_receipt_status(quantities)
        if derived is not None and can_transition(order.status, derived):
            patch["status"] = derived
            if derived == POStatus.FULLY_RECEIVED:
                patch["received_date"] = received_at.date()
        elif derived is not None and derived.value != order.status:
            logger.warning(
                "receiving.status_not_derivable",
                po_id=str(po_id),
                current_status=order.status,
                derived_status=derived.value,
            )

        try:
            updated = await self.repository.update(
                po_id,
                patch,
                order.version,
                line_patches=line_patches,
                new_records=new_records,
            )
        except ConcurrentModification:
            logger.warning("receiving.concurrent_modification", po_id=str(po_id), expected_version=order.version)
            await self._compensate(order, applied, context)
            raise
        except PersistenceFailure as exc:
            logger.error(
                "receiving.persist_failed",
                po_id=str(po_id),
                compensated=False,
                lines_applied=len(applied),
                error=exc.reason,
            )
            exc.details.update(
                compensated=False,
                inventory_adjusted=[
                    {"product_id": str(a.plan.line.product_id), "quantity": a.plan.delta} for a in applied
                ],
            )
            raise

        await self._audit(order, updated, applied, context, receipt_event_id, mode)

        adjustments = [a.cost_adjustment for a in applied if a.cost_adjustment is not None]
        warnings = [
            f"Unit cost variance of {adj.variance_percentage}% on product {adj.product_id} "
            f"(ordered {adj.ordered_unit_cost}, received {adj.received_unit_cost})"
            for adj in adjustments
            if is_significant(adj, self.settings.significant_variance_pct)
        ]
        warnings.extend(
            f"Near-expiry items received for {a.plan.line.product_name or a.plan.line.product_id} "
            f"(expires in {a.plan.days_to_expiry} days)"
            for a in applied
            if a.plan.days_to_expiry is not None and a.plan.days_to_expiry <= self.settings.near_expiry_days
        )

        result = ReceiptResult(
            applied=True,
            purchase_order=updated,
            status_before=order.status,
            status_after=updated.status,
            receipt_event_id=receipt_event_id,
            movements=[
                {
                    "product_id": str(a.plan.line.product_id),
                    "quantity": a.plan.delta,
                    "resulting_stock": a.resulting_stock,
                }
                for a in applied
            ],
            cost_adjustments=adjustments,
            warnings=warnings,
        )

        logger.info(
            "receiving.processed",
            po_id=str(po_id),
            po_number=updated.po_number,
            mode=ReceiptMode(mode).value,
            lines_received=len(applied),
            units_received=sum(a.plan.delta for a in applied),
            status_before=order.status,
            status_after=updated.status,
            cost_adjustments=len(adjustments),
        )
        return result

    def _draft_records(
        self,
        order: PurchaseOrder,
        mode: ReceiptMode,
        context: ReceiptContext,
        applied: list[AppliedLine],
        receipt_event_id: uuid.UUID,
        received_at: datetime,
    ) -> tuple[dict[uuid.UUID, dict[str, Any]], list[Any]]:
        event = ReceiptEvent(
            receipt_event_id=receipt_event_id,
            po_id=order.po_id,
            mode=ReceiptMode(mode).value,
            performed_by=context.user_id,
            performed_by_name=context.user_name,
            notes=context.notes,
            received_at=received_at,
        )
        records: list[Any] = [event]
        line_patches: dict[uuid.UUID, dict[str, Any]] = {}

        for item in applied:
            plan = item.plan
            request = plan.request
            line_patch: dict[str, Any] = {"received_quantity": plan.cumulative, "condition": request.condition}
            if request.batch_number:
                line_patch["batch_number"] = request.batch_number
            if request.expiry_date:
                line_patch["expiry_date"] = request.expiry_date
            line_patches[plan.line.line_id] = line_patch

            records.append(
                ReceiptEventLine(
                    event=event,
                    line_id=plan.line.line_id,
                    product_id=plan.line.product_id,
                    delta=plan.delta,
                    cumulative_after=plan.cumulative,
                    unit_cost_at_receipt=plan.unit_cost,
                    condition=request.condition,
                    batch_number=request.batch_number,
                    expiry_date=request.expiry_date,
                )
            )

            adj = item.cost_adjustment
            if adj is not None:
                records.append(
                    CostAdjustment(
                        receipt_event=event,
                        product_id=adj.product_id,
                        prior_quantity_on_hand=adj.prior_quantity_on_hand,
                        received_quantity=adj.received_quantity,
                        prior_average_cost=adj.prior_average_cost,
                        new_average_cost=adj.new_average_cost,
                        ordered_unit_cost=adj.ordered_unit_cost,
                        received_unit_cost=adj.received_unit_cost,
                        variance_amount=adj.variance_amount,
                        total_variance_amount=adj.total_variance_amount,
                        variance_percentage=adj.variance_percentage,
                        variance_direction=adj.variance_direction,
                    )
                )

        return line_patches, records

    async def _compensate(
        self,
        order: PurchaseOrder,
        applied: list[AppliedLine],
        context: ReceiptContext,
    ) -> None:
        """Undo applied lines in reverse order. Failures are logged, never raised."""
        for item in reversed(applied):
            product_id = item.plan.line.product_id
            if item.cost_adjustment is not None:
                try:
                    await self.cost_service.restore(item.cost_adjustment)
                except Exception as exc:
                    logger.error(
                        "receiving.cost_rollback_failed",
                        po_id=str(order.po_id),
                        product_id=str(product_id),
                        error=str(exc),
                    )
            try:
                await self.ledger.update_stock(
                    product_id,
                    item.plan.delta,
                    StockMode.SUBTRACT,
                    LedgerContext(
                        reference_id=str(order.po_id),
                        user_id=context.user_id,
                        reason=f"Rollback of failed receipt on purchase order {order.po_number}",
                        movement_type=MovementType.ROLLBACK,
                    ),
                )
            except Exception as exc:
                logger.error(
                    "receiving.rollback_failed",
                    po_id=str(order.po_id),
                    product_id=str(product_id),
                    quantity=item.plan.delta,
                    error=str(exc),
                )
        if applied:
            logger.warning("receiving.rolled_back", po_id=str(order.po_id), lines=len(applied))

    async def _audit(
        self,
        before: PurchaseOrder,
        after: PurchaseOrder,
        applied: list[AppliedLine],
        context: ReceiptContext,
        receipt_event_id: uuid.UUID,
        mode: ReceiptMode,
    ) -> None:
        po_id = str(after.po_id)
        for item in applied:
            plan = item.plan
            await self.audit_log.record(
                AuditEvent(
                    entity_type="purchase_order_line",
                    entity_id=str(plan.line.line_id),
                    action=AuditAction.RECEIPT_LINE,
                    actor_id=context.user_id,
                    actor_name=context.user_name,
                    before={"received_quantity": plan.previous},
                    after={
                        "received_quantity": plan.cumulative,
                        "delta": plan.delta,
                        "unit_cost": str(plan.unit_cost),
                        "condition": plan.request.condition,
                        "po_id": po_id,
                        "receipt_event_id": str(receipt_event_id),
                    },
                    reason=context.notes,
                )
            )

        await self.audit_log.record(
            AuditEvent(
                entity_type="purchase_order",
                entity_id=po_id,
                action=AuditAction.RECEIPT,
                actor_id=context.user_id,
                actor_name=context.user_name,
                before=order_snapshot(before),
                after={
                    **order_snapshot(after),
                    "receipt_event_id": str(receipt_event_id),
                    "mode": ReceiptMode(mode).value,
                },
                reason=context.notes,
            )
        )
        if before.status != after.status:
            await self.audit_log.record(
                AuditEvent(
                    entity_type="purchase_order",
                    entity_id=po_id,
                    action=AuditAction.STATUS_TRANSITION,
                    actor_id=context.user_id,
                    actor_name=context.user_name,
                    before={"status": before.status},
                    after={"status": after.status},
                    reason=f"Derived from receipt {receipt_event_id}",
                )
            )
