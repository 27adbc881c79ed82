"""
Purchase Order persistence — the only place purchase orders are read and written.

  get(po_id)                                   -> PurchaseOrder | PurchaseOrderNotFound
  update(po_id, patch, expected_version, ...)  -> PurchaseOrder | ConcurrentModification

Optimistic concurrency: purchase_orders.version is SQLAlchemy's version_id_col,
so every UPDATE is issued as ... WHERE po_id = :id AND version = :loaded.
A caller passes the version it read; a mismatch, or a concurrent writer
landing between our read and our flush, raises ConcurrentModification.

Historical line payloads use several spellings for the same field
(receivedQty / received_qty / receivedQuantity, quantity / ordered_quantity,
cost / unit_cost). normalize_line_payload() folds them into the canonical
names once, here, so nothing downstream branches on aliases.
"""

import uuid
from collections.abc import Iterable, Sequence
from datetime import date, datetime
from decimal import Decimal
from typing import Any

import structlog
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm.exc import StaleDataError

from core.errors import ConcurrentModification, InvalidQuantity, PersistenceFailure, PurchaseOrderNotFound
from db.models import Product, PurchaseOrder, PurchaseOrderLine
from supply_chain.costing import parse_unit_cost, quantize_money
from supply_chain.state_machine import POStatus

logger = structlog.get_logger()

LINE_FIELD_ALIASES: dict[str, tuple[str, ...]] = {
    "product_id": ("productId", "product_id"),
    "product_name": ("productName", "product_name"),
    "ordered_quantity": ("orderedQuantity", "ordered_quantity", "quantity"),
    "unit_cost": ("unitCost", "unit_cost", "cost"),
    "received_quantity": ("receivedQuantity", "received_quantity", "receivedQty", "received_qty"),
    "batch_number": ("batchNumber", "batch_number"),
    "expiry_date": ("expiryDate", "expiry_date"),
    "condition": ("condition",),
}

ORDER_FIELDS = frozenset(
    {
        "status",
        "expected_date",
        "received_date",
        "last_received_at",
        "approved_by",
        "approved_at",
        "rejection_reason",
        "total_received_items",
        "total_pending_items",
        "notes",
        "attachments",
    }
)
LINE_FIELDS = frozenset({"received_quantity", "batch_number", "expiry_date", "condition"})


def normalize_line_payload(raw: dict[str, Any]) -> dict[str, Any]:
    """Map every known alias of a line-item field onto its canonical name."""
    normalized: dict[str, Any] = {}
    for canonical, aliases in LINE_FIELD_ALIASES.items():
        present = [(alias, raw[alias]) for alias in aliases if alias in raw and raw[alias] is not None]
        if not present:
            continue
        values = {str(value) for _, value in present}
        if len(values) > 1:
            raise InvalidQuantity(
                f"Conflicting values for line field '{canonical}'",
                field=canonical,
                values={alias: value for alias, value in present},
            )
        normalized[canonical] = present[0][1]

    if "received_quantity" not in normalized:
        normalized["received_quantity"] = 0
    return normalized


def order_totals(lines: Iterable[PurchaseOrderLine]) -> tuple[int, int]:
    """(total received items, total pending items) across lines."""
    received = 0
    pending = 0
    for line in lines:
        received += line.received_quantity
        pending += line.ordered_quantity - line.received_quantity
    return received, pending


def order_snapshot(order: PurchaseOrder) -> dict[str, Any]:
    """JSON-safe before/after view of an order for audit records."""
    return {
        "status": order.status,
        "legacy_status": order.legacy_status,
        "version": order.version,
        "total_received_items": order.total_received_items,
        "total_pending_items": order.total_pending_items,
        "lines": {
            str(line.product_id): {
                "ordered_quantity": line.ordered_quantity,
                "received_quantity": line.received_quantity,
            }
            for line in order.lines
        },
    }


def _generate_po_number() -> str:
    return f"PO-{datetime.utcnow():%Y%m%d}-{uuid.uuid4().hex[:8].upper()}"


def _parse_quantity(value: Any, field: str, **details: Any) -> int:
    if isinstance(value, bool):
        raise InvalidQuantity(f"{field} must be a whole number", field=field, **details)
    try:
        quantity = int(value)
    except (TypeError, ValueError):
        raise InvalidQuantity(f"{field} must be a whole number", field=field, value=value, **details) from None
    if isinstance(value, float) and not value.is_integer():
        raise InvalidQuantity(f"{field} must be a whole number", field=field, value=value, **details)
    return quantity


def _parse_new_line(index: int, payload: dict[str, Any]) -> dict[str, Any]:
    """Typed values for one line of a new order; malformed input is InvalidQuantity."""
    prefix = f"lines[{index}]"
    if "product_id" not in payload:
        raise InvalidQuantity("Every line needs a product_id", field=f"{prefix}.product_id")
    try:
        product_id = uuid.UUID(str(payload["product_id"]))
    except ValueError:
        raise InvalidQuantity(
            f"Invalid product_id {payload['product_id']!r}", field=f"{prefix}.product_id"
        ) from None

    ordered = _parse_quantity(payload.get("ordered_quantity", 0), f"{prefix}.ordered_quantity", product_id=product_id)
    if ordered <= 0:
        raise InvalidQuantity("Ordered quantity must be greater than zero", product_id=product_id)
    received = _parse_quantity(payload["received_quantity"], f"{prefix}.received_quantity", product_id=product_id)
    if received != 0:
        raise InvalidQuantity(
            "A new purchase order cannot start with received quantities; record goods through receiving",
            field=f"{prefix}.received_quantity",
            product_id=product_id,
            received_quantity=received,
        )

    expiry_date = payload.get("expiry_date")
    if isinstance(expiry_date, str):
        try:
            expiry_date = date.fromisoformat(expiry_date)
        except ValueError:
            raise InvalidQuantity(
                f"Invalid expiry date {expiry_date!r}", field=f"{prefix}.expiry_date", product_id=product_id
            ) from None

    return {
        **payload,
        "product_id": product_id,
        "ordered_quantity": ordered,
        "unit_cost": parse_unit_cost(payload.get("unit_cost", 0), field=f"{prefix}.unit_cost", product_id=product_id),
        "expiry_date": expiry_date,
    }


class PurchaseOrderRepository:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    async def get(self, po_id: uuid.UUID) -> PurchaseOrder:
        async with self._session_factory() as session:
            order = await session.get(PurchaseOrder, po_id)
            if order is None:
                raise PurchaseOrderNotFound(f"Purchase order {po_id} not found", po_id=po_id)
            return order

    async def list_by_status(self, statuses: Iterable[POStatus]) -> list[PurchaseOrder]:
        values = [POStatus(s).value for s in statuses]
        async with self._session_factory() as session:
            result = await session.execute(select(PurchaseOrder).where(PurchaseOrder.status.in_(values)))
            return list(result.scalars().unique().all())

    async def update(
        self,
        po_id: uuid.UUID,
        patch: dict[str, Any],
        expected_version: int,
        *,
        line_patches: dict[uuid.UUID, dict[str, Any]] | None = None,
        new_records: Sequence[Any] = (),
    ) -> PurchaseOrder:
        """
        Apply patch to the order (and line_patches to its lines) if the stored
        version still equals expected_version. new_records are inserted in the
        same transaction, so they exist only if the order update lands.
        """
        unknown = set(patch) - ORDER_FIELDS
        if unknown:
            raise ValueError(f"Cannot patch purchase order fields: {sorted(unknown)}")

        try:
            async with self._session_factory() as session:
                async with session.begin():
                    order = await session.get(PurchaseOrder, po_id)
                    if order is None:
                        raise PurchaseOrderNotFound(f"Purchase order {po_id} not found", po_id=po_id)
                    if order.version != expected_version:
                        raise ConcurrentModification(
                            f"Purchase order {order.po_number} was modified by another request",
                            po_id=po_id,
                            expected_version=expected_version,
                            actual_version=order.version,
                        )

                    for key, value in patch.items():
                        if key == "status":
                            value = POStatus(value).value
                        setattr(order, key, value)

                    lines_by_id = {line.line_id: line for line in order.lines}
                    for line_id, changes in (line_patches or {}).items():
                        line = lines_by_id.get(line_id)
                        if line is None:
                            raise ValueError(f"Line {line_id} does not belong to purchase order {po_id}")
                        unknown = set(changes) - LINE_FIELDS
                        if unknown:
                            raise ValueError(f"Cannot patch line fields: {sorted(unknown)}")
                        for key, value in changes.items():
                            setattr(line, key, value)

                    order.updated_at = datetime.utcnow()
                    session.add_all(list(new_records))
        except StaleDataError as exc:
            raise ConcurrentModification(
                f"Purchase order {po_id} was modified by another request",
                po_id=po_id,
                expected_version=expected_version,
            ) from exc
        except SQLAlchemyError as exc:
            raise PersistenceFailure(
                f"Could not save purchase order {po_id}: {exc}",
                po_id=po_id,
            ) from exc

        return await self.get(po_id)

    async def create(
        self,
        *,
        lines: Sequence[dict[str, Any]],
        supplier_id: uuid.UUID | None = None,
        expected_date: date | None = None,
        created_by: str | None = None,
        notes: str | None = None,
        tax_rate: Decimal | None = None,
        po_number: str | None = None,
    ) -> PurchaseOrder:
        """
        Create a draft order. Line payloads may use any known field alias.

        Received quantities only ever move through receiving, so a new order
        must start with nothing received.
        """
        parsed = [_parse_new_line(index, normalize_line_payload(raw)) for index, raw in enumerate(lines)]
        product_ids = [line["product_id"] for line in parsed]
        if len(set(product_ids)) != len(product_ids):
            raise InvalidQuantity("A product may appear only once per purchase order")

        order = PurchaseOrder(
            po_number=po_number or _generate_po_number(),
            supplier_id=supplier_id,
            status=POStatus.DRAFT.value,
            expected_date=expected_date,
            created_by=created_by,
            notes=notes,
            attachments=[],
        )

        subtotal = Decimal("0")
        async with self._session_factory() as session:
            async with session.begin():
                for position, payload in enumerate(parsed):
                    product = await session.get(Product, payload["product_id"])
                    unit_cost = payload["unit_cost"]
                    ordered = payload["ordered_quantity"]
                    subtotal += unit_cost * ordered
                    order.lines.append(
                        PurchaseOrderLine(
                            position=position,
                            product_id=payload["product_id"],
                            product_name=payload.get("product_name") or (product.name if product else None),
                            ordered_quantity=ordered,
                            unit_cost=unit_cost,
                            line_total=quantize_money(unit_cost * ordered),
                            received_quantity=0,
                            batch_number=payload.get("batch_number"),
                            expiry_date=payload.get("expiry_date"),
                            condition=payload.get("condition"),
                        )
                    )

                tax = subtotal * (tax_rate or Decimal("0"))
                order.subtotal = quantize_money(subtotal)
                order.tax = quantize_money(tax)
                order.total = quantize_money(subtotal + tax)
                order.total_received_items, order.total_pending_items = order_totals(order.lines)
                session.add(order)

        logger.info("purchase_order.created", po_id=str(order.po_id), po_number=order.po_number, lines=len(parsed))
        return await self.get(order.po_id)
