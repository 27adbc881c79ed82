"""
Stockwise Database Models

Tables for the purchase order receiving & inventory reconciliation engine.

Tables:
  Catalog (consumed, not owned):
  1. suppliers              - Product suppliers
  2. products               - Product catalog with on-hand stock and average cost

  Purchasing:
  3. purchase_orders        - Orders and their lifecycle status (+ version for CAS)
  4. purchase_order_lines   - Ordered lines with cumulative received quantity

  Write-once audit artifacts:
  5. receipt_events         - One row per successful receiving call
  6. receipt_event_lines    - Per-line deltas of a receiving call
  7. stock_movements        - Append-only ledger of every stock change
  8. cost_adjustments       - Weighted-average cost changes and price variance
  9. audit_log              - Transitions, receipts, approval decisions

  Read-side:
  10. overdue_alert_acks    - Acknowledgement state of derived overdue alerts
"""

import uuid
from datetime import datetime

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    Column,
    Date,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    TypeDecorator,
    UniqueConstraint,
    types,
)
from sqlalchemy.dialects.postgresql import UUID as PG_UUID


class GUID(TypeDecorator):
    """Platform-independent UUID type.

    Uses PostgreSQL UUID when available, stores as CHAR(36) on SQLite.
    """

    impl = types.String(36)
    cache_ok = True

    def load_dialect_impl(self, dialect):
        if dialect.name == "postgresql":
            return dialect.type_descriptor(PG_UUID(as_uuid=True))
        return dialect.type_descriptor(types.String(36))

    def process_bind_param(self, value, dialect):
        if value is None:
            return value
        if dialect.name == "postgresql":
            return value if isinstance(value, uuid.UUID) else uuid.UUID(str(value))
        return str(value) if isinstance(value, uuid.UUID) else value

    def process_result_value(self, value, dialect):
        if value is None:
            return value
        if isinstance(value, uuid.UUID):
            return value
        return uuid.UUID(str(value))


def UUID(as_uuid=True):
    return GUID()


from sqlalchemy.orm import relationship

from db.session import Base
from supply_chain.state_machine import POStatus, legacy_status

Money = Numeric(14, 2, asdecimal=True)
UnitCost = Numeric(14, 4, asdecimal=True)

PO_STATUS_VALUES = ", ".join(f"'{s.value}'" for s in POStatus)

# ─── 1. Suppliers ───────────────────────────────────────────────────────────


class Supplier(Base):
    __tablename__ = "suppliers"

    supplier_id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    name = Column(String(255), nullable=False)
    contact_email = Column(String(255))
    lead_time_days = Column(Integer, nullable=False, default=7)
    status = Column(String(20), nullable=False, default="active")
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    __table_args__ = (CheckConstraint("lead_time_days > 0", name="ck_supplier_lead_time_positive"),)


# ─── 2. Products ────────────────────────────────────────────────────────────


class Product(Base):
    __tablename__ = "products"

    product_id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    sku = Column(String(100), nullable=False, unique=True)
    name = Column(String(255), nullable=False)
    category = Column(String(100))
    stock = Column(Integer, nullable=False, default=0)
    average_cost = Column(UnitCost, nullable=False, default=0)
    unit_price = Column(Money)
    is_active = Column(Boolean, nullable=False, default=True)
    supplier_id = Column(UUID(as_uuid=True), ForeignKey("suppliers.supplier_id"), nullable=True)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        CheckConstraint("stock >= 0", name="ck_product_stock_nonneg"),
        CheckConstraint("average_cost >= 0", name="ck_product_cost_nonneg"),
    )


# ─── 3. Purchase Orders ─────────────────────────────────────────────────────


class PurchaseOrder(Base):
    """A purchase order. Only the enhanced status is stored; see legacy_status."""

    __tablename__ = "purchase_orders"

    po_id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    po_number = Column(String(50), nullable=False, unique=True)
    supplier_id = Column(UUID(as_uuid=True), ForeignKey("suppliers.supplier_id"), nullable=True)
    status = Column(String(30), nullable=False, default=POStatus.DRAFT.value)
    version = Column(Integer, nullable=False)

    subtotal = Column(Money, nullable=False, default=0)
    tax = Column(Money, nullable=False, default=0)
    total = Column(Money, nullable=False, default=0)

    expected_date = Column(Date)
    received_date = Column(Date)
    last_received_at = Column(DateTime)

    # Approval metadata
    approved_by = Column(String(255))
    approved_at = Column(DateTime)
    rejection_reason = Column(Text)

    total_received_items = Column(Integer, nullable=False, default=0)
    total_pending_items = Column(Integer, nullable=False, default=0)

    notes = Column(Text)
    attachments = Column(JSON, nullable=False, default=list)
    created_by = Column(String(255))
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    __table_args__ = (
        Index("ix_po_status_expected", "status", "expected_date"),
        CheckConstraint(f"status IN ({PO_STATUS_VALUES})", name="ck_po_status"),
        CheckConstraint("version >= 1", name="ck_po_version_positive"),
    )

    # UPDATE ... WHERE version = :loaded; a concurrent writer raises StaleDataError
    __mapper_args__ = {"version_id_col": version}

    supplier = relationship("Supplier", lazy="joined")
    lines = relationship(
        "PurchaseOrderLine",
        back_populates="purchase_order",
        cascade="all, delete-orphan",
        order_by="PurchaseOrderLine.position",
        lazy="selectin",
    )

    @property
    def legacy_status(self) -> str:
        return legacy_status(self.status)

    @property
    def supplier_name(self) -> str:
        return self.supplier.name if self.supplier is not None else "Unknown Supplier"


class PurchaseOrderLine(Base):
    __tablename__ = "purchase_order_lines"

    line_id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    po_id = Column(UUID(as_uuid=True), ForeignKey("purchase_orders.po_id"), nullable=False)
    position = Column(Integer, nullable=False, default=0)
    product_id = Column(UUID(as_uuid=True), ForeignKey("products.product_id"), nullable=False)
    product_name = Column(String(255))
    ordered_quantity = Column(Integer, nullable=False)
    unit_cost = Column(UnitCost, nullable=False)
    line_total = Column(Money, nullable=False)
    received_quantity = Column(Integer, nullable=False, default=0)

    # Optional receiving metadata (latest receipt wins)
    batch_number = Column(String(100))
    expiry_date = Column(Date)
    condition = Column(String(20))

    __table_args__ = (
        UniqueConstraint("po_id", "product_id", name="uq_po_line_product"),
        CheckConstraint("ordered_quantity > 0", name="ck_po_line_ordered_positive"),
        CheckConstraint(
            "received_quantity >= 0 AND received_quantity <= ordered_quantity",
            name="ck_po_line_received_bounds",
        ),
    )

    purchase_order = relationship("PurchaseOrder", back_populates="lines")

    @property
    def pending_quantity(self) -> int:
        return self.ordered_quantity - self.received_quantity


# ─── 5–6. Receipt Events ────────────────────────────────────────────────────


class ReceiptEvent(Base):
    """One receiving call. Immutable once written."""

    __tablename__ = "receipt_events"

    receipt_event_id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    po_id = Column(UUID(as_uuid=True), ForeignKey("purchase_orders.po_id"), nullable=False)
    mode = Column(String(20), nullable=False)
    performed_by = Column(String(255), nullable=False)
    performed_by_name = Column(String(255))
    notes = Column(Text)
    received_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    __table_args__ = (Index("ix_receipt_events_po", "po_id", "received_at"),)

    lines = relationship("ReceiptEventLine", back_populates="event", lazy="selectin")


class ReceiptEventLine(Base):
    __tablename__ = "receipt_event_lines"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    receipt_event_id = Column(UUID(as_uuid=True), ForeignKey("receipt_events.receipt_event_id"), nullable=False)
    line_id = Column(UUID(as_uuid=True), ForeignKey("purchase_order_lines.line_id"), nullable=False)
    product_id = Column(UUID(as_uuid=True), ForeignKey("products.product_id"), nullable=False)
    delta = Column(Integer, nullable=False)
    cumulative_after = Column(Integer, nullable=False)
    unit_cost_at_receipt = Column(UnitCost, nullable=False)
    condition = Column(String(20), nullable=False, default="good")
    batch_number = Column(String(100))
    expiry_date = Column(Date)

    __table_args__ = (
        Index("ix_receipt_event_lines_line", "line_id"),
        CheckConstraint("delta > 0", name="ck_receipt_line_delta_positive"),
        CheckConstraint(
            "condition IN ('good', 'damaged', 'expired', 'returned')", name="ck_receipt_line_condition"
        ),
    )

    event = relationship("ReceiptEvent", back_populates="lines")


# ─── 7. Stock Movements ─────────────────────────────────────────────────────


class StockMovement(Base):
    """Append-only stock ledger. Corrections are new compensating rows."""

    __tablename__ = "stock_movements"

    movement_id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    product_id = Column(UUID(as_uuid=True), ForeignKey("products.product_id"), nullable=False)
    quantity = Column(Integer, nullable=False)  # signed
    resulting_stock = Column(Integer, nullable=False)
    movement_type = Column(String(30), nullable=False)
    reference_id = Column(String(64))
    user_id = Column(String(255))
    reason = Column(Text)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    __table_args__ = (
        Index("ix_stock_movements_product", "product_id", "created_at"),
        Index("ix_stock_movements_reference", "reference_id"),
        CheckConstraint(
            "movement_type IN ('purchase_receipt', 'sale', 'adjustment', 'rollback', 'opening_balance')",
            name="ck_stock_movement_type",
        ),
    )


# ─── 8. Cost Adjustments ────────────────────────────────────────────────────


class CostAdjustment(Base):
    __tablename__ = "cost_adjustments"

    adjustment_id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    product_id = Column(UUID(as_uuid=True), ForeignKey("products.product_id"), nullable=False)
    receipt_event_id = Column(UUID(as_uuid=True), ForeignKey("receipt_events.receipt_event_id"), nullable=False)
    prior_quantity_on_hand = Column(Integer, nullable=False)
    received_quantity = Column(Integer, nullable=False)
    prior_average_cost = Column(UnitCost, nullable=False)
    new_average_cost = Column(UnitCost, nullable=False)
    ordered_unit_cost = Column(UnitCost, nullable=False)
    received_unit_cost = Column(UnitCost, nullable=False)
    variance_amount = Column(Money, nullable=False)
    total_variance_amount = Column(Money, nullable=False)
    variance_percentage = Column(Numeric(9, 2, asdecimal=True), nullable=False)
    variance_direction = Column(String(20), nullable=False)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    receipt_event = relationship("ReceiptEvent")

    __table_args__ = (
        Index("ix_cost_adjustments_product", "product_id", "created_at"),
        CheckConstraint(
            "variance_direction IN ('favorable', 'unfavorable', 'none')", name="ck_cost_variance_direction"
        ),
    )


# ─── 9. Audit Log ───────────────────────────────────────────────────────────


class AuditLogEntry(Base):
    """Every transition, receipt and approval decision, with before/after values."""

    __tablename__ = "audit_log"

    audit_id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    entity_type = Column(String(50), nullable=False)
    entity_id = Column(String(64), nullable=False)
    action = Column(String(50), nullable=False)
    actor_id = Column(String(255))
    actor_name = Column(String(255))
    before = Column(JSON)
    after = Column(JSON)
    reason = Column(Text)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    __table_args__ = (Index("ix_audit_log_entity", "entity_type", "entity_id", "created_at"),)


# ─── 10. Overdue Alert Acknowledgements ─────────────────────────────────────


class OverdueAlertAck(Base):
    __tablename__ = "overdue_alert_acks"

    ack_id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    po_id = Column(UUID(as_uuid=True), ForeignKey("purchase_orders.po_id"), nullable=False, unique=True)
    acknowledged_by = Column(String(255), nullable=False)
    acknowledged_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    notes = Column(Text)
