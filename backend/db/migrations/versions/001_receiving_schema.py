"""
Receiving schema - catalog, purchase orders, receipts, ledger, audit

Revision ID: 001
Revises: None
Create Date: 2026-10-19
"""

from collections.abc import Sequence

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects.postgresql import UUID

revision: str = "001"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None

PO_STATUSES = "'draft', 'pending_approval', 'approved', 'sent_to_supplier', 'partially_received', 'fully_received', 'cancelled'"


def _uuid_pk(name: str) -> sa.Column:
    return sa.Column(name, UUID(as_uuid=True), primary_key=True, server_default=sa.text("gen_random_uuid()"))


def upgrade() -> None:
    # 1. Suppliers
    op.create_table(
        "suppliers",
        _uuid_pk("supplier_id"),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("contact_email", sa.String(255)),
        sa.Column("lead_time_days", sa.Integer, nullable=False, server_default="7"),
        sa.Column("status", sa.String(20), nullable=False, server_default="active"),
        sa.Column("created_at", sa.DateTime, nullable=False, server_default=sa.func.now()),
        sa.CheckConstraint("lead_time_days > 0", name="ck_supplier_lead_time_positive"),
    )

    # 2. Products
    op.create_table(
        "products",
        _uuid_pk("product_id"),
        sa.Column("sku", sa.String(100), nullable=False, unique=True),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("category", sa.String(100)),
        sa.Column("stock", sa.Integer, nullable=False, server_default="0"),
        sa.Column("average_cost", sa.Numeric(14, 4), nullable=False, server_default="0"),
        sa.Column("unit_price", sa.Numeric(14, 2)),
        sa.Column("is_active", sa.Boolean, nullable=False, server_default="true"),
        sa.Column("supplier_id", UUID(as_uuid=True), sa.ForeignKey("suppliers.supplier_id"), nullable=True),
        sa.Column("created_at", sa.DateTime, nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime, nullable=False, server_default=sa.func.now()),
        sa.CheckConstraint("stock >= 0", name="ck_product_stock_nonneg"),
        sa.CheckConstraint("average_cost >= 0", name="ck_product_cost_nonneg"),
    )

    # 3. Purchase Orders
    op.create_table(
        "purchase_orders",
        _uuid_pk("po_id"),
        sa.Column("po_number", sa.String(50), nullable=False, unique=True),
        sa.Column("supplier_id", UUID(as_uuid=True), sa.ForeignKey("suppliers.supplier_id"), nullable=True),
        sa.Column("status", sa.String(30), nullable=False, server_default="draft"),
        sa.Column("version", sa.Integer, nullable=False, server_default="1"),
        sa.Column("subtotal", sa.Numeric(14, 2), nullable=False, server_default="0"),
        sa.Column("tax", sa.Numeric(14, 2), nullable=False, server_default="0"),
        sa.Column("total", sa.Numeric(14, 2), nullable=False, server_default="0"),
        sa.Column("expected_date", sa.Date),
        sa.Column("received_date", sa.Date),
        sa.Column("last_received_at", sa.DateTime),
        sa.Column("approved_by", sa.String(255)),
        sa.Column("approved_at", sa.DateTime),
        sa.Column("rejection_reason", sa.Text),
        sa.Column("total_received_items", sa.Integer, nullable=False, server_default="0"),
        sa.Column("total_pending_items", sa.Integer, nullable=False, server_default="0"),
        sa.Column("notes", sa.Text),
        sa.Column("attachments", sa.JSON, nullable=False, server_default="[]"),
        sa.Column("created_by", sa.String(255)),
        sa.Column("created_at", sa.DateTime, nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime, nullable=False, server_default=sa.func.now()),
        sa.CheckConstraint(f"status IN ({PO_STATUSES})", name="ck_po_status"),
        sa.CheckConstraint("version >= 1", name="ck_po_version_positive"),
    )
    op.create_index("ix_po_status_expected", "purchase_orders", ["status", "expected_date"])

    # 4. Purchase Order Lines
    op.create_table(
        "purchase_order_lines",
        _uuid_pk("line_id"),
        sa.Column("po_id", UUID(as_uuid=True), sa.ForeignKey("purchase_orders.po_id"), nullable=False),
        sa.Column("position", sa.Integer, nullable=False, server_default="0"),
        sa.Column("product_id", UUID(as_uuid=True), sa.ForeignKey("products.product_id"), nullable=False),
        sa.Column("product_name", sa.String(255)),
        sa.Column("ordered_quantity", sa.Integer, nullable=False),
        sa.Column("unit_cost", sa.Numeric(14, 4), nullable=False),
        sa.Column("line_total", sa.Numeric(14, 2), nullable=False),
        sa.Column("received_quantity", sa.Integer, nullable=False, server_default="0"),
        sa.Column("batch_number", sa.String(100)),
        sa.Column("expiry_date", sa.Date),
        sa.Column("condition", sa.String(20)),
        sa.UniqueConstraint("po_id", "product_id", name="uq_po_line_product"),
        sa.CheckConstraint("ordered_quantity > 0", name="ck_po_line_ordered_positive"),
        sa.CheckConstraint(
            "received_quantity >= 0 AND received_quantity <= ordered_quantity",
            name="ck_po_line_received_bounds",
        ),
    )

    # 5. Receipt Events
    op.create_table(
        "receipt_events",
        _uuid_pk("receipt_event_id"),
        sa.Column("po_id", UUID(as_uuid=True), sa.ForeignKey("purchase_orders.po_id"), nullable=False),
        sa.Column("mode", sa.String(20), nullable=False),
        sa.Column("performed_by", sa.String(255), nullable=False),
        sa.Column("performed_by_name", sa.String(255)),
        sa.Column("notes", sa.Text),
        sa.Column("received_at", sa.DateTime, nullable=False, server_default=sa.func.now()),
    )
    op.create_index("ix_receipt_events_po", "receipt_events", ["po_id", "received_at"])

    # 6. Receipt Event Lines
    op.create_table(
        "receipt_event_lines",
        _uuid_pk("id"),
        sa.Column(
            "receipt_event_id",
            UUID(as_uuid=True),
            sa.ForeignKey("receipt_events.receipt_event_id"),
            nullable=False,
        ),
        sa.Column("line_id", UUID(as_uuid=True), sa.ForeignKey("purchase_order_lines.line_id"), nullable=False),
        sa.Column("product_id", UUID(as_uuid=True), sa.ForeignKey("products.product_id"), nullable=False),
        sa.Column("delta", sa.Integer, nullable=False),
        sa.Column("cumulative_after", sa.Integer, nullable=False),
        sa.Column("unit_cost_at_receipt", sa.Numeric(14, 4), nullable=False),
        sa.Column("condition", sa.String(20), nullable=False, server_default="good"),
        sa.Column("batch_number", sa.String(100)),
        sa.Column("expiry_date", sa.Date),
        sa.CheckConstraint("delta > 0", name="ck_receipt_line_delta_positive"),
        sa.CheckConstraint("condition IN ('good', 'damaged', 'expired', 'returned')", name="ck_receipt_line_condition"),
    )
    op.create_index("ix_receipt_event_lines_line", "receipt_event_lines", ["line_id"])

    # 7. Stock Movements (append-only)
    op.create_table(
        "stock_movements",
        _uuid_pk("movement_id"),
        sa.Column("product_id", UUID(as_uuid=True), sa.ForeignKey("products.product_id"), nullable=False),
        sa.Column("quantity", sa.Integer, nullable=False),
        sa.Column("resulting_stock", sa.Integer, nullable=False),
        sa.Column("movement_type", sa.String(30), nullable=False),
        sa.Column("reference_id", sa.String(64)),
        sa.Column("user_id", sa.String(255)),
        sa.Column("reason", sa.Text),
        sa.Column("created_at", sa.DateTime, nullable=False, server_default=sa.func.now()),
        sa.CheckConstraint(
            "movement_type IN ('purchase_receipt', 'sale', 'adjustment', 'rollback', 'opening_balance')",
            name="ck_stock_movement_type",
        ),
    )
    op.create_index("ix_stock_movements_product", "stock_movements", ["product_id", "created_at"])
    op.create_index("ix_stock_movements_reference", "stock_movements", ["reference_id"])

    # 8. Cost Adjustments
    op.create_table(
        "cost_adjustments",
        _uuid_pk("adjustment_id"),
        sa.Column("product_id", UUID(as_uuid=True), sa.ForeignKey("products.product_id"), nullable=False),
        sa.Column(
            "receipt_event_id",
            UUID(as_uuid=True),
            sa.ForeignKey("receipt_events.receipt_event_id"),
            nullable=False,
        ),
        sa.Column("prior_quantity_on_hand", sa.Integer, nullable=False),
        sa.Column("received_quantity", sa.Integer, nullable=False),
        sa.Column("prior_average_cost", sa.Numeric(14, 4), nullable=False),
        sa.Column("new_average_cost", sa.Numeric(14, 4), nullable=False),
        sa.Column("ordered_unit_cost", sa.Numeric(14, 4), nullable=False),
        sa.Column("received_unit_cost", sa.Numeric(14, 4), nullable=False),
        sa.Column("variance_amount", sa.Numeric(14, 2), nullable=False),
        sa.Column("total_variance_amount", sa.Numeric(14, 2), nullable=False),
        sa.Column("variance_percentage", sa.Numeric(9, 2), nullable=False),
        sa.Column("variance_direction", sa.String(20), nullable=False),
        sa.Column("created_at", sa.DateTime, nullable=False, server_default=sa.func.now()),
        sa.CheckConstraint(
            "variance_direction IN ('favorable', 'unfavorable', 'none')", name="ck_cost_variance_direction"
        ),
    )
    op.create_index("ix_cost_adjustments_product", "cost_adjustments", ["product_id", "created_at"])

    # 9. Audit Log (append-only)
    op.create_table(
        "audit_log",
        _uuid_pk("audit_id"),
        sa.Column("entity_type", sa.String(50), nullable=False),
        sa.Column("entity_id", sa.String(64), nullable=False),
        sa.Column("action", sa.String(50), nullable=False),
        sa.Column("actor_id", sa.String(255)),
        sa.Column("actor_name", sa.String(255)),
        sa.Column("before", sa.JSON),
        sa.Column("after", sa.JSON),
        sa.Column("reason", sa.Text),
        sa.Column("created_at", sa.DateTime, nullable=False, server_default=sa.func.now()),
    )
    op.create_index("ix_audit_log_entity", "audit_log", ["entity_type", "entity_id", "created_at"])

    # 10. Overdue Alert Acknowledgements
    op.create_table(
        "overdue_alert_acks",
        _uuid_pk("ack_id"),
        sa.Column("po_id", UUID(as_uuid=True), sa.ForeignKey("purchase_orders.po_id"), nullable=False, unique=True),
        sa.Column("acknowledged_by", sa.String(255), nullable=False),
        sa.Column("acknowledged_at", sa.DateTime, nullable=False, server_default=sa.func.now()),
        sa.Column("notes", sa.Text),
    )


def downgrade() -> None:
    tables = [
        "overdue_alert_acks",
        "audit_log",
        "cost_adjustments",
        "stock_movements",
        "receipt_event_lines",
        "receipt_events",
        "purchase_order_lines",
        "purchase_orders",
        "products",
        "suppliers",
    ]
    for table in tables:
        op.drop_table(table)
