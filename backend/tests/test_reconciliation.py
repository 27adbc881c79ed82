"""
Tests for reconciliation diagnostics — stock vs movement history, and
purchase order lines vs ledger and receipt events.
"""

import pytest
from sqlalchemy import update

from db.models import Product, PurchaseOrder, PurchaseOrderLine
from inventory.ledger import LedgerContext, MovementType, StockMode
from supply_chain.receiving import ReceiptContext, ReceiptLineRequest, ReceiptMode

CONTEXT = ReceiptContext(user_id="clerk-1")


@pytest.mark.asyncio
class TestStockReconciliation:
    async def test_consistent_after_receipts(self, engine, catalog, approved_order):
        product_id = catalog["product_a"].product_id
        await engine.receive(
            approved_order.po_id,
            [ReceiptLineRequest(product_id=product_id, quantity=120)],
            mode=ReceiptMode.CUMULATIVE,
            context=CONTEXT,
        )

        result = await engine.reconcile(product_id)

        assert result.ledger_stock == 160
        assert result.expected_stock == 160
        assert result.discrepancy == 0
        assert result.movement_count == 2
        assert result.last_movement_at is not None
        assert result.is_consistent

    async def test_out_of_band_stock_edit_is_reported(self, engine, session_factory, catalog):
        product_id = catalog["product_a"].product_id
        async with session_factory() as session:
            async with session.begin():
                await session.execute(update(Product).where(Product.product_id == product_id).values(stock=35))

        result = await engine.reconcile(product_id)

        assert result.ledger_stock == 35
        assert result.expected_stock == 40
        assert result.discrepancy == -5
        assert not result.is_consistent

    async def test_product_without_movements(self, engine, catalog):
        result = await engine.reconcile(catalog["product_b"].product_id)
        assert result.movement_count == 0
        assert result.last_movement_at is None
        assert result.is_consistent


@pytest.mark.asyncio
class TestPurchaseOrderReconciliation:
    async def test_consistent_order(self, engine, catalog, approved_order):
        await engine.receive(
            approved_order.po_id,
            [ReceiptLineRequest(product_id=catalog["product_b"].product_id, quantity=30)],
            mode=ReceiptMode.INCREMENTAL,
            context=CONTEXT,
        )

        report = await engine.reconcile_purchase_order(approved_order.po_id, "ops-1")

        assert report.is_consistent
        assert not report.repaired
        assert not report.status_corrected
        assert report.stored_status == report.derived_status == "partially_received"
        b_line = report.lines[1]
        assert (b_line.received_quantity, b_line.ledger_net_quantity, b_line.receipt_event_quantity) == (30, 30, 30)

    async def test_report_only_does_not_write(self, engine, ledger, catalog, approved_order):
        product_id = catalog["product_a"].product_id
        await ledger.update_stock(
            product_id,
            25,
            StockMode.ADD,
            LedgerContext(reference_id=str(approved_order.po_id), movement_type=MovementType.PURCHASE_RECEIPT),
        )

        report = await engine.reconcile_purchase_order(approved_order.po_id, "ops-1", repair=False)

        assert not report.is_consistent
        assert report.lines[0].ledger_net_quantity == 25
        assert report.lines[0].repaired_to is None
        order = await engine.get_purchase_order(approved_order.po_id)
        assert order.version == approved_order.version

    async def test_status_drift_is_corrected_and_audited(self, engine, session_factory, catalog, approved_order):
        await engine.receive(
            approved_order.po_id,
            [
                ReceiptLineRequest(product_id=catalog["product_a"].product_id, quantity=200),
                ReceiptLineRequest(product_id=catalog["product_b"].product_id, quantity=100),
            ],
            mode=ReceiptMode.CUMULATIVE,
            context=CONTEXT,
        )
        # Simulate a stale writer that left the status behind
        async with session_factory() as session:
            async with session.begin():
                await session.execute(
                    update(PurchaseOrder)
                    .where(PurchaseOrder.po_id == approved_order.po_id)
                    .values(status="partially_received")
                )

        report = await engine.reconcile_purchase_order(approved_order.po_id, "ops-1")

        assert report.status_corrected
        assert report.derived_status == "fully_received"
        order = await engine.get_purchase_order(approved_order.po_id)
        assert order.status == "fully_received"
        history = await engine.audit_history(approved_order.po_id)
        assert history[-1].action == "status_correction"
        assert history[-1].actor_id == "ops-1"

    async def test_ledger_short_of_order_is_reported_not_repaired(self, engine, session_factory, catalog, approved_order):
        await engine.receive(
            approved_order.po_id,
            [ReceiptLineRequest(product_id=catalog["product_a"].product_id, quantity=50)],
            mode=ReceiptMode.CUMULATIVE,
            context=CONTEXT,
        )
        async with session_factory() as session:
            async with session.begin():
                await session.execute(
                    update(PurchaseOrderLine)
                    .where(PurchaseOrderLine.po_id == approved_order.po_id)
                    .where(PurchaseOrderLine.product_id == catalog["product_a"].product_id)
                    .values(received_quantity=70)
                )

        report = await engine.reconcile_purchase_order(approved_order.po_id, "ops-1")

        assert not report.is_consistent
        assert not report.repaired
        assert report.lines[0].ledger_net_quantity == 50
        assert report.lines[0].repaired_to is None
