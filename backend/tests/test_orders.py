"""
Tests for purchase order persistence and legacy line normalisation.
"""

import uuid
from decimal import Decimal

import pytest
from sqlalchemy import func, select

from core.errors import ConcurrentModification, InvalidQuantity, PurchaseOrderNotFound
from db.models import PurchaseOrder
from supply_chain.orders import normalize_line_payload

PRODUCT_A = "product-a"


class TestNormalizeLinePayload:
    def test_legacy_received_qty_alias(self):
        line = normalize_line_payload({"productId": "p1", "quantity": 10, "cost": "2.50", "receivedQty": 4})
        assert line == {
            "product_id": "p1",
            "ordered_quantity": 10,
            "unit_cost": "2.50",
            "received_quantity": 4,
        }

    def test_snake_case_received_alias(self):
        assert normalize_line_payload({"received_qty": 3})["received_quantity"] == 3

    def test_missing_received_defaults_to_zero(self):
        assert normalize_line_payload({"product_id": "p1"})["received_quantity"] == 0

    def test_agreeing_aliases_are_accepted(self):
        line = normalize_line_payload({"receivedQty": 5, "receivedQuantity": 5})
        assert line["received_quantity"] == 5

    def test_conflicting_aliases_rejected(self):
        with pytest.raises(InvalidQuantity, match="received_quantity"):
            normalize_line_payload({"receivedQty": 5, "received_quantity": 6})


@pytest.mark.asyncio
class TestPurchaseOrderRepository:
    async def test_create_computes_totals(self, engine, catalog, order_lines):
        order = await engine.create_purchase_order(order_lines, supplier_id=catalog["supplier"].supplier_id)

        assert order.status == "draft"
        assert order.legacy_status == "draft"
        assert order.version == 1
        assert order.po_number.startswith("PO-")
        assert order.total == Decimal("5500.00")
        assert order.total_pending_items == 300
        assert [line.product_name for line in order.lines] == ["Product A", "Product B"]
        assert order.supplier_name == "Test Distributor"

    async def test_create_from_legacy_payload(self, engine, catalog):
        order = await engine.create_purchase_order(
            [{"productId": str(catalog["product_a"].product_id), "quantity": 10, "cost": 2, "receivedQty": 0}]
        )
        assert order.lines[0].ordered_quantity == 10
        assert order.lines[0].unit_cost == Decimal("2")

    async def test_create_rejects_duplicate_products(self, engine, catalog):
        product_id = str(catalog["product_a"].product_id)
        with pytest.raises(InvalidQuantity):
            await engine.create_purchase_order(
                [{"product_id": product_id, "quantity": 1}, {"product_id": product_id, "quantity": 2}]
            )

    async def test_create_rejects_non_positive_quantity(self, engine, catalog):
        with pytest.raises(InvalidQuantity):
            await engine.create_purchase_order([{"product_id": str(catalog["product_a"].product_id), "quantity": 0}])

    async def test_create_rejects_received_quantities(self, engine, session_factory, catalog):
        with pytest.raises(InvalidQuantity, match="received") as exc_info:
            await engine.create_purchase_order(
                [{"productId": str(catalog["product_a"].product_id), "quantity": 10, "cost": "1", "receivedQty": 4}]
            )

        assert exc_info.value.details["received_quantity"] == 4
        async with session_factory() as session:
            assert (await session.execute(select(func.count()).select_from(PurchaseOrder))).scalar_one() == 0

    @pytest.mark.parametrize(
        "line, field",
        [
            ({"product_id": "not-a-uuid", "quantity": 1, "cost": "1"}, "lines[0].product_id"),
            ({"quantity": 1, "cost": "1"}, "lines[0].product_id"),
            ({"product_id": PRODUCT_A, "quantity": "abc", "cost": "1"}, "lines[0].ordered_quantity"),
            ({"product_id": PRODUCT_A, "quantity": 2.5, "cost": "1"}, "lines[0].ordered_quantity"),
            ({"product_id": PRODUCT_A, "quantity": 1, "cost": "NaN"}, "lines[0].unit_cost"),
            ({"product_id": PRODUCT_A, "quantity": 1, "cost": "-3"}, "lines[0].unit_cost"),
            ({"product_id": PRODUCT_A, "quantity": 1, "expiry_date": "next tuesday"}, "lines[0].expiry_date"),
        ],
    )
    async def test_create_rejects_malformed_lines(self, engine, catalog, line, field):
        if line.get("product_id") == PRODUCT_A:
            line = {**line, "product_id": str(catalog["product_a"].product_id)}

        with pytest.raises(InvalidQuantity) as exc_info:
            await engine.create_purchase_order([line])

        assert exc_info.value.kind == "invalid_quantity"
        assert exc_info.value.details["field"] == field

    async def test_update_checks_version(self, engine, draft_order):
        updated = await engine.repository.update(draft_order.po_id, {"notes": "call first"}, draft_order.version)
        assert updated.version == draft_order.version + 1

        with pytest.raises(ConcurrentModification):
            await engine.repository.update(draft_order.po_id, {"notes": "stale"}, draft_order.version)

    async def test_update_rejects_unknown_fields(self, engine, draft_order):
        with pytest.raises(ValueError):
            await engine.repository.update(draft_order.po_id, {"version": 99}, draft_order.version)

    async def test_get_unknown(self, engine, catalog):
        with pytest.raises(PurchaseOrderNotFound) as exc_info:
            await engine.get_purchase_order(uuid.uuid4())
        assert exc_info.value.as_dict()["kind"] == "purchase_order_not_found"
