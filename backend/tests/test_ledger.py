"""
Tests for the SQL Stock Ledger Gateway.
"""

import uuid

import pytest

from core.errors import LedgerFailure
from inventory.ledger import LedgerContext, MovementType, StockMode, apply_mode


class TestApplyMode:
    def test_add(self):
        assert apply_mode(10, 5, StockMode.ADD) == 15

    def test_subtract(self):
        assert apply_mode(10, 5, StockMode.SUBTRACT) == 5

    def test_set(self):
        assert apply_mode(10, 3, StockMode.SET) == 3


@pytest.mark.asyncio
class TestSqlStockLedger:
    async def test_add_appends_movement(self, ledger, catalog):
        product_id = catalog["product_b"].product_id
        context = LedgerContext(
            reference_id="po-123",
            user_id="clerk-1",
            reason="Purchase order receipt",
            movement_type=MovementType.PURCHASE_RECEIPT,
        )

        assert await ledger.update_stock(product_id, 12, StockMode.ADD, context) == 12

        [movement] = await ledger.movements(product_id)
        assert movement.quantity == 12
        assert movement.resulting_stock == 12
        assert movement.movement_type == "purchase_receipt"
        assert movement.reference_id == "po-123"
        assert movement.user_id == "clerk-1"

    async def test_set_records_signed_delta(self, ledger, catalog):
        product_id = catalog["product_a"].product_id
        await ledger.update_stock(product_id, 25, StockMode.SET, LedgerContext(reason="Cycle count"))

        movements = await ledger.movements(product_id)
        assert [m.quantity for m in movements] == [40, -15]
        assert movements[-1].movement_type == "adjustment"

    async def test_subtract_below_zero_refused(self, ledger, catalog):
        product_id = catalog["product_a"].product_id
        with pytest.raises(LedgerFailure, match="Insufficient stock"):
            await ledger.update_stock(product_id, 41, StockMode.SUBTRACT, LedgerContext())

        assert await ledger.get_stock(product_id) == 40
        assert len(await ledger.movements(product_id)) == 1

    async def test_negative_quantity_refused(self, ledger, catalog):
        with pytest.raises(LedgerFailure):
            await ledger.update_stock(catalog["product_a"].product_id, -1, StockMode.ADD, LedgerContext())

    async def test_unknown_product(self, ledger, catalog):
        with pytest.raises(LedgerFailure, match="not found"):
            await ledger.update_stock(uuid.uuid4(), 1, StockMode.ADD, LedgerContext())

    async def test_movements_filtered_by_reference(self, ledger, catalog):
        product_id = catalog["product_b"].product_id
        await ledger.update_stock(product_id, 5, StockMode.ADD, LedgerContext(reference_id="po-1"))
        await ledger.update_stock(product_id, 7, StockMode.ADD, LedgerContext(reference_id="po-2"))

        movements = await ledger.movements(product_id, reference_id="po-2")
        assert [m.quantity for m in movements] == [7]
