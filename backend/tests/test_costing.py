"""
Tests for Cost Reconciliation — weighted-average cost and price variance.
"""

import uuid
from decimal import Decimal

import pytest

from core.errors import InvalidQuantity, ProductNotFound
from supply_chain.costing import CostReconciliationService, apply_cost, is_significant, quantize_cost, to_decimal

PRODUCT_ID = uuid.UUID("00000000-0000-0000-0000-0000000000a1")


class TestApplyCost:
    def test_favorable_variance_on_empty_stock(self):
        adj = apply_cost(PRODUCT_ID, 0, "0", 200, 13.50, "15.00")

        assert adj.new_average_cost == Decimal("13.5000")
        assert adj.variance_amount == Decimal("-1.50")
        assert adj.total_variance_amount == Decimal("-300.00")
        assert adj.variance_percentage == Decimal("-10.00")
        assert adj.variance_direction == "favorable"

    def test_weighted_average(self):
        # (40 × 12 + 200 × 15) / 240 = 14.5
        adj = apply_cost(PRODUCT_ID, 40, "12.00", 200, "15.00", "15.00")
        assert adj.new_average_cost == Decimal("14.5000")
        assert adj.variance_direction == "none"
        assert adj.cost_changed

    def test_average_rounded_half_up_to_four_places(self):
        # (1 × 1 + 2 × 2) / 3 = 1.66666...
        adj = apply_cost(PRODUCT_ID, 1, "1", 2, "2", "2")
        assert adj.new_average_cost == Decimal("1.6667")

    def test_unfavorable_variance(self):
        adj = apply_cost(PRODUCT_ID, 10, "10", 5, "11.00", "10.00")
        assert adj.variance_direction == "unfavorable"
        assert adj.variance_percentage == Decimal("10.00")

    def test_zero_ordered_cost_has_zero_percentage(self):
        adj = apply_cost(PRODUCT_ID, 0, "0", 5, "2.00", "0")
        assert adj.variance_percentage == Decimal("0.00")
        assert adj.variance_direction == "unfavorable"

    def test_ordered_cost_defaults_to_prior_average(self):
        adj = apply_cost(PRODUCT_ID, 10, "8.00", 10, "8.00")
        assert adj.ordered_unit_cost == Decimal("8.00")
        assert not adj.has_variance
        assert not adj.cost_changed

    def test_rejects_non_positive_received_quantity(self):
        with pytest.raises(InvalidQuantity):
            apply_cost(PRODUCT_ID, 0, "0", 0, "1.00", "1.00")

    def test_rejects_negative_prior_stock(self):
        with pytest.raises(InvalidQuantity):
            apply_cost(PRODUCT_ID, -1, "0", 5, "1.00", "1.00")

    def test_rejects_negative_cost(self):
        with pytest.raises(InvalidQuantity):
            apply_cost(PRODUCT_ID, 0, "0", 5, "-1.00", "1.00")

    def test_significance_threshold(self):
        adj = apply_cost(PRODUCT_ID, 0, "0", 200, "13.50", "15.00")
        assert not is_significant(adj, 10)
        assert is_significant(adj, Decimal("9.99"))

    def test_as_dict_is_json_safe(self):
        payload = apply_cost(PRODUCT_ID, 0, "0", 200, "13.50", "15.00").as_dict()
        assert payload["product_id"] == str(PRODUCT_ID)
        assert payload["new_average_cost"] == "13.5000"


class TestDecimalHelpers:
    def test_float_goes_through_repr(self):
        assert to_decimal(13.5) == Decimal("13.5")
        assert to_decimal(0.1) == Decimal("0.1")

    def test_quantize_cost_half_up(self):
        assert quantize_cost(Decimal("1.00005")) == Decimal("1.0001")


@pytest.mark.asyncio
class TestCostReconciliationService:
    async def test_reconcile_updates_product_average(self, session_factory, catalog):
        service = CostReconciliationService(session_factory)
        product_id = catalog["product_a"].product_id

        adj = await service.reconcile_receipt(product_id, 40, 200, "15.00", "15.00")

        assert adj.new_average_cost == Decimal("14.5000")
        assert await service.get_average_cost(product_id) == Decimal("14.5")

    async def test_nothing_to_adjust_returns_none(self, session_factory, catalog):
        service = CostReconciliationService(session_factory)
        product_id = catalog["product_a"].product_id

        assert await service.reconcile_receipt(product_id, 40, 10, "12.00", "12.00") is None

    async def test_restore_puts_prior_cost_back(self, session_factory, catalog):
        service = CostReconciliationService(session_factory)
        product_id = catalog["product_a"].product_id
        adj = await service.reconcile_receipt(product_id, 40, 200, "15.00", "15.00")

        assert await service.restore(adj) is True
        assert await service.get_average_cost(product_id) == Decimal("12")

    async def test_restore_skips_when_cost_moved(self, session_factory, catalog):
        service = CostReconciliationService(session_factory)
        product_id = catalog["product_a"].product_id
        first = await service.reconcile_receipt(product_id, 40, 200, "15.00", "15.00")
        await service.reconcile_receipt(product_id, 240, 60, "20.00", "20.00")

        assert await service.restore(first) is False
        assert await service.get_average_cost(product_id) == Decimal("15.6")

    async def test_unknown_product(self, session_factory, catalog):
        service = CostReconciliationService(session_factory)
        with pytest.raises(ProductNotFound):
            await service.reconcile_receipt(uuid.uuid4(), 0, 1, "1.00", "1.00")
