"""
Cost Reconciliation — moving weighted-average cost and price variance.

When goods arrive at a cost different from what was ordered (or from the
product's current average), the product's cost basis is blended:

    new_avg = (on_hand × avg + received_qty × received_cost) / (on_hand + received_qty)

and the ordered-vs-actual variance is reported:

    variance     = received_cost − ordered_cost
    variance_pct = variance / ordered_cost × 100
    favorable when received_cost < ordered_cost

Numeric policy: Decimal throughout, no rounding on intermediate values,
ROUND_HALF_UP on the reported values only (cost to 4 places, money and
percentages to 2).

Stock quantities are never touched here; only cost basis and variance.
"""

import uuid
from dataclasses import asdict, dataclass
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from core.errors import InvalidQuantity, ProductNotFound
from db.models import Product

logger = structlog.get_logger()

COST_PLACES = Decimal("0.0001")
MONEY_PLACES = Decimal("0.01")
HUNDRED = Decimal("100")


def to_decimal(value: Any) -> Decimal:
    if isinstance(value, Decimal):
        return value
    if isinstance(value, float):
        # repr keeps 13.5 as 13.5 instead of 13.4999999...
        return Decimal(repr(value))
    return Decimal(str(value))


def parse_unit_cost(value: Any, **details: Any) -> Decimal:
    """Decimal unit cost from caller input. Anything not a finite, non-negative number is InvalidQuantity."""
    if isinstance(value, bool):
        raise InvalidQuantity(f"Unit cost {value!r} is not a number", unit_cost=value, **details)
    try:
        cost = to_decimal(value)
    except (InvalidOperation, TypeError, ValueError):
        raise InvalidQuantity(f"Unit cost {value!r} is not a number", unit_cost=value, **details) from None
    if not cost.is_finite():
        raise InvalidQuantity(f"Unit cost must be a finite number, got {value!r}", unit_cost=value, **details)
    if cost < 0:
        raise InvalidQuantity("Unit cost must be greater than or equal to zero", unit_cost=cost, **details)
    return cost


def quantize_cost(value: Decimal) -> Decimal:
    return value.quantize(COST_PLACES, rounding=ROUND_HALF_UP)


def quantize_money(value: Decimal) -> Decimal:
    return value.quantize(MONEY_PLACES, rounding=ROUND_HALF_UP)


@dataclass(frozen=True)
class CostAdjustmentResult:
    product_id: uuid.UUID
    prior_quantity_on_hand: int
    prior_average_cost: Decimal
    received_quantity: int
    received_unit_cost: Decimal
    ordered_unit_cost: Decimal
    new_average_cost: Decimal
    variance_amount: Decimal
    total_variance_amount: Decimal
    variance_percentage: Decimal
    variance_direction: str

    @property
    def cost_changed(self) -> bool:
        return self.new_average_cost != quantize_cost(self.prior_average_cost)

    @property
    def has_variance(self) -> bool:
        return self.variance_direction != "none"

    def as_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["product_id"] = str(self.product_id)
        for key, value in payload.items():
            if isinstance(value, Decimal):
                payload[key] = str(value)
        return payload


def apply_cost(
    product_id: uuid.UUID,
    prior_quantity_on_hand: int,
    prior_avg_cost: Any,
    received_quantity: int,
    received_unit_cost: Any,
    ordered_unit_cost: Any = None,
) -> CostAdjustmentResult:
    """
    Blend the received lot into the product's weighted-average cost.

    ordered_unit_cost defaults to the prior average cost when the caller has
    no order line to compare against.
    """
    prior_avg = to_decimal(prior_avg_cost)
    received_cost = to_decimal(received_unit_cost)
    ordered_cost = prior_avg if ordered_unit_cost is None else to_decimal(ordered_unit_cost)

    if prior_quantity_on_hand < 0:
        raise InvalidQuantity(
            "Prior quantity on hand must not be negative",
            product_id=product_id,
            prior_quantity_on_hand=prior_quantity_on_hand,
        )
    if received_quantity <= 0:
        raise InvalidQuantity(
            "Received quantity must be greater than zero",
            product_id=product_id,
            received_quantity=received_quantity,
        )
    if prior_avg < 0 or received_cost < 0 or ordered_cost < 0:
        raise InvalidQuantity("Costs must not be negative", product_id=product_id)

    if prior_quantity_on_hand == 0:
        new_avg = received_cost
    else:
        total_value = prior_avg * prior_quantity_on_hand + received_cost * received_quantity
        new_avg = total_value / (prior_quantity_on_hand + received_quantity)

    variance = received_cost - ordered_cost
    variance_pct = (variance / ordered_cost * HUNDRED) if ordered_cost > 0 else Decimal("0")
    if variance < 0:
        direction = "favorable"
    elif variance > 0:
        direction = "unfavorable"
    else:
        direction = "none"

    return CostAdjustmentResult(
        product_id=product_id,
        prior_quantity_on_hand=prior_quantity_on_hand,
        prior_average_cost=prior_avg,
        received_quantity=received_quantity,
        received_unit_cost=received_cost,
        ordered_unit_cost=ordered_cost,
        new_average_cost=quantize_cost(new_avg),
        variance_amount=quantize_money(variance),
        total_variance_amount=quantize_money(variance * received_quantity),
        variance_percentage=quantize_money(variance_pct),
        variance_direction=direction,
    )


def is_significant(adjustment: CostAdjustmentResult, threshold_pct: Any) -> bool:
    return abs(adjustment.variance_percentage) > to_decimal(threshold_pct)


class CostReconciliationService:
    """Reads and writes the product cost basis around apply_cost()."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    async def get_average_cost(self, product_id: uuid.UUID) -> Decimal:
        async with self._session_factory() as session:
            product = await session.get(Product, product_id)
            if product is None:
                raise ProductNotFound(f"Product {product_id} not found", product_id=product_id)
            return to_decimal(product.average_cost or 0)

    async def reconcile_receipt(
        self,
        product_id: uuid.UUID,
        prior_quantity_on_hand: int,
        received_quantity: int,
        received_unit_cost: Any,
        ordered_unit_cost: Any,
    ) -> CostAdjustmentResult | None:
        """
        Update the product's average cost for a received lot.

        Returns None when neither the average cost nor the ordered price
        differs from what was received (nothing to adjust).
        """
        async with self._session_factory() as session:
            async with session.begin():
                result = await session.execute(
                    select(Product).where(Product.product_id == product_id).with_for_update()
                )
                product = result.scalar_one_or_none()
                if product is None:
                    raise ProductNotFound(f"Product {product_id} not found", product_id=product_id)

                adjustment = apply_cost(
                    product_id,
                    prior_quantity_on_hand,
                    product.average_cost or 0,
                    received_quantity,
                    received_unit_cost,
                    ordered_unit_cost,
                )
                if not adjustment.cost_changed and not adjustment.has_variance:
                    return None
                if adjustment.cost_changed:
                    product.average_cost = adjustment.new_average_cost
                    product.updated_at = datetime.utcnow()

        logger.info(
            "costing.adjusted",
            product_id=str(product_id),
            prior_average_cost=str(adjustment.prior_average_cost),
            new_average_cost=str(adjustment.new_average_cost),
            variance_pct=str(adjustment.variance_percentage),
            direction=adjustment.variance_direction,
        )
        return adjustment

    async def restore(self, adjustment: CostAdjustmentResult) -> bool:
        """
        Compensate a reconcile_receipt() by putting the prior cost back.

        Skipped (returns False) when the cost has moved since, so a later
        receipt on another order is not clobbered.
        """
        if not adjustment.cost_changed:
            return True
        async with self._session_factory() as session:
            async with session.begin():
                result = await session.execute(
                    select(Product).where(Product.product_id == adjustment.product_id).with_for_update()
                )
                product = result.scalar_one_or_none()
                if product is None:
                    return False
                if to_decimal(product.average_cost) != adjustment.new_average_cost:
                    logger.warning(
                        "costing.restore_skipped",
                        product_id=str(adjustment.product_id),
                        expected=str(adjustment.new_average_cost),
                        actual=str(product.average_cost),
                    )
                    return False
                product.average_cost = quantize_cost(adjustment.prior_average_cost)
                product.updated_at = datetime.utcnow()
        return True
