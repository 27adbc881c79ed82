"""
Stock Ledger Gateway — atomic stock updates with an append-only movement log.

The receiving engine consumes this contract; it does not own product stock.
Required properties of any implementation:
  - every update_stock() call is atomic (stock change + movement row commit together)
  - concurrent updates to one product are serialized by the gateway itself
  - each movement carries reference_id so history can be reconstructed

SqlStockLedger is the reference implementation over the products and
stock_movements tables. Each call runs in its own session and transaction,
locking the product row with SELECT ... FOR UPDATE.
"""

import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from enum import Enum

import structlog
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from core.errors import LedgerFailure
from db.models import Product, StockMovement

logger = structlog.get_logger()


class StockMode(str, Enum):
    ADD = "add"
    SUBTRACT = "subtract"
    SET = "set"


class MovementType(str, Enum):
    PURCHASE_RECEIPT = "purchase_receipt"
    SALE = "sale"
    ADJUSTMENT = "adjustment"
    ROLLBACK = "rollback"
    OPENING_BALANCE = "opening_balance"


@dataclass(frozen=True)
class LedgerContext:
    """Attribution for a stock update; stored on the movement row."""

    reference_id: str | None = None
    user_id: str | None = None
    reason: str | None = None
    movement_type: MovementType = MovementType.ADJUSTMENT


@dataclass(frozen=True)
class MovementRecord:
    movement_id: uuid.UUID
    product_id: uuid.UUID
    quantity: int
    resulting_stock: int
    movement_type: str
    reference_id: str | None
    user_id: str | None
    reason: str | None
    created_at: datetime


class StockLedgerGateway(ABC):
    """Contract the receiving engine relies on."""

    @abstractmethod
    async def get_stock(self, product_id: uuid.UUID) -> int: ...

    @abstractmethod
    async def update_stock(
        self,
        product_id: uuid.UUID,
        quantity: int,
        mode: StockMode,
        context: LedgerContext,
    ) -> int:
        """Apply the change and return the updated on-hand quantity. Raises LedgerFailure."""

    @abstractmethod
    async def movements(
        self,
        product_id: uuid.UUID,
        reference_id: str | None = None,
    ) -> list[MovementRecord]:
        """Movement history for a product, oldest first."""


def apply_mode(current: int, quantity: int, mode: StockMode) -> int:
    if mode == StockMode.ADD:
        return current + quantity
    if mode == StockMode.SUBTRACT:
        return current - quantity
    return quantity


class SqlStockLedger(StockLedgerGateway):
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    async def get_stock(self, product_id: uuid.UUID) -> int:
        async with self._session_factory() as session:
            product = await session.get(Product, product_id)
            if product is None:
                raise LedgerFailure(f"Product {product_id} not found", product_id=product_id)
            return int(product.stock)

    async def update_stock(
        self,
        product_id: uuid.UUID,
        quantity: int,
        mode: StockMode,
        context: LedgerContext,
    ) -> int:
        mode = StockMode(mode)
        if quantity < 0:
            raise LedgerFailure(
                f"Stock {mode.value} quantity must not be negative",
                product_id=product_id,
                quantity=quantity,
            )

        try:
            async with self._session_factory() as session:
                async with session.begin():
                    result = await session.execute(
                        select(Product).where(Product.product_id == product_id).with_for_update()
                    )
                    product = result.scalar_one_or_none()
                    if product is None:
                        raise LedgerFailure(f"Product {product_id} not found", product_id=product_id)

                    previous = int(product.stock)
                    updated = apply_mode(previous, quantity, mode)
                    if updated < 0:
                        raise LedgerFailure(
                            f"Insufficient stock for {product.sku}: have {previous}, need {quantity}",
                            product_id=product_id,
                            current_stock=previous,
                            quantity=quantity,
                        )

                    product.stock = updated
                    product.updated_at = datetime.utcnow()
                    session.add(
                        StockMovement(
                            product_id=product_id,
                            quantity=updated - previous,
                            resulting_stock=updated,
                            movement_type=MovementType(context.movement_type).value,
                            reference_id=context.reference_id,
                            user_id=context.user_id,
                            reason=context.reason,
                        )
                    )
        except SQLAlchemyError as exc:
            raise LedgerFailure(
                f"Stock update failed for product {product_id}: {exc}",
                product_id=product_id,
            ) from exc

        logger.info(
            "ledger.updated",
            product_id=str(product_id),
            mode=mode.value,
            quantity=quantity,
            previous_stock=previous,
            new_stock=updated,
            reference_id=context.reference_id,
            movement_type=MovementType(context.movement_type).value,
        )
        return updated

    async def movements(
        self,
        product_id: uuid.UUID,
        reference_id: str | None = None,
    ) -> list[MovementRecord]:
        query = select(StockMovement).where(StockMovement.product_id == product_id)
        if reference_id is not None:
            query = query.where(StockMovement.reference_id == reference_id)
        query = query.order_by(StockMovement.created_at.asc())

        async with self._session_factory() as session:
            rows = (await session.execute(query)).scalars().all()

        return [
            MovementRecord(
                movement_id=row.movement_id,
                product_id=row.product_id,
                quantity=row.quantity,
                resulting_stock=row.resulting_stock,
                movement_type=row.movement_type,
                reference_id=row.reference_id,
                user_id=row.user_id,
                reason=row.reason,
                created_at=row.created_at,
            )
            for row in rows
        ]
