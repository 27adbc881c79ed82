"""
Test Configuration — Fixtures for async DB, engine, test client, and seed data.

Every test gets its own in-memory SQLite database. StaticPool keeps one
connection alive so the schema survives across the many short-lived
sessions the engine opens (ledger, cost service, audit sink, repository).
"""

import uuid
from datetime import date, timedelta

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import create_async_engine
from sqlalchemy.pool import StaticPool

from api.deps import get_engine
from api.main import app
from core.config import Settings
from core.errors import LedgerFailure
from db.models import Product, Supplier
from db.session import Base, build_session_factory
from inventory.ledger import LedgerContext, MovementType, SqlStockLedger, StockMode
from supply_chain.engine import ReceivingEngine

TEST_DATABASE_URL = "sqlite+aiosqlite://"


# ── Test doubles ──────────────────────────────────────────────────────


class FlakyLedger(SqlStockLedger):
    """SqlStockLedger that fails the Nth 'add' call (1-based), and optionally every 'subtract'."""

    def __init__(self, session_factory, fail_on_add: int | None = None, fail_subtract: bool = False):
        super().__init__(session_factory)
        self.fail_on_add = fail_on_add
        self.fail_subtract = fail_subtract
        self.calls: list[tuple[uuid.UUID, int, StockMode]] = []

    async def update_stock(self, product_id, quantity, mode, context):
        mode = StockMode(mode)
        self.calls.append((product_id, quantity, mode))
        if mode == StockMode.ADD:
            adds = sum(1 for _, _, m in self.calls if m == StockMode.ADD)
            if adds == self.fail_on_add:
                raise LedgerFailure("Simulated ledger outage", product_id=product_id)
        if mode == StockMode.SUBTRACT and self.fail_subtract:
            raise LedgerFailure("Simulated ledger outage during rollback", product_id=product_id)
        return await super().update_stock(product_id, quantity, mode, context)


class FailingAuditSink:
    def __init__(self):
        self.attempts = 0

    async def append(self, event):
        self.attempts += 1
        raise RuntimeError("audit store unavailable")


# ── Database ──────────────────────────────────────────────────────────


@pytest.fixture
def settings():
    return Settings(app_env="test", database_url=TEST_DATABASE_URL)


@pytest.fixture
async def db_engine():
    engine = create_async_engine(
        TEST_DATABASE_URL,
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return build_session_factory(db_engine)


@pytest.fixture
def ledger(session_factory):
    return SqlStockLedger(session_factory)


@pytest.fixture
def engine(session_factory, ledger, settings):
    return ReceivingEngine(session_factory, ledger=ledger, settings=settings)


# ── Seed data ─────────────────────────────────────────────────────────


@pytest.fixture
async def catalog(session_factory, ledger):
    """
    One supplier and two products.

    Product A starts with 40 on hand at an average cost of 12.00 (recorded
    as an opening balance movement); product B starts empty.
    """
    supplier = Supplier(name="Test Distributor", contact_email="orders@testdist.com", lead_time_days=5)
    product_a = Product(sku="SKU-A", name="Product A", category="Dairy", average_cost=12)
    product_b = Product(sku="SKU-B", name="Product B", category="Dairy", average_cost=0)

    async with session_factory() as session:
        async with session.begin():
            session.add(supplier)
            await session.flush()
            product_a.supplier_id = supplier.supplier_id
            product_b.supplier_id = supplier.supplier_id
            session.add_all([product_a, product_b])

    await ledger.update_stock(
        product_a.product_id,
        40,
        StockMode.SET,
        LedgerContext(reason="Opening balance", movement_type=MovementType.OPENING_BALANCE),
    )
    return {"supplier": supplier, "product_a": product_a, "product_b": product_b}


@pytest.fixture
def order_lines(catalog):
    return [
        {"product_id": str(catalog["product_a"].product_id), "ordered_quantity": 200, "unit_cost": "15.00"},
        {"product_id": str(catalog["product_b"].product_id), "ordered_quantity": 100, "unit_cost": "25.00"},
    ]


@pytest.fixture
async def draft_order(engine, catalog, order_lines):
    return await engine.create_purchase_order(
        order_lines,
        supplier_id=catalog["supplier"].supplier_id,
        expected_date=date.today() + timedelta(days=7),
        created_by="buyer-1",
    )


@pytest.fixture
async def approved_order(engine, draft_order):
    await engine.submit_for_approval(draft_order.po_id, "buyer-1")
    return await engine.approve(draft_order.po_id, "manager-1", actor_name="Morgan Manager")


# ── API ───────────────────────────────────────────────────────────────


@pytest.fixture
async def client(engine):
    """Async test client with the engine dependency pointed at the test database."""
    app.dependency_overrides[get_engine] = lambda: engine

    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
    ) as ac:
        yield ac

    app.dependency_overrides.clear()
