"""
Receiving Queue & Overdue Alerts — read-side projection over receivable orders.

Nothing here is a source of truth. Queue entries and alerts are recomputed
from purchase_orders and the current time on every call; the only state this
module owns is whether an overdue alert has been acknowledged.

Alert Types:
  - overdue_delivery: expected date has passed and the order is still receivable
"""

import uuid
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta
from decimal import Decimal
from typing import Any

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from audit.log import AuditAction, AuditEvent, AuditLog
from core.config import Settings, get_settings
from db.models import OverdueAlertAck, PurchaseOrder
from supply_chain.orders import PurchaseOrderRepository
from supply_chain.state_machine import RECEIVABLE_STATUSES

logger = structlog.get_logger()

ONE_DAY = timedelta(days=1)
SEVERITY_ORDER = {"critical": 4, "high": 3, "medium": 2, "low": 1}
OVERDUE_ACTION = "Contact supplier for updated delivery schedule"


# ──────────────────────────────────────────────────────────────────────────
# Classification Rules
# ──────────────────────────────────────────────────────────────────────────


def classify_priority(days_until_expected: int | None, order_value: Decimal, settings: Settings) -> str:
    """Queue priority from days until the expected date (negative = overdue) and order value."""
    is_high_value = order_value > settings.high_value_threshold
    if days_until_expected is None:
        return "medium" if is_high_value else "low"
    if days_until_expected < 0 or (days_until_expected <= settings.priority_high_days and is_high_value):
        return "high"
    if days_until_expected <= settings.priority_medium_days or is_high_value:
        return "medium"
    return "low"


def classify_overdue_severity(days_overdue: int, order_value: Decimal, settings: Settings) -> str:
    if days_overdue > 7 or order_value > settings.critical_value_threshold:
        return "critical"
    elif days_overdue > 3 or order_value > settings.high_value_threshold:
        return "high"
    elif days_overdue > 1:
        return "medium"
    return "low"


def _expected_at(expected_date: date | None) -> datetime | None:
    return datetime.combine(expected_date, time.min) if expected_date else None


# ──────────────────────────────────────────────────────────────────────────
# Projections
# ──────────────────────────────────────────────────────────────────────────


@dataclass
class ReceivingQueueEntry:
    po_id: uuid.UUID
    po_number: str
    supplier_name: str
    status: str
    legacy_status: str
    expected_date: date | None
    days_until_expected: int | None
    is_overdue: bool
    priority: str
    total: Decimal
    total_received_items: int
    total_pending_items: int


@dataclass
class OverdueAlert:
    alert_id: str
    alert_type: str
    po_id: uuid.UUID
    po_number: str
    supplier_name: str
    severity: str
    title: str
    description: str
    days_overdue: int
    expected_date: date
    order_value: Decimal
    action_required: str
    is_acknowledged: bool = False
    acknowledged_by: str | None = None
    acknowledged_at: datetime | None = None
    notes: str | None = None


class ReceivingQueue:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        repository: PurchaseOrderRepository,
        audit_log: AuditLog,
        settings: Settings | None = None,
    ):
        self._session_factory = session_factory
        self.repository = repository
        self.audit_log = audit_log
        self.settings = settings or get_settings()

    async def _receivable_orders(self) -> list[PurchaseOrder]:
        orders = await self.repository.list_by_status(RECEIVABLE_STATUSES)
        # Nulls last, then expected date ascending
        return sorted(orders, key=lambda o: (o.expected_date is None, o.expected_date or date.max, o.po_number))

    async def list_receivable(self, now: datetime | None = None) -> list[ReceivingQueueEntry]:
        now = now or datetime.utcnow()
        entries = []
        for order in await self._receivable_orders():
            expected_at = _expected_at(order.expected_date)
            days_until = (expected_at - now) // ONE_DAY if expected_at else None
            total = Decimal(order.total or 0)
            entries.append(
                ReceivingQueueEntry(
                    po_id=order.po_id,
                    po_number=order.po_number,
                    supplier_name=order.supplier_name,
                    status=order.status,
                    legacy_status=order.legacy_status,
                    expected_date=order.expected_date,
                    days_until_expected=days_until,
                    is_overdue=expected_at is not None and expected_at < now,
                    priority=classify_priority(days_until, total, self.settings),
                    total=total,
                    total_received_items=order.total_received_items,
                    total_pending_items=order.total_pending_items,
                )
            )
        return entries

    async def list_overdue_alerts(self, now: datetime | None = None) -> list[OverdueAlert]:
        now = now or datetime.utcnow()
        acks = await self._acknowledgements()

        alerts = []
        for order in await self._receivable_orders():
            expected_at = _expected_at(order.expected_date)
            if expected_at is None or expected_at >= now:
                continue

            days_overdue = (now - expected_at).days
            order_value = Decimal(order.total or 0)
            ack = acks.get(order.po_id)
            alerts.append(
                OverdueAlert(
                    alert_id=f"alert-{order.po_id}",
                    alert_type="overdue_delivery",
                    po_id=order.po_id,
                    po_number=order.po_number,
                    supplier_name=order.supplier_name,
                    severity=classify_overdue_severity(days_overdue, order_value, self.settings),
                    title=f"Purchase Order {order.po_number} is overdue",
                    description=(
                        f"Expected delivery was {days_overdue} days ago. Supplier: {order.supplier_name}"
                    ),
                    days_overdue=days_overdue,
                    expected_date=order.expected_date,
                    order_value=order_value,
                    action_required=OVERDUE_ACTION,
                    is_acknowledged=ack is not None,
                    acknowledged_by=ack.acknowledged_by if ack else None,
                    acknowledged_at=ack.acknowledged_at if ack else None,
                    notes=ack.notes if ack else None,
                )
            )

        alerts.sort(key=lambda a: (SEVERITY_ORDER[a.severity], a.days_overdue), reverse=True)
        return alerts

    async def acknowledge_alert(
        self,
        po_id: uuid.UUID,
        user_id: str,
        notes: str | None = None,
    ) -> dict[str, Any]:
        """
        Mark the overdue alert for po_id as acknowledged.

        Idempotent: the first acknowledgement's user and timestamp are kept,
        later calls only replace the notes.
        """
        order = await self.repository.get(po_id)
        first_time = False
        async with self._session_factory() as session:
            async with session.begin():
                result = await session.execute(select(OverdueAlertAck).where(OverdueAlertAck.po_id == po_id))
                ack = result.scalar_one_or_none()
                if ack is None:
                    first_time = True
                    ack = OverdueAlertAck(
                        po_id=po_id,
                        acknowledged_by=user_id,
                        acknowledged_at=datetime.utcnow(),
                        notes=notes,
                    )
                    session.add(ack)
                elif notes is not None:
                    ack.notes = notes

        logger.info("alerts.acknowledged", po_id=str(po_id), user_id=user_id, first_time=first_time)
        if first_time:
            await self.audit_log.record(
                AuditEvent(
                    entity_type="purchase_order",
                    entity_id=str(po_id),
                    action=AuditAction.ALERT_ACKNOWLEDGED,
                    actor_id=user_id,
                    after={"alert_type": "overdue_delivery", "po_number": order.po_number},
                    reason=notes,
                )
            )

        return {
            "po_id": po_id,
            "is_acknowledged": True,
            "acknowledged_by": ack.acknowledged_by,
            "acknowledged_at": ack.acknowledged_at,
            "notes": ack.notes,
        }

    async def _acknowledgements(self) -> dict[uuid.UUID, OverdueAlertAck]:
        async with self._session_factory() as session:
            rows = (await session.execute(select(OverdueAlertAck))).scalars().all()
        return {row.po_id: row for row in rows}
