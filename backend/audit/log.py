"""
Audit & Activity Log — append-only history of transitions, receipts and
approval decisions.

Recording is best-effort: a failing sink never fails the caller's primary
operation. Failures are logged and counted so audit coverage
(audited events / total events) can be reported.
"""

import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Protocol

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from core.errors import AuditFailure
from db.models import AuditLogEntry

logger = structlog.get_logger()


class AuditAction:
    STATUS_TRANSITION = "status_transition"
    APPROVAL = "approval"
    REJECTION = "rejection"
    RECEIPT = "receipt"
    RECEIPT_LINE = "receipt_line"
    STATUS_CORRECTION = "status_correction"
    ALERT_ACKNOWLEDGED = "alert_acknowledged"


@dataclass
class AuditEvent:
    entity_type: str
    entity_id: str
    action: str
    actor_id: str | None = None
    actor_name: str | None = None
    before: dict[str, Any] | None = None
    after: dict[str, Any] | None = None
    reason: str | None = None
    occurred_at: datetime = field(default_factory=datetime.utcnow)


class AuditSink(Protocol):
    async def append(self, event: AuditEvent) -> None: ...


class SqlAuditSink:
    """Writes audit events to the audit_log table, one transaction per event."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    async def append(self, event: AuditEvent) -> None:
        async with self._session_factory() as session:
            async with session.begin():
                session.add(
                    AuditLogEntry(
                        entity_type=event.entity_type,
                        entity_id=str(event.entity_id),
                        action=event.action,
                        actor_id=event.actor_id,
                        actor_name=event.actor_name,
                        before=event.before,
                        after=event.after,
                        reason=event.reason,
                        created_at=event.occurred_at,
                    )
                )

    async def history(self, entity_id: str | uuid.UUID, entity_type: str | None = None) -> list[AuditLogEntry]:
        query = select(AuditLogEntry).where(AuditLogEntry.entity_id == str(entity_id))
        if entity_type:
            query = query.where(AuditLogEntry.entity_type == entity_type)
        query = query.order_by(AuditLogEntry.created_at.asc())
        async with self._session_factory() as session:
            return list((await session.execute(query)).scalars().all())


class AuditLog:
    """Best-effort front for an AuditSink with coverage accounting."""

    def __init__(self, sink: AuditSink):
        self.sink = sink
        self.total_events = 0
        self.audited_events = 0
        self.failed_events = 0
        self.last_failure: AuditFailure | None = None

    async def record(self, event: AuditEvent) -> bool:
        self.total_events += 1
        try:
            await self.sink.append(event)
        except Exception as exc:
            self.failed_events += 1
            failure = AuditFailure(
                f"Audit append failed for {event.entity_type} {event.entity_id}: {exc}",
                action=event.action,
                entity_type=event.entity_type,
                entity_id=str(event.entity_id),
            )
            self.last_failure = failure
            logger.error("audit.append_failed", **failure.as_dict())
            return False
        self.audited_events += 1
        return True

    def coverage(self) -> dict[str, Any]:
        pct = 100.0 if self.total_events == 0 else round(self.audited_events / self.total_events * 100, 2)
        return {
            "total_events": self.total_events,
            "audited_events": self.audited_events,
            "failed_events": self.failed_events,
            "coverage_pct": pct,
        }

    async def history(self, entity_id: str | uuid.UUID, entity_type: str | None = None) -> list[AuditLogEntry]:
        history = getattr(self.sink, "history", None)
        if history is None:
            return []
        return await history(entity_id, entity_type)
