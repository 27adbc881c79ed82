"""
Status transitions with persistence and audit.

execute_transition() is the single path through which a purchase order's
status changes. It checks the caller's claimed current status against the
stored one (stale-read protection), validates the edge and business rules,
writes through the repository's version check, and appends audit records.
"""

import uuid
from datetime import datetime
from typing import Any

import structlog

from audit.log import AuditAction, AuditEvent, AuditLog
from core.errors import InvalidTransition
from db.models import PurchaseOrder
from supply_chain.orders import PurchaseOrderRepository, order_snapshot
from supply_chain.state_machine import (
    POStatus,
    business_rule_violations,
    can_transition,
    coerce_status,
    valid_transitions,
)

logger = structlog.get_logger()


class PurchaseOrderStateMachine:
    def __init__(self, repository: PurchaseOrderRepository, audit_log: AuditLog):
        self.repository = repository
        self.audit_log = audit_log

    @staticmethod
    def can_transition(from_status: Any, to_status: Any) -> bool:
        return can_transition(from_status, to_status)

    async def execute_transition(
        self,
        po_id: uuid.UUID,
        from_status: Any,
        to_status: Any,
        reason: str,
        *,
        actor_id: str | None = None,
        actor_name: str | None = None,
        expected_version: int | None = None,
    ) -> PurchaseOrder:
        if not reason or not reason.strip():
            raise InvalidTransition("A reason is required for every status transition", po_id=po_id)

        source = coerce_status(from_status)
        target = coerce_status(to_status)
        if source is None or target is None:
            raise InvalidTransition(
                f"Unknown status in transition {from_status!r} -> {to_status!r}",
                po_id=po_id,
                from_status=from_status,
                to_status=to_status,
            )

        order = await self.repository.get(po_id)
        if order.status != source.value:
            raise InvalidTransition(
                f"Purchase order {order.po_number} is '{order.status}', not '{source.value}'",
                po_id=po_id,
                claimed_status=source.value,
                stored_status=order.status,
            )
        if not can_transition(source, target):
            raise InvalidTransition(
                f"Invalid transition from {source.value} to {target.value}",
                po_id=po_id,
                from_status=source.value,
                to_status=target.value,
                allowed=[s.value for s in valid_transitions(source)],
            )
        violations = business_rule_violations(order, target, actor_id)
        if violations:
            raise InvalidTransition("; ".join(violations), po_id=po_id, violations=violations)

        now = datetime.utcnow()
        patch: dict[str, Any] = {"status": target}
        if target == POStatus.APPROVED:
            patch["approved_by"] = actor_id
            patch["approved_at"] = now
        if source == POStatus.PENDING_APPROVAL and target == POStatus.CANCELLED:
            patch["rejection_reason"] = reason
        if target == POStatus.FULLY_RECEIVED and order.received_date is None:
            patch["received_date"] = now.date()

        before = order_snapshot(order)
        updated = await self.repository.update(
            po_id,
            patch,
            order.version if expected_version is None else expected_version,
        )

        logger.info(
            "state_machine.transition",
            po_id=str(po_id),
            po_number=updated.po_number,
            from_status=source.value,
            to_status=target.value,
            actor_id=actor_id,
        )

        await self.audit_log.record(
            AuditEvent(
                entity_type="purchase_order",
                entity_id=str(po_id),
                action=AuditAction.STATUS_TRANSITION,
                actor_id=actor_id,
                actor_name=actor_name,
                before=before,
                after=order_snapshot(updated),
                reason=reason,
            )
        )
        decision = _approval_decision(source, target)
        if decision is not None:
            await self.audit_log.record(
                AuditEvent(
                    entity_type="purchase_order",
                    entity_id=str(po_id),
                    action=decision,
                    actor_id=actor_id,
                    actor_name=actor_name,
                    before={"status": source.value},
                    after={"status": target.value},
                    reason=reason,
                )
            )
        return updated


def _approval_decision(source: POStatus, target: POStatus) -> str | None:
    if source != POStatus.PENDING_APPROVAL:
        return None
    if target == POStatus.APPROVED:
        return AuditAction.APPROVAL
    if target == POStatus.CANCELLED:
        return AuditAction.REJECTION
    return None
