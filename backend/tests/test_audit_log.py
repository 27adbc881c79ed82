"""
Tests for the Audit & Activity Log.
"""

import pytest
from structlog.testing import capture_logs

from audit.log import AuditAction, AuditEvent, AuditLog, SqlAuditSink
from conftest import FailingAuditSink


class RecordingSink:
    def __init__(self):
        self.events = []

    async def append(self, event):
        self.events.append(event)


def make_event(entity_id="po-1", action=AuditAction.STATUS_TRANSITION):
    return AuditEvent(
        entity_type="purchase_order",
        entity_id=entity_id,
        action=action,
        actor_id="user-1",
        before={"status": "draft"},
        after={"status": "pending_approval"},
        reason="submit",
    )


@pytest.mark.asyncio
class TestAuditLog:
    async def test_coverage_is_full_with_no_events(self):
        assert AuditLog(RecordingSink()).coverage()["coverage_pct"] == 100.0

    async def test_records_reach_the_sink(self):
        sink = RecordingSink()
        log = AuditLog(sink)

        assert await log.record(make_event()) is True
        assert len(sink.events) == 1
        assert log.coverage() == {
            "total_events": 1,
            "audited_events": 1,
            "failed_events": 0,
            "coverage_pct": 100.0,
        }

    async def test_sink_failure_is_counted_not_raised(self):
        log = AuditLog(FailingAuditSink())

        assert await log.record(make_event()) is False
        assert await log.record(make_event()) is False
        coverage = log.coverage()
        assert coverage["failed_events"] == 2
        assert coverage["coverage_pct"] == 0.0

    async def test_sink_failure_is_logged_as_audit_failure(self):
        log = AuditLog(FailingAuditSink())

        with capture_logs() as logs:
            await log.record(make_event(entity_id="po-9", action=AuditAction.RECEIPT))

        [entry] = [e for e in logs if e["event"] == "audit.append_failed"]
        assert entry["kind"] == "audit_failure"
        assert entry["details"] == {"action": "receipt", "entity_type": "purchase_order", "entity_id": "po-9"}
        assert "audit store unavailable" in entry["reason"]
        assert log.last_failure.kind == "audit_failure"

    async def test_partial_coverage(self):
        class SometimesFailingSink:
            calls = 0

            async def append(self, event):
                self.calls += 1
                if self.calls % 3 == 0:
                    raise RuntimeError("flaky")

        log = AuditLog(SometimesFailingSink())
        for _ in range(3):
            await log.record(make_event())
        assert log.coverage()["coverage_pct"] == 66.67

    async def test_history_without_queryable_sink(self):
        assert await AuditLog(RecordingSink()).history("po-1") == []


@pytest.mark.asyncio
class TestSqlAuditSink:
    async def test_history_oldest_first(self, session_factory):
        log = AuditLog(SqlAuditSink(session_factory))
        await log.record(make_event(action=AuditAction.STATUS_TRANSITION))
        await log.record(make_event(action=AuditAction.APPROVAL))
        await log.record(make_event(entity_id="po-2"))

        history = await log.history("po-1")
        assert [entry.action for entry in history] == ["status_transition", "approval"]
        assert history[0].before == {"status": "draft"}
        assert history[0].reason == "submit"

    async def test_history_filtered_by_entity_type(self, session_factory):
        log = AuditLog(SqlAuditSink(session_factory))
        await log.record(make_event())
        assert await log.history("po-1", entity_type="purchase_order_line") == []
