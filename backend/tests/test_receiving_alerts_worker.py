"""
Tests for the hourly overdue alert snapshot worker.
"""

from datetime import date, datetime, timedelta

import pytest

from workers.celery_app import celery_app
from workers.receiving_alerts import summarize_overdue_alerts


def test_refresh_task_is_registered_and_scheduled():
    assert "workers.receiving_alerts.refresh_overdue_alerts" in celery_app.tasks
    schedule = celery_app.conf.beat_schedule["refresh-overdue-alerts-hourly"]
    assert schedule["task"] == "workers.receiving_alerts.refresh_overdue_alerts"
    assert schedule["options"]["queue"] == "alerts"


@pytest.mark.asyncio
class TestSummarizeOverdueAlerts:
    async def test_empty(self, engine, catalog):
        summary = await summarize_overdue_alerts(engine)
        assert summary == {
            "overdue_orders": 0,
            "unacknowledged": 0,
            "by_severity": {"critical": 0, "high": 0, "medium": 0, "low": 0},
        }

    async def test_counts_by_severity_and_acknowledgement(self, engine, catalog):
        product_id = str(catalog["product_a"].product_id)
        po_ids = []
        for days_late in (10, 5):
            order = await engine.create_purchase_order(
                [{"product_id": product_id, "quantity": 2, "cost": "10.00"}],
                supplier_id=catalog["supplier"].supplier_id,
                expected_date=date.today() - timedelta(days=days_late),
            )
            await engine.submit_for_approval(order.po_id, "buyer-1")
            await engine.approve(order.po_id, "manager-1")
            po_ids.append(order.po_id)

        await engine.acknowledge_alert(po_ids[0], "manager-1")
        summary = await summarize_overdue_alerts(engine, now=datetime.utcnow())

        assert summary["overdue_orders"] == 2
        assert summary["unacknowledged"] == 1
        assert summary["by_severity"]["critical"] == 1
        assert summary["by_severity"]["high"] == 1
