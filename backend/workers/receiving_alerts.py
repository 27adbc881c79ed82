"""
Receiving Alerts Worker — hourly overdue delivery snapshot.

Recomputes overdue alerts and logs counts per severity so dashboards and
on-call can see drift without opening the app. Never writes alert state:
the alerts endpoint recomputes from purchase orders on every request.

Schedule: crontab(minute=0) — hourly
Queue: alerts
"""

import asyncio
from collections import Counter
from datetime import datetime, timezone

import structlog

from workers.celery_app import celery_app

logger = structlog.get_logger()


async def summarize_overdue_alerts(engine, now: datetime | None = None) -> dict:
    """Severity counts for the current overdue alerts, split by acknowledgement."""
    alerts = await engine.list_overdue_alerts(now)
    by_severity = Counter(alert.severity for alert in alerts)
    return {
        "overdue_orders": len(alerts),
        "unacknowledged": sum(1 for alert in alerts if not alert.is_acknowledged),
        "by_severity": {severity: by_severity.get(severity, 0) for severity in ("critical", "high", "medium", "low")},
    }


@celery_app.task(
    name="workers.receiving_alerts.refresh_overdue_alerts",
    bind=True,
    max_retries=2,
    default_retry_delay=120,
    acks_late=True,
)
def refresh_overdue_alerts(self):
    run_id = self.request.id or "manual"
    logger.info("alerts.refresh_started", run_id=run_id)

    async def _refresh():
        from core.config import get_settings
        from db.session import build_engine, build_session_factory
        from supply_chain.engine import ReceivingEngine

        settings = get_settings()
        db_engine = build_engine(settings.database_url)
        try:
            engine = ReceivingEngine(build_session_factory(db_engine), settings=settings)
            summary = await summarize_overdue_alerts(engine)
        finally:
            await db_engine.dispose()

        summary["completed_at"] = datetime.now(timezone.utc).isoformat()
        logger.info("alerts.refreshed", run_id=run_id, **summary)
        return summary

    try:
        return asyncio.run(_refresh())
    except Exception as exc:
        logger.error("alerts.refresh_failed", error=str(exc), exc_info=True)
        raise self.retry(exc=exc)
