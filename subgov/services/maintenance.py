from __future__ import annotations

from datetime import datetime, timedelta, timezone

from sqlalchemy import delete
from sqlalchemy.ext.asyncio import AsyncSession

from subgov.core.config import get_settings
from subgov.domain.models import AuditEvent, NotificationDelivery, ScheduledNotification, UsageHistory
from subgov.domain.state import NotificationStatus


async def prune_audit_events(session: AsyncSession, *, now: datetime | None = None) -> int:
    # Remove audit events beyond the retention window.
    settings = get_settings()
    cutoff = (now or datetime.now(timezone.utc)) - timedelta(days=settings.audit_retention_days)
    result = await session.execute(delete(AuditEvent).where(AuditEvent.occurred_at < cutoff))
    return result.rowcount or 0


async def prune_usage_history(session: AsyncSession, *, now: datetime | None = None) -> int:
    settings = get_settings()
    cutoff = (now or datetime.now(timezone.utc)) - timedelta(days=settings.usage_history_retention_days)
    result = await session.execute(delete(UsageHistory).where(UsageHistory.recorded_at < cutoff))
    return result.rowcount or 0


async def prune_notification_history(session: AsyncSession, *, now: datetime | None = None) -> int:
    # Keep pending entries; only terminal rows and old delivery logs are dropped.
    settings = get_settings()
    cutoff = (now or datetime.now(timezone.utc)) - timedelta(days=settings.audit_retention_days)
    terminal = (
        NotificationStatus.SENT.value,
        NotificationStatus.FAILED.value,
        NotificationStatus.SKIPPED.value,
    )
    scheduled = await session.execute(
        delete(ScheduledNotification).where(
            ScheduledNotification.status.in_(terminal),
            ScheduledNotification.due_at < cutoff,
        )
    )
    deliveries = await session.execute(delete(NotificationDelivery).where(NotificationDelivery.delivered_at < cutoff))
    return int(scheduled.rowcount or 0) + int(deliveries.rowcount or 0)

