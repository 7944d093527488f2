from __future__ import annotations

from datetime import datetime
from typing import Any
from uuid import uuid4

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from subgov.domain.models import NotificationDelivery, NotificationPreference, ScheduledNotification
from subgov.domain.state import NotificationStatus


async def get_preference(session: AsyncSession, user_id: str) -> NotificationPreference | None:
    result = await session.execute(
        select(NotificationPreference).where(NotificationPreference.user_id == user_id)
    )
    return result.scalar_one_or_none()


async def upsert_preference(session: AsyncSession, user_id: str, **fields: Any) -> NotificationPreference:
    row = await get_preference(session, user_id)
    if row is None:
        row = NotificationPreference(user_id=user_id, **fields)
        session.add(row)
    else:
        for key, value in fields.items():
            setattr(row, key, value)
    await session.flush()
    return row


async def delivered_since(session: AsyncSession, *, user_id: str, kind: str, since: datetime) -> bool:
    # Only successful deliveries count toward the dedup window.
    result = await session.execute(
        select(NotificationDelivery.id)
        .where(
            NotificationDelivery.user_id == user_id,
            NotificationDelivery.kind == kind,
            NotificationDelivery.success.is_(True),
            NotificationDelivery.delivered_at >= since,
        )
        .limit(1)
    )
    return result.scalar_one_or_none() is not None


async def add_delivery(
    session: AsyncSession,
    *,
    user_id: str,
    kind: str,
    channel: str,
    success: bool,
    error: str | None,
    delivered_at: datetime,
) -> NotificationDelivery:
    row = NotificationDelivery(
        user_id=user_id,
        kind=kind,
        channel=channel,
        success=success,
        error=error,
        delivered_at=delivered_at,
    )
    session.add(row)
    return row


async def find_pending(session: AsyncSession, *, user_id: str, kind: str) -> ScheduledNotification | None:
    result = await session.execute(
        select(ScheduledNotification)
        .where(
            ScheduledNotification.user_id == user_id,
            ScheduledNotification.kind == kind,
            ScheduledNotification.status == NotificationStatus.PENDING.value,
        )
        .order_by(ScheduledNotification.due_at.asc())
        .limit(1)
    )
    return result.scalar_one_or_none()


async def create_scheduled(
    session: AsyncSession,
    *,
    user_id: str,
    kind: str,
    due_at: datetime,
    payload: dict[str, Any] | None,
) -> ScheduledNotification:
    row = ScheduledNotification(
        id=uuid4().hex,
        user_id=user_id,
        kind=kind,
        due_at=due_at,
        payload=payload,
        status=NotificationStatus.PENDING.value,
    )
    session.add(row)
    return row


async def list_due(session: AsyncSession, *, now: datetime, limit: int) -> list[ScheduledNotification]:
    result = await session.execute(
        select(ScheduledNotification)
        .where(
            ScheduledNotification.status == NotificationStatus.PENDING.value,
            ScheduledNotification.due_at <= now,
        )
        .order_by(ScheduledNotification.due_at.asc(), ScheduledNotification.id.asc())
        .limit(limit)
    )
    return list(result.scalars().all())


async def finish_scheduled(
    session: AsyncSession,
    notification_id: str,
    *,
    status: NotificationStatus,
    attempted_at: datetime,
    error: str | None = None,
) -> bool:
    # Pending -> terminal exactly once, even when two drains pick up the same row.
    result = await session.execute(
        update(ScheduledNotification)
        .where(
            ScheduledNotification.id == notification_id,
            ScheduledNotification.status == NotificationStatus.PENDING.value,
        )
        .values(status=status.value, attempted_at=attempted_at, last_error=error)
        .execution_options(synchronize_session=False)
    )
    return (result.rowcount or 0) == 1


async def count_by_status(session: AsyncSession) -> dict[str, int]:
    result = await session.execute(
        select(ScheduledNotification.status, func.count()).group_by(ScheduledNotification.status)
    )
    return {str(status): int(count) for status, count in result.all()}


async def reschedule(session: AsyncSession, notification_id: str, *, due_at: datetime) -> bool:
    result = await session.execute(
        update(ScheduledNotification)
        .where(
            ScheduledNotification.id == notification_id,
            ScheduledNotification.status == NotificationStatus.PENDING.value,
        )
        .values(due_at=due_at)
        .execution_options(synchronize_session=False)
    )
    return (result.rowcount or 0) == 1
