from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import case, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from subgov.domain.models import TierLimit, UsageCounter, UsageEscalation, UsageHistory
from subgov.domain.state import EscalationState, TierLimits, UsageMetric


# Counter column backing each metric.
METRIC_COLUMNS: dict[UsageMetric, str] = {
    UsageMetric.STORAGE: "storage_bytes",
    UsageMetric.STREAMS: "active_streams",
    UsageMetric.CONCURRENT_SESSIONS: "concurrent_sessions",
    UsageMetric.API_CALLS: "api_calls_in_window",
}


def counter_value(counter: UsageCounter, metric: UsageMetric) -> int:
    return int(getattr(counter, METRIC_COLUMNS[metric]) or 0)


async def get_tier_limits(session: AsyncSession, tier_id: str) -> TierLimits | None:
    row = (await session.execute(select(TierLimit).where(TierLimit.tier_id == tier_id))).scalar_one_or_none()
    if row is None:
        return None
    return TierLimits(
        tier_id=row.tier_id,
        storage_cap=int(row.storage_cap),
        stream_cap=int(row.stream_cap),
        concurrent_session_cap=int(row.concurrent_session_cap),
        api_call_cap=int(row.api_call_cap),
        window_duration_s=int(row.window_duration_s),
        grace_duration_s=int(row.grace_duration_s),
        throttle_delay_ms=int(row.throttle_delay_ms),
    )


async def get_counter(session: AsyncSession, user_id: str) -> UsageCounter | None:
    result = await session.execute(select(UsageCounter).where(UsageCounter.user_id == user_id))
    return result.scalar_one_or_none()


async def ensure_counter(session: AsyncSession, user_id: str, *, now: datetime) -> UsageCounter:
    # Create the zeroed row on first use; callers serialize per user.
    existing = await get_counter(session, user_id)
    if existing is not None:
        return existing
    row = UsageCounter(
        user_id=user_id,
        storage_bytes=0,
        active_streams=0,
        concurrent_sessions=0,
        api_calls_in_window=0,
        window_started_at=now,
    )
    session.add(row)
    await session.flush()
    return row


async def apply_delta(session: AsyncSession, user_id: str, metric: UsageMetric, delta: int) -> int:
    # Single atomic increment floored at zero; returns the new counter value.
    column = getattr(UsageCounter, METRIC_COLUMNS[metric])
    await session.execute(
        update(UsageCounter)
        .where(UsageCounter.user_id == user_id)
        .values({METRIC_COLUMNS[metric]: case((column + delta < 0, 0), else_=column + delta)})
        .execution_options(synchronize_session=False)
    )
    value = (await session.execute(select(column).where(UsageCounter.user_id == user_id))).scalar_one()
    return int(value or 0)


async def reset_api_window(
    session: AsyncSession, user_id: str, *, previous_start: datetime, now: datetime
) -> bool:
    # Conditional on the observed window start so two resetters cannot both zero the counter.
    result = await session.execute(
        update(UsageCounter)
        .where(UsageCounter.user_id == user_id, UsageCounter.window_started_at == previous_start)
        .values(api_calls_in_window=0, window_started_at=now)
        .execution_options(synchronize_session=False)
    )
    return (result.rowcount or 0) == 1


async def append_history(
    session: AsyncSession,
    *,
    user_id: str,
    metric: str,
    delta: int,
    value_after: int,
    recorded_at: datetime,
    details: dict[str, Any] | None = None,
) -> UsageHistory:
    row = UsageHistory(
        user_id=user_id,
        metric=metric,
        delta=delta,
        value_after=value_after,
        recorded_at=recorded_at,
        details=details,
    )
    session.add(row)
    return row


async def list_history(session: AsyncSession, user_id: str, *, since: datetime) -> list[UsageHistory]:
    result = await session.execute(
        select(UsageHistory)
        .where(UsageHistory.user_id == user_id, UsageHistory.recorded_at >= since)
        .order_by(UsageHistory.recorded_at.asc(), UsageHistory.id.asc())
    )
    return list(result.scalars().all())


async def list_counter_user_ids(session: AsyncSession) -> list[str]:
    result = await session.execute(select(UsageCounter.user_id).order_by(UsageCounter.user_id))
    return [str(user_id) for user_id in result.scalars().all()]


async def get_escalations(session: AsyncSession, user_id: str) -> dict[UsageMetric, UsageEscalation]:
    result = await session.execute(select(UsageEscalation).where(UsageEscalation.user_id == user_id))
    rows: dict[UsageMetric, UsageEscalation] = {}
    for row in result.scalars().all():
        rows[UsageMetric(row.metric)] = row
    return rows


async def set_escalation(
    session: AsyncSession,
    *,
    user_id: str,
    metric: UsageMetric,
    state: EscalationState,
    grace_ends_at: datetime | None,
) -> UsageEscalation:
    row = (
        await session.execute(
            select(UsageEscalation).where(
                UsageEscalation.user_id == user_id,
                UsageEscalation.metric == metric.value,
            )
        )
    ).scalar_one_or_none()
    if row is None:
        row = UsageEscalation(user_id=user_id, metric=metric.value, state=state.value, grace_ends_at=grace_ends_at)
        session.add(row)
    else:
        row.state = state.value
        row.grace_ends_at = grace_ends_at
    await session.flush()
    return row


async def list_expired_graces(session: AsyncSession, *, now: datetime) -> list[UsageEscalation]:
    result = await session.execute(
        select(UsageEscalation)
        .where(
            UsageEscalation.state == EscalationState.GRACE_PERIOD.value,
            UsageEscalation.grace_ends_at.is_not(None),
            UsageEscalation.grace_ends_at <= now,
        )
        .order_by(UsageEscalation.grace_ends_at.asc())
    )
    return list(result.scalars().all())


async def count_open_graces(session: AsyncSession, user_id: str) -> int:
    result = await session.execute(
        select(UsageEscalation.metric).where(
            UsageEscalation.user_id == user_id,
            UsageEscalation.state == EscalationState.GRACE_PERIOD.value,
        )
    )
    return len(result.scalars().all())


async def cancel_grace_timers(session: AsyncSession, user_id: str) -> int:
    # A disabled subscription keeps no running grace timers; open graces fall back to warned.
    result = await session.execute(
        update(UsageEscalation)
        .where(
            UsageEscalation.user_id == user_id,
            UsageEscalation.state == EscalationState.GRACE_PERIOD.value,
        )
        .values(state=EscalationState.WARNED.value, grace_ends_at=None)
        .execution_options(synchronize_session=False)
    )
    return int(result.rowcount or 0)
