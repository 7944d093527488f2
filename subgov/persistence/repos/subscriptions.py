from __future__ import annotations

from datetime import datetime
from typing import Any, Iterable

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from subgov.domain.models import Subscription
from subgov.domain.state import SubscriptionState, SyncStatus


async def get_subscription(session: AsyncSession, user_id: str) -> Subscription | None:
    result = await session.execute(select(Subscription).where(Subscription.user_id == user_id))
    return result.scalar_one_or_none()


async def create_subscription(
    session: AsyncSession,
    *,
    user_id: str,
    username: str,
    email: str | None,
    external_account_id: str,
    tier_id: str,
    expiration_at: datetime,
    state: str,
    sync_status: str,
) -> Subscription:
    row = Subscription(
        user_id=user_id,
        username=username,
        email=email,
        external_account_id=external_account_id,
        tier_id=tier_id,
        expiration_at=expiration_at,
        state=state,
        sync_status=sync_status,
    )
    session.add(row)
    return row


async def transition_state(
    session: AsyncSession,
    user_id: str,
    *,
    from_states: Iterable[str],
    to_state: str,
    values: dict[str, Any] | None = None,
) -> bool:
    # Conditional update keyed by the current state; False means another writer got there first.
    expected = [getattr(state, "value", state) for state in from_states]
    result = await session.execute(
        update(Subscription)
        .where(Subscription.user_id == user_id, Subscription.state.in_(expected))
        .values(state=to_state, **(values or {}))
        .execution_options(synchronize_session=False)
    )
    return (result.rowcount or 0) == 1


async def list_expired_candidates(
    session: AsyncSession, *, now: datetime, limit: int | None = None
) -> list[Subscription]:
    # Oldest expirations first so batches drain the longest-overdue users before newer ones.
    stmt = (
        select(Subscription)
        .where(
            Subscription.expiration_at < now,
            Subscription.state == SubscriptionState.ACTIVE.value,
        )
        .order_by(Subscription.expiration_at.asc(), Subscription.user_id.asc())
    )
    if limit is not None:
        stmt = stmt.limit(limit)
    result = await session.execute(stmt)
    return list(result.scalars().all())


async def list_pending_sync(session: AsyncSession, *, limit: int | None = None) -> list[Subscription]:
    # Disabled rows whose provider account may still be enabled.
    stmt = (
        select(Subscription)
        .where(
            Subscription.state == SubscriptionState.DISABLED.value,
            Subscription.sync_status == SyncStatus.PENDING_PROVIDER_SYNC.value,
        )
        .order_by(Subscription.updated_at.asc(), Subscription.user_id.asc())
    )
    if limit is not None:
        stmt = stmt.limit(limit)
    result = await session.execute(stmt)
    return list(result.scalars().all())


async def list_active_expiring_before(session: AsyncSession, *, now: datetime, until: datetime) -> list[Subscription]:
    result = await session.execute(
        select(Subscription)
        .where(
            Subscription.state.in_([SubscriptionState.ACTIVE.value, SubscriptionState.GRACE_PERIOD.value]),
            Subscription.expiration_at > now,
            Subscription.expiration_at <= until,
        )
        .order_by(Subscription.expiration_at.asc())
    )
    return list(result.scalars().all())


async def mark_synced(session: AsyncSession, user_id: str, *, expected_state: str, now: datetime) -> bool:
    # Only clear the pending flag if nothing moved the row while the provider call was in flight.
    result = await session.execute(
        update(Subscription)
        .where(Subscription.user_id == user_id, Subscription.state == expected_state)
        .values(
            sync_status=SyncStatus.SYNCED.value,
            last_sync_at=now,
            last_sync_error=None,
        )
        .execution_options(synchronize_session=False)
    )
    return (result.rowcount or 0) == 1


async def record_sync_error(session: AsyncSession, user_id: str, *, error: str) -> None:
    await session.execute(
        update(Subscription)
        .where(Subscription.user_id == user_id)
        .values(last_sync_error=error[:1000])
        .execution_options(synchronize_session=False)
    )


async def count_by_state(session: AsyncSession) -> dict[str, int]:
    result = await session.execute(
        select(Subscription.state, func.count()).group_by(Subscription.state)
    )
    return {str(state): int(count) for state, count in result.all()}
