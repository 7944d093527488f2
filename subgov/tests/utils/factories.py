from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from subgov.domain.models import AuditEvent, Subscription, UsageEscalation
from subgov.domain.state import SubscriptionState, SyncStatus, UsageMetric
from subgov.persistence.repos import notifications as notifications_repo
from subgov.providers.account.fake import FakeAccountProvider


EPOCH = datetime(2026, 3, 10, 12, 0, tzinfo=timezone.utc)


class Clock:
    """Controllable UTC clock; also feeds breaker and cache time sources."""

    def __init__(self, start: datetime = EPOCH) -> None:
        self.current = start
        self._origin = start

    def __call__(self) -> datetime:
        return self.current

    def monotonic(self) -> float:
        return (self.current - self._origin).total_seconds()

    def advance(self, **delta: float) -> datetime:
        self.current = self.current + timedelta(**delta)
        return self.current

    def set(self, value: datetime) -> None:
        self.current = value


class SleepRecorder:
    """Stands in for asyncio.sleep and remembers the requested delays."""

    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


async def add_subscription(
    session_factory: async_sessionmaker[AsyncSession],
    user_id: str,
    *,
    expiration_at: datetime,
    provider: FakeAccountProvider | None = None,
    state: SubscriptionState = SubscriptionState.ACTIVE,
    tier_id: str = "basic",
    email: str | None = None,
    account_id: str | None = None,
) -> Subscription:
    # Registers the account on the fake provider too, so provider calls find it.
    account_id = account_id or f"acct-{user_id}"
    if provider is not None:
        provider.accounts[account_id] = state != SubscriptionState.DISABLED
    row = Subscription(
        user_id=user_id,
        username=f"user_{user_id}",
        email=email if email is not None else f"{user_id}@example.test",
        external_account_id=account_id,
        tier_id=tier_id,
        expiration_at=expiration_at,
        state=state.value,
        sync_status=SyncStatus.SYNCED.value,
    )
    async with session_factory() as session:
        session.add(row)
        await session.commit()
    return row


async def load_subscription(session_factory: async_sessionmaker[AsyncSession], user_id: str) -> Subscription:
    async with session_factory() as session:
        row = (await session.execute(select(Subscription).where(Subscription.user_id == user_id))).scalar_one()
    return row


async def load_escalation(
    session_factory: async_sessionmaker[AsyncSession], user_id: str, metric: UsageMetric
) -> UsageEscalation | None:
    async with session_factory() as session:
        return (
            await session.execute(
                select(UsageEscalation).where(
                    UsageEscalation.user_id == user_id,
                    UsageEscalation.metric == metric.value,
                )
            )
        ).scalar_one_or_none()


async def audit_events(
    session_factory: async_sessionmaker[AsyncSession],
    *,
    action: str | None = None,
    category: str | None = "business",
) -> list[AuditEvent]:
    query = select(AuditEvent).order_by(AuditEvent.id)
    if action is not None:
        query = query.where(AuditEvent.action == action)
    if category is not None:
        query = query.where(AuditEvent.category == category)
    async with session_factory() as session:
        return list((await session.execute(query)).scalars().all())


async def set_preference(session_factory: async_sessionmaker[AsyncSession], user_id: str, **fields: Any) -> None:
    async with session_factory() as session:
        await notifications_repo.upsert_preference(session, user_id, **fields)
        await session.commit()
