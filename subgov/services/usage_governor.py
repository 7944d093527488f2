from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timedelta
import logging
from typing import Any, Awaitable, Callable

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from subgov.core.config import get_settings
from subgov.core.errors import ProviderError
from subgov.domain.state import (
    DEFAULT_TIER_LIMITS,
    PENDING_ACCOUNT_PREFIX,
    EscalationState,
    NotificationKind,
    SubscriptionState,
    SyncStatus,
    TierLimits,
    UsageMetric,
    as_utc,
    utc_now,
)
from subgov.persistence.repos import subscriptions as subscriptions_repo
from subgov.persistence.repos import usage as usage_repo
from subgov.services.audit import record_event
from subgov.services.locks import KeyedLock
from subgov.services.notification_scheduler import NotificationScheduler
from subgov.services.provider_client import ProviderClient
from subgov.services.resilience import TtlCache
from subgov.services.telemetry import increment_counter


logger = logging.getLogger(__name__)

ACTOR = "usage_governor"
API_RESET_METRIC = "api_reset"


@dataclass
class UsageSnapshot:
    user_id: str
    tier_id: str
    values: dict[UsageMetric, int]
    window_started_at: datetime

    def value(self, metric: UsageMetric) -> int:
        return int(self.values.get(metric, 0))


@dataclass(frozen=True)
class LimitDecision:
    allowed: bool
    metric: UsageMetric
    current: int
    requested: int
    limit: int
    reason: str | None = None

    @property
    def percentage(self) -> float:
        # Display value only; counters themselves are never clamped.
        return usage_percentage(self.current, self.limit)


@dataclass(frozen=True)
class Alert:
    metric: UsageMetric
    current: int
    limit: int
    percentage: float
    threshold: float


@dataclass
class SweepResult:
    examined: int = 0
    restricted: int = 0
    recovered: int = 0
    provider_failures: int = 0
    errors: list[str] = field(default_factory=list)

    def as_dict(self) -> dict[str, Any]:
        return {
            "examined": self.examined,
            "restricted": self.restricted,
            "recovered": self.recovered,
            "provider_failures": self.provider_failures,
            "errors": self.errors[:5],
        }


def usage_percentage(current: int, limit: int) -> float:
    if limit <= 0:
        return 100.0 if current > 0 else 0.0
    return min(100.0, (current / limit) * 100.0)


def _zero_values() -> dict[UsageMetric, int]:
    return {metric: 0 for metric in UsageMetric}


class UsageGovernor:
    """Per-user usage accounting, limit decisions and the overage escalation state machine."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        provider_client: ProviderClient,
        notifier: NotificationScheduler | None = None,
        *,
        threshold_pct: float | None = None,
        cache_ttl_s: float | None = None,
        default_tier_id: str | None = None,
        time_provider: Callable[[], datetime] | None = None,
        sleep: Callable[[float], Awaitable[Any]] | None = None,
    ) -> None:
        settings = get_settings()
        self._session_factory = session_factory
        self._provider = provider_client
        self._notifier = notifier
        self._threshold_pct = threshold_pct if threshold_pct is not None else settings.usage_threshold_pct
        ttl = cache_ttl_s if cache_ttl_s is not None else settings.usage_cache_ttl_s
        self._default_tier_id = default_tier_id or settings.default_tier_id
        self._now = time_provider or utc_now
        self._sleep = sleep or asyncio.sleep
        self._locks = KeyedLock()
        self._tier_cache: TtlCache[str, TierLimits] = TtlCache(ttl)
        self._usage_cache: TtlCache[str, UsageSnapshot] = TtlCache(ttl)
        self._restriction_cache: TtlCache[str, bool] = TtlCache(ttl)
        # Users whose counters could not be persisted; tracked in memory for the rest of the process.
        self._degraded: dict[str, UsageSnapshot] = {}

    def is_degraded(self, user_id: str) -> bool:
        return user_id in self._degraded

    async def _tier_limits(self, tier_id: str) -> TierLimits:
        async def _compute() -> TierLimits:
            try:
                async with self._session_factory() as session:
                    limits = await usage_repo.get_tier_limits(session, tier_id)
            except SQLAlchemyError as exc:
                logger.warning("tier_limits_lookup_failed tier_id=%s", tier_id, exc_info=exc)
                limits = None
            if limits is not None:
                return limits
            if tier_id not in DEFAULT_TIER_LIMITS:
                logger.warning("tier_limits_unknown tier_id=%s fallback=%s", tier_id, self._default_tier_id)
            return DEFAULT_TIER_LIMITS.get(tier_id) or DEFAULT_TIER_LIMITS[self._default_tier_id]

        return await self._tier_cache.get_or_compute(tier_id, _compute)

    async def _load_snapshot(self, user_id: str) -> UsageSnapshot:
        async with self._session_factory() as session:
            subscription = await subscriptions_repo.get_subscription(session, user_id)
            counter = await usage_repo.get_counter(session, user_id)
        tier_id = subscription.tier_id if subscription is not None else self._default_tier_id
        if counter is None:
            return UsageSnapshot(user_id, tier_id, _zero_values(), self._now())
        values = {metric: usage_repo.counter_value(counter, metric) for metric in UsageMetric}
        window_started_at = as_utc(counter.window_started_at) or self._now()
        return UsageSnapshot(user_id, tier_id, values, window_started_at)

    async def usage_snapshot(self, user_id: str) -> UsageSnapshot:
        if user_id in self._degraded:
            return self._degraded[user_id]
        try:
            return await self._usage_cache.get_or_compute(user_id, lambda: self._load_snapshot(user_id))
        except SQLAlchemyError as exc:
            # A read failure must never turn into a denial; continue from memory.
            logger.warning("usage_snapshot_failed user_id=%s degrading=in_memory", user_id, exc_info=exc)
            return self._degrade(user_id)

    def _degrade(self, user_id: str) -> UsageSnapshot:
        snapshot = self._degraded.get(user_id)
        if snapshot is not None:
            return snapshot
        cached = self._usage_cache.get(user_id)
        if cached is not None:
            snapshot = UsageSnapshot(user_id, cached.tier_id, dict(cached.values), cached.window_started_at)
        else:
            snapshot = UsageSnapshot(user_id, self._default_tier_id, _zero_values(), self._now())
        self._degraded[user_id] = snapshot
        increment_counter("usage_degraded_users_total")
        return snapshot

    def _window_expired(self, window_started_at: datetime, limits: TierLimits, now: datetime) -> bool:
        return now - window_started_at >= limits.window_duration

    def _current_value(self, snapshot: UsageSnapshot, metric: UsageMetric, limits: TierLimits) -> int:
        # An elapsed API window counts as empty even before the next write resets it.
        if metric == UsageMetric.API_CALLS and self._window_expired(snapshot.window_started_at, limits, self._now()):
            return 0
        return snapshot.value(metric)

    def _track_in_memory(self, snapshot: UsageSnapshot, metric: UsageMetric, delta: int, limits: TierLimits) -> int:
        now = self._now()
        if metric == UsageMetric.API_CALLS and self._window_expired(snapshot.window_started_at, limits, now):
            snapshot.values[UsageMetric.API_CALLS] = 0
            snapshot.window_started_at = now
        value = max(0, snapshot.value(metric) + delta)
        snapshot.values[metric] = value
        return value

    async def track_usage(
        self,
        user_id: str,
        metric: UsageMetric | str,
        delta: int = 1,
        *,
        details: dict[str, Any] | None = None,
    ) -> UsageSnapshot:
        """Apply ``delta`` to one counter and append a history point; returns the updated counters."""
        metric = UsageMetric(metric)
        async with self._locks.hold(user_id):
            snapshot = await self.usage_snapshot(user_id)
            limits = await self._tier_limits(snapshot.tier_id)
            if user_id in self._degraded:
                value = self._track_in_memory(self._degraded[user_id], metric, delta, limits)
            else:
                try:
                    value = await self._track_persisted(user_id, metric, delta, limits, details)
                except SQLAlchemyError as exc:
                    logger.warning(
                        "usage_persist_failed user_id=%s metric=%s degrading=in_memory",
                        user_id,
                        metric.value,
                        exc_info=exc,
                    )
                    value = self._track_in_memory(self._degrade(user_id), metric, delta, limits)
                finally:
                    self._usage_cache.invalidate(user_id)
            if delta < 0 and value < limits.cap_for(metric):
                await self._recover_if_in_grace(user_id, metric, value)
            return await self.usage_snapshot(user_id)

    async def _track_persisted(
        self,
        user_id: str,
        metric: UsageMetric,
        delta: int,
        limits: TierLimits,
        details: dict[str, Any] | None,
    ) -> int:
        now = self._now()
        async with self._session_factory() as session:
            counter = await usage_repo.ensure_counter(session, user_id, now=now)
            window_started_at = as_utc(counter.window_started_at) or now
            if metric == UsageMetric.API_CALLS and self._window_expired(window_started_at, limits, now):
                previous = usage_repo.counter_value(counter, UsageMetric.API_CALLS)
                if await usage_repo.reset_api_window(
                    session, user_id, previous_start=counter.window_started_at, now=now
                ):
                    await usage_repo.append_history(
                        session,
                        user_id=user_id,
                        metric=API_RESET_METRIC,
                        delta=-previous,
                        value_after=0,
                        recorded_at=now,
                    )
            value = await usage_repo.apply_delta(session, user_id, metric, delta)
            await usage_repo.append_history(
                session,
                user_id=user_id,
                metric=metric.value,
                delta=delta,
                value_after=value,
                recorded_at=now,
                details=details,
            )
            await session.commit()
        return value

    async def check_limit(self, user_id: str, metric: UsageMetric | str, requested: int = 0) -> LimitDecision:
        """Deny when ``current + requested`` would exceed the tier cap; a denial starts the grace period."""
        metric = UsageMetric(metric)
        snapshot = await self.usage_snapshot(user_id)
        limits = await self._tier_limits(snapshot.tier_id)
        current = self._current_value(snapshot, metric, limits)
        cap = limits.cap_for(metric)
        if current + requested <= cap:
            return LimitDecision(True, metric, current, requested, cap)
        decision = LimitDecision(
            False,
            metric,
            current,
            requested,
            cap,
            reason=f"{metric.value} limit exceeded ({current}+{requested} > {cap})",
        )
        increment_counter(f"usage_denied_total.{metric.value}")
        await self._enter_grace(user_id, metric, current, limits)
        return decision

    async def check_threshold(self, user_id: str, threshold_pct: float | None = None) -> list[Alert]:
        """Alert on every metric at or above the threshold; never denies anything."""
        threshold = self._threshold_pct if threshold_pct is None else threshold_pct
        snapshot = await self.usage_snapshot(user_id)
        limits = await self._tier_limits(snapshot.tier_id)
        alerts: list[Alert] = []
        for metric in UsageMetric:
            cap = limits.cap_for(metric)
            current = self._current_value(snapshot, metric, limits)
            percentage = usage_percentage(current, cap)
            if percentage >= threshold:
                alerts.append(Alert(metric, current, cap, percentage, threshold))
        if not alerts:
            return alerts
        await self._mark_warned(user_id, [alert.metric for alert in alerts])
        if self._notifier is not None:
            await self._notifier.notify(
                user_id,
                NotificationKind.USAGE_ALERT.value,
                {
                    "alerts": [
                        {
                            "metric": alert.metric.value,
                            "current": alert.current,
                            "limit": alert.limit,
                            "percentage": round(alert.percentage, 1),
                        }
                        for alert in alerts
                    ],
                    "threshold": threshold,
                },
            )
        return alerts

    async def _mark_warned(self, user_id: str, metrics: list[UsageMetric]) -> None:
        async with self._locks.hold(user_id):
            try:
                async with self._session_factory() as session:
                    escalations = await usage_repo.get_escalations(session, user_id)
                    changed = False
                    for metric in metrics:
                        row = escalations.get(metric)
                        if row is not None and row.state != EscalationState.NORMAL.value:
                            continue
                        await usage_repo.set_escalation(
                            session,
                            user_id=user_id,
                            metric=metric,
                            state=EscalationState.WARNED,
                            grace_ends_at=None,
                        )
                        changed = True
                    if changed:
                        await session.commit()
            except SQLAlchemyError as exc:
                logger.warning("usage_escalation_write_failed user_id=%s", user_id, exc_info=exc)

    async def _enter_grace(self, user_id: str, metric: UsageMetric, current: int, limits: TierLimits) -> None:
        now = self._now()
        grace_ends_at = now + limits.grace_duration
        async with self._locks.hold(user_id):
            try:
                async with self._session_factory() as session:
                    subscription = await subscriptions_repo.get_subscription(session, user_id)
                    if subscription is None or subscription.state not in (
                        SubscriptionState.ACTIVE.value,
                        SubscriptionState.GRACE_PERIOD.value,
                    ):
                        # Disabled and unprovisioned subscriptions never carry a grace timer.
                        return
                    escalations = await usage_repo.get_escalations(session, user_id)
                    row = escalations.get(metric)
                    if row is not None and row.state in (
                        EscalationState.GRACE_PERIOD.value,
                        EscalationState.RESTRICTED.value,
                    ):
                        # Timer already running (or expired into restriction); do not restart it.
                        return
                    await usage_repo.set_escalation(
                        session,
                        user_id=user_id,
                        metric=metric,
                        state=EscalationState.GRACE_PERIOD,
                        grace_ends_at=grace_ends_at,
                    )
                    await subscriptions_repo.transition_state(
                        session,
                        user_id,
                        from_states=[SubscriptionState.ACTIVE],
                        to_state=SubscriptionState.GRACE_PERIOD.value,
                    )
                    await record_event(
                        session=session,
                        actor=ACTOR,
                        action="usage.grace_started",
                        subject_user_id=user_id,
                        details={
                            "metric": metric.value,
                            "current": current,
                            "limit": limits.cap_for(metric),
                            "grace_ends_at": grace_ends_at,
                        },
                    )
                    await session.commit()
            except SQLAlchemyError as exc:
                logger.warning("usage_grace_start_failed user_id=%s metric=%s", user_id, metric.value, exc_info=exc)
                return
        logger.info(
            "usage_grace_started user_id=%s metric=%s grace_ends_at=%s",
            user_id,
            metric.value,
            grace_ends_at.isoformat(),
        )
        if self._notifier is not None:
            await self._notifier.notify(
                user_id,
                NotificationKind.LIMIT_EXCEEDED.value,
                {
                    "metric": metric.value,
                    "current": current,
                    "limit": limits.cap_for(metric),
                    "grace_ends_at": grace_ends_at.isoformat(),
                },
            )

    async def _recover(self, session: AsyncSession, user_id: str, metric: UsageMetric, current: int) -> None:
        await usage_repo.set_escalation(
            session,
            user_id=user_id,
            metric=metric,
            state=EscalationState.NORMAL,
            grace_ends_at=None,
        )
        if await usage_repo.count_open_graces(session, user_id) == 0:
            await subscriptions_repo.transition_state(
                session,
                user_id,
                from_states=[SubscriptionState.GRACE_PERIOD],
                to_state=SubscriptionState.ACTIVE.value,
            )
        await record_event(
            session=session,
            actor=ACTOR,
            action="usage.recovered",
            subject_user_id=user_id,
            details={"metric": metric.value, "current": current},
        )
        logger.info("usage_recovered user_id=%s metric=%s current=%s", user_id, metric.value, current)

    async def _recover_if_in_grace(self, user_id: str, metric: UsageMetric, current: int) -> None:
        # Caller holds the per-user lock.
        if user_id in self._degraded:
            return
        try:
            async with self._session_factory() as session:
                row = (await usage_repo.get_escalations(session, user_id)).get(metric)
                if row is None or row.state != EscalationState.GRACE_PERIOD.value:
                    return
                await self._recover(session, user_id, metric, current)
                await session.commit()
        except SQLAlchemyError as exc:
            logger.warning("usage_recovery_failed user_id=%s metric=%s", user_id, metric.value, exc_info=exc)

    async def sweep_grace_periods(self) -> SweepResult:
        """Restrict users whose grace elapsed while still over the cap; recover the rest."""
        now = self._now()
        result = SweepResult()
        async with self._session_factory() as session:
            rows = await usage_repo.list_expired_graces(session, now=now)
            expired = [(row.user_id, UsageMetric(row.metric)) for row in rows]
        for user_id, metric in expired:
            result.examined += 1
            try:
                await self._resolve_grace(user_id, metric, result)
            except SQLAlchemyError as exc:
                logger.warning("usage_grace_sweep_item_failed user_id=%s metric=%s", user_id, metric.value, exc_info=exc)
                result.errors.append(f"{user_id}:{metric.value}:{exc.__class__.__name__}")
        if result.examined:
            logger.info("usage_grace_sweep_completed %s", result.as_dict())
        return result

    async def _resolve_grace(self, user_id: str, metric: UsageMetric, result: SweepResult) -> None:
        now = self._now()
        disable_account_id: str | None = None
        async with self._locks.hold(user_id):
            self._usage_cache.invalidate(user_id)
            snapshot = await self.usage_snapshot(user_id)
            limits = await self._tier_limits(snapshot.tier_id)
            current = self._current_value(snapshot, metric, limits)
            cap = limits.cap_for(metric)
            async with self._session_factory() as session:
                row = (await usage_repo.get_escalations(session, user_id)).get(metric)
                grace_ends_at = as_utc(row.grace_ends_at) if row is not None else None
                if row is None or row.state != EscalationState.GRACE_PERIOD.value:
                    return
                if grace_ends_at is None or grace_ends_at > now:
                    return
                if current <= cap:
                    await self._recover(session, user_id, metric, current)
                    await session.commit()
                    result.recovered += 1
                    return
                await usage_repo.set_escalation(
                    session,
                    user_id=user_id,
                    metric=metric,
                    state=EscalationState.RESTRICTED,
                    grace_ends_at=None,
                )
                subscription = await subscriptions_repo.get_subscription(session, user_id)
                moved = await subscriptions_repo.transition_state(
                    session,
                    user_id,
                    from_states=[SubscriptionState.ACTIVE, SubscriptionState.GRACE_PERIOD],
                    to_state=SubscriptionState.DISABLED.value,
                    values={
                        "sync_status": SyncStatus.PENDING_PROVIDER_SYNC.value,
                        "disable_reason": f"usage_limit:{metric.value}",
                    },
                )
                # Disabled subscriptions keep no grace timers running.
                await usage_repo.cancel_grace_timers(session, user_id)
                await record_event(
                    session=session,
                    actor=ACTOR,
                    action="usage.restricted",
                    subject_user_id=user_id,
                    details={"metric": metric.value, "current": current, "limit": cap, "subscription_disabled": moved},
                )
                await session.commit()
                if moved and subscription is not None:
                    disable_account_id = subscription.external_account_id
            self._restriction_cache.invalidate(user_id)
        result.restricted += 1
        logger.warning("usage_restricted user_id=%s metric=%s current=%s limit=%s", user_id, metric.value, current, cap)
        if disable_account_id is not None:
            await self._disable_on_provider(user_id, disable_account_id, result)
        if self._notifier is not None:
            await self._notifier.notify(
                user_id,
                NotificationKind.ACCOUNT_RESTRICTED.value,
                {"metric": metric.value, "current": current, "limit": cap},
            )

    async def _disable_on_provider(self, user_id: str, account_id: str, result: SweepResult) -> None:
        # Placeholder ids never reached the provider; the sync task picks them up once created.
        if account_id.startswith(PENDING_ACCOUNT_PREFIX):
            return
        try:
            await self._provider.disable_account(account_id)
        except ProviderError as exc:
            result.provider_failures += 1
            async with self._session_factory() as session:
                await subscriptions_repo.record_sync_error(session, user_id, error=f"{exc.code}: {exc}")
                await session.commit()
            logger.warning("usage_restrict_provider_failed user_id=%s error=%s", user_id, exc.code)
            return
        async with self._session_factory() as session:
            await subscriptions_repo.mark_synced(
                session, user_id, expected_state=SubscriptionState.DISABLED.value, now=self._now()
            )
            await session.commit()

    async def sweep_thresholds(self) -> dict[str, int]:
        async with self._session_factory() as session:
            user_ids = await usage_repo.list_counter_user_ids(session)
        alerted = 0
        for user_id in user_ids:
            if await self.check_threshold(user_id):
                alerted += 1
        logger.info("usage_threshold_sweep_completed users=%s alerted=%s", len(user_ids), alerted)
        return {"users": len(user_ids), "alerted": alerted}

    async def is_restricted(self, user_id: str) -> bool:
        async def _compute() -> bool:
            try:
                async with self._session_factory() as session:
                    escalations = await usage_repo.get_escalations(session, user_id)
            except SQLAlchemyError as exc:
                logger.warning("usage_restriction_lookup_failed user_id=%s", user_id, exc_info=exc)
                return False
            return any(row.state == EscalationState.RESTRICTED.value for row in escalations.values())

        return await self._restriction_cache.get_or_compute(user_id, _compute)

    async def throttle(self, user_id: str) -> float:
        """Delay the caller by the tier's throttle delay while the user is restricted."""
        if not await self.is_restricted(user_id):
            return 0.0
        snapshot = await self.usage_snapshot(user_id)
        limits = await self._tier_limits(snapshot.tier_id)
        delay = limits.throttle_delay_s
        increment_counter("usage_throttled_total")
        await self._sleep(delay)
        return delay

    async def reset_escalations(self, session: AsyncSession, user_id: str) -> None:
        # Used by renewals; the caller commits.
        escalations = await usage_repo.get_escalations(session, user_id)
        for metric in escalations:
            await usage_repo.set_escalation(
                session,
                user_id=user_id,
                metric=metric,
                state=EscalationState.NORMAL,
                grace_ends_at=None,
            )
        self._restriction_cache.invalidate(user_id)
        self._usage_cache.invalidate(user_id)

    async def usage_report(self, user_id: str) -> dict[str, Any]:
        snapshot = await self.usage_snapshot(user_id)
        limits = await self._tier_limits(snapshot.tier_id)
        states: dict[UsageMetric, str] = {}
        grace: dict[UsageMetric, str | None] = {}
        if user_id not in self._degraded:
            try:
                async with self._session_factory() as session:
                    for metric, row in (await usage_repo.get_escalations(session, user_id)).items():
                        states[metric] = row.state
                        ends = as_utc(row.grace_ends_at)
                        grace[metric] = ends.isoformat() if ends is not None else None
            except SQLAlchemyError as exc:
                logger.warning("usage_report_escalations_failed user_id=%s", user_id, exc_info=exc)
        metrics: dict[str, Any] = {}
        for metric in UsageMetric:
            cap = limits.cap_for(metric)
            current = self._current_value(snapshot, metric, limits)
            metrics[metric.value] = {
                "current": current,
                "limit": cap,
                "percentage": round(usage_percentage(current, cap), 1),
                "state": states.get(metric, EscalationState.NORMAL.value),
                "grace_ends_at": grace.get(metric),
            }
        return {
            "user_id": user_id,
            "tier_id": limits.tier_id,
            "metrics": metrics,
            "window_started_at": snapshot.window_started_at.isoformat(),
            "window_resets_at": (snapshot.window_started_at + limits.window_duration).isoformat(),
            "degraded": user_id in self._degraded,
        }

    async def usage_history(self, user_id: str, days: int = 30) -> list[dict[str, Any]]:
        since = self._now() - timedelta(days=days)
        async with self._session_factory() as session:
            rows = await usage_repo.list_history(session, user_id, since=since)
        return [
            {
                "metric": row.metric,
                "delta": int(row.delta),
                "value_after": int(row.value_after),
                "recorded_at": (as_utc(row.recorded_at) or since).isoformat(),
            }
            for row in rows
        ]
