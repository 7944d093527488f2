from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import datetime
import logging
import time
from typing import Any, Awaitable, Callable

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from subgov.core.config import get_settings
from subgov.core.errors import ProviderCircuitOpen, ProviderError, StoreUnavailable
from subgov.domain.models import Subscription
from subgov.domain.state import (
    PENDING_ACCOUNT_PREFIX,
    NotificationKind,
    SubscriptionState,
    SyncStatus,
    as_utc,
    utc_now,
)
from subgov.persistence.repos import subscriptions as subscriptions_repo
from subgov.persistence.repos import usage as usage_repo
from subgov.services.audit import record_event
from subgov.services.notification_scheduler import NotificationScheduler
from subgov.services.provider_client import ProviderClient


logger = logging.getLogger(__name__)

ACTOR = "expiration_reconciler"

MODE_PROVIDER = "provider"
MODE_LOCAL_ONLY = "local_only"
MODE_PARTIAL_LOCAL = "partial_local"
MODE_STORE_UNAVAILABLE = "store_unavailable"

REASON_EXPIRED = "expired"
REASON_PROVIDER_UNAVAILABLE = "provider_unavailable"


@dataclass
class ReconciliationResult:
    mode: str = MODE_PROVIDER
    total_candidates: int = 0
    succeeded: list[str] = field(default_factory=list)
    failed: list[tuple[str, str]] = field(default_factory=list)
    locally_disabled: list[str] = field(default_factory=list)
    error: str | None = None
    duration_ms: float = 0.0

    def summary(self) -> dict[str, Any]:
        return {
            "mode": self.mode,
            "total_candidates": self.total_candidates,
            "succeeded": len(self.succeeded),
            "failed": len(self.failed),
            "failed_sample": [{"user_id": user_id, "error": error} for user_id, error in self.failed[:5]],
            "locally_disabled": len(self.locally_disabled),
            "error": self.error,
            "duration_ms": round(self.duration_ms, 1),
        }


@dataclass
class SyncResult:
    attempted: int = 0
    synced: int = 0
    failed: int = 0
    skipped: str | None = None

    def as_dict(self) -> dict[str, Any]:
        return {"attempted": self.attempted, "synced": self.synced, "failed": self.failed, "skipped": self.skipped}


def _batches(items: list[Subscription], size: int) -> list[list[Subscription]]:
    size = max(1, size)
    return [items[index : index + size] for index in range(0, len(items), size)]


class ExpirationReconciler:
    """Drives expired subscriptions to Disabled, locally first when the provider is down."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        provider_client: ProviderClient,
        notifier: NotificationScheduler | None = None,
        *,
        batch_size: int | None = None,
        batch_pause_s: float | None = None,
        time_provider: Callable[[], datetime] | None = None,
        sleep: Callable[[float], Awaitable[Any]] | None = None,
    ) -> None:
        settings = get_settings()
        self._session_factory = session_factory
        self._provider = provider_client
        self._notifier = notifier
        self._batch_size = batch_size if batch_size is not None else settings.reconcile_batch_size
        self._batch_pause_s = batch_pause_s if batch_pause_s is not None else settings.reconcile_batch_pause_s
        self._now = time_provider or utc_now
        self._sleep = sleep or asyncio.sleep

    async def run(self) -> ReconciliationResult:
        """One reconciliation pass; never raises, the outcome is in the result and the audit summary."""
        started = time.monotonic()
        result = ReconciliationResult()
        run_at = self._now()
        try:
            await self._run(result, run_at)
        except (StoreUnavailable, SQLAlchemyError) as exc:
            result.mode = MODE_STORE_UNAVAILABLE
            result.error = f"{exc.__class__.__name__}: {exc}"[:500]
            logger.error("reconciliation_aborted error=%s", exc.__class__.__name__, exc_info=exc)
        result.duration_ms = (time.monotonic() - started) * 1000.0
        await record_event(
            session_factory=self._session_factory,
            actor=ACTOR,
            action="reconciliation.completed",
            outcome=self._outcome(result),
            details=result.summary(),
        )
        logger.info("reconciliation_completed %s", result.summary())
        return result

    @staticmethod
    def _outcome(result: ReconciliationResult) -> str:
        if result.error is not None:
            return "failure"
        if result.failed or result.mode != MODE_PROVIDER:
            return "partial"
        return "success"

    async def _load_candidates(self, run_at: datetime) -> list[Subscription]:
        try:
            async with self._session_factory() as session:
                return await subscriptions_repo.list_expired_candidates(session, now=run_at)
        except SQLAlchemyError as exc:
            raise StoreUnavailable("could not load expired subscriptions") from exc

    async def _run(self, result: ReconciliationResult, run_at: datetime) -> None:
        health = await self._provider.health()
        candidates = await self._load_candidates(run_at)
        result.total_candidates = len(candidates)
        if not health.healthy:
            logger.warning("reconciliation_provider_unhealthy detail=%s candidates=%s", health.detail, len(candidates))
            result.mode = MODE_LOCAL_ONLY
            await self._disable_locally(candidates, result)
            return
        batches = _batches(candidates, self._batch_size)
        for index, batch in enumerate(batches):
            if index > 0:
                await self._sleep(self._batch_pause_s)
            if await self._provider.breaker_state() == "open":
                remaining = [item for later in batches[index:] for item in later]
                logger.warning("reconciliation_circuit_open remaining=%s", len(remaining))
                result.mode = MODE_PARTIAL_LOCAL
                await self._disable_locally(remaining, result)
                return
            outcomes = await asyncio.gather(
                *(self._disable_one(subscription) for subscription in batch),
                return_exceptions=True,
            )
            circuit_failures: list[Subscription] = []
            for subscription, outcome in zip(batch, outcomes):
                if isinstance(outcome, ProviderCircuitOpen):
                    circuit_failures.append(subscription)
                elif isinstance(outcome, (StoreUnavailable, SQLAlchemyError)):
                    raise outcome
                elif isinstance(outcome, BaseException):
                    result.failed.append((subscription.user_id, getattr(outcome, "code", type(outcome).__name__)))
                else:
                    result.succeeded.append(subscription.user_id)
            if circuit_failures:
                result.mode = MODE_PARTIAL_LOCAL
                remaining = circuit_failures + [item for later in batches[index + 1 :] for item in later]
                await self._disable_locally(remaining, result)
                return

    async def _disable_one(self, subscription: Subscription) -> bool:
        user_id = subscription.user_id
        account_id = subscription.external_account_id
        # A placeholder id was never created on the provider; only local state converges.
        if not account_id.startswith(PENDING_ACCOUNT_PREFIX):
            try:
                await self._provider.disable_account(account_id)
            except ProviderCircuitOpen:
                raise
            except ProviderError as exc:
                await self._record_failure(user_id, exc)
                raise
        now = self._now()
        try:
            async with self._session_factory() as session:
                moved = await subscriptions_repo.transition_state(
                    session,
                    user_id,
                    from_states=[SubscriptionState.ACTIVE, SubscriptionState.GRACE_PERIOD],
                    to_state=SubscriptionState.DISABLED.value,
                    values={
                        "sync_status": SyncStatus.SYNCED.value,
                        "last_sync_at": now,
                        "last_sync_error": None,
                        "disable_reason": REASON_EXPIRED,
                    },
                )
                if moved:
                    await usage_repo.cancel_grace_timers(session, user_id)
                await session.commit()
        except SQLAlchemyError as exc:
            raise StoreUnavailable(f"could not persist disable for {user_id}") from exc
        if moved:
            await self._notify_expired(subscription)
        return moved

    async def _record_failure(self, user_id: str, exc: ProviderError) -> None:
        logger.warning("reconciliation_item_failed user_id=%s error=%s", user_id, exc.code)
        try:
            async with self._session_factory() as session:
                await subscriptions_repo.record_sync_error(session, user_id, error=f"{exc.code}: {exc}")
                await session.commit()
        except SQLAlchemyError as store_exc:
            logger.warning("reconciliation_sync_error_write_failed user_id=%s", user_id, exc_info=store_exc)

    async def _disable_locally(self, candidates: list[Subscription], result: ReconciliationResult) -> None:
        # Expired users must not stay fully active just because the provider is down.
        if not candidates:
            return
        try:
            async with self._session_factory() as session:
                for subscription in candidates:
                    moved = await subscriptions_repo.transition_state(
                        session,
                        subscription.user_id,
                        from_states=[SubscriptionState.ACTIVE, SubscriptionState.GRACE_PERIOD],
                        to_state=SubscriptionState.DISABLED.value,
                        values={
                            "sync_status": SyncStatus.PENDING_PROVIDER_SYNC.value,
                            "disable_reason": REASON_PROVIDER_UNAVAILABLE,
                        },
                    )
                    if moved:
                        await usage_repo.cancel_grace_timers(session, subscription.user_id)
                        result.locally_disabled.append(subscription.user_id)
                await session.commit()
        except SQLAlchemyError as exc:
            raise StoreUnavailable("could not apply local-only disablement") from exc

    async def _notify_expired(self, subscription: Subscription) -> None:
        if self._notifier is None:
            return
        expiration_at = as_utc(subscription.expiration_at)
        await self._notifier.notify(
            subscription.user_id,
            NotificationKind.SUBSCRIPTION_EXPIRED.value,
            {
                "username": subscription.username,
                "expiration_at": expiration_at.isoformat() if expiration_at is not None else None,
            },
        )

    async def sync_pending(self, limit: int | None = None) -> SyncResult:
        """Push locally disabled subscriptions to the provider once it is reachable again."""
        result = SyncResult()
        health = await self._provider.health()
        if not health.healthy:
            result.skipped = health.detail or "provider_unhealthy"
            logger.info("provider_sync_skipped reason=%s", result.skipped)
            return result
        async with self._session_factory() as session:
            rows = await subscriptions_repo.list_pending_sync(session, limit=limit)
        for subscription in rows:
            if subscription.external_account_id.startswith(PENDING_ACCOUNT_PREFIX):
                continue
            result.attempted += 1
            try:
                await self._provider.disable_account(subscription.external_account_id)
            except ProviderCircuitOpen:
                result.failed += 1
                result.skipped = "circuit_open"
                break
            except ProviderError as exc:
                result.failed += 1
                await self._record_failure(subscription.user_id, exc)
                continue
            async with self._session_factory() as session:
                synced = await subscriptions_repo.mark_synced(
                    session,
                    subscription.user_id,
                    expected_state=SubscriptionState.DISABLED.value,
                    now=self._now(),
                )
                await session.commit()
            if not synced:
                continue
            result.synced += 1
            if subscription.disable_reason == REASON_PROVIDER_UNAVAILABLE:
                await self._notify_expired(subscription)
        logger.info("provider_sync_completed %s", result.as_dict())
        return result
