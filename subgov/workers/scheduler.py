from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import datetime
import logging
from typing import Any, Awaitable, Callable

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from subgov.core.config import get_settings
from subgov.domain.state import as_utc, utc_now
from subgov.persistence.repos import task_runs as task_runs_repo
from subgov.providers.account.base import AccountProvider
from subgov.providers.account.factory import get_account_provider
from subgov.providers.notify.base import NotificationDispatcher
from subgov.providers.notify.factory import get_notification_dispatcher
from subgov.services.audit import sanitize_metadata
from subgov.services.locks import acquire_task_lock, release_task_lock
from subgov.services.maintenance import prune_audit_events, prune_notification_history, prune_usage_history
from subgov.services.notification_scheduler import NotificationScheduler
from subgov.services.provider_client import ProviderClient
from subgov.services.reconciler import ExpirationReconciler
from subgov.services.subscriptions import SubscriptionService
from subgov.services.usage_governor import UsageGovernor


logger = logging.getLogger(__name__)

TASK_RECONCILIATION = "expiration_reconciliation"
TASK_PROVIDER_SYNC = "provider_sync"
TASK_GRACE_SWEEP = "usage_grace_sweep"
TASK_THRESHOLD_SWEEP = "usage_threshold_sweep"
TASK_EXPIRATION_WARNINGS = "expiration_warnings"
TASK_NOTIFICATION_DRAIN = "notification_drain"
TASK_AUDIT_CLEANUP = "audit_cleanup"

STATUS_OK = "ok"
STATUS_ERROR = "error"
STATUS_SKIPPED_RUNNING = "skipped_running"
STATUS_SKIPPED_LOCK = "skipped_lock"
STATUS_NOT_DUE = "not_due"


@dataclass(frozen=True)
class PeriodicTask:
    name: str
    interval_s: float
    run: Callable[[], Awaitable[Any]]


def _details(result: Any) -> dict[str, Any] | None:
    # Task results land in task_runs.last_details; keep them JSON-safe.
    if result is None:
        return None
    if hasattr(result, "as_dict"):
        result = result.as_dict()
    elif hasattr(result, "summary"):
        result = result.summary()
    if not isinstance(result, dict):
        result = {"result": result}
    return sanitize_metadata(result)


class SchedulerHandle:
    """Owns one timer per periodic task; start/stop replace any process-wide scheduler state."""

    def __init__(
        self,
        tasks: list[PeriodicTask],
        *,
        session_factory: async_sessionmaker[AsyncSession],
        poll_interval_s: float | None = None,
        time_provider: Callable[[], datetime] | None = None,
        sleep: Callable[[float], Awaitable[Any]] | None = None,
    ) -> None:
        names = [task.name for task in tasks]
        if len(set(names)) != len(names):
            raise ValueError("periodic task names must be unique")
        self._tasks = {task.name: task for task in tasks}
        self._session_factory = session_factory
        self._poll_interval_s = (
            poll_interval_s if poll_interval_s is not None else get_settings().scheduler_poll_interval_s
        )
        self._now = time_provider or utc_now
        self._sleep = sleep or asyncio.sleep
        self._running: set[str] = set()
        self._timers: dict[str, asyncio.Task[None]] = {}

    @property
    def is_running(self) -> bool:
        return any(not timer.done() for timer in self._timers.values())

    def status(self) -> dict[str, Any]:
        return {"is_running": self.is_running, "tasks": list(self._tasks)}

    async def is_due(self, task: PeriodicTask) -> bool:
        # Interval since the durable last start; survives restarts and never relies on wall-clock minutes.
        async with self._session_factory() as session:
            row = await task_runs_repo.get_task_run(session, task.name)
        last_started_at = as_utc(row.last_started_at) if row is not None else None
        if last_started_at is None:
            return True
        return (self._now() - last_started_at).total_seconds() >= task.interval_s

    async def run_task(self, name: str, *, force: bool = False) -> str:
        """Run one task now if due (or forced); returns the resulting status."""
        task = self._tasks[name]
        if name in self._running:
            return STATUS_SKIPPED_RUNNING
        if not force and not await self.is_due(task):
            return STATUS_NOT_DUE
        lock = await acquire_task_lock(name)
        if lock is None:
            logger.info("scheduled_task_skipped task=%s reason=lock_held", name)
            return STATUS_SKIPPED_LOCK
        self._running.add(name)
        try:
            async with self._session_factory() as session:
                await task_runs_repo.mark_started(session, name, now=self._now())
                await session.commit()
            status = STATUS_OK
            try:
                details = _details(await task.run())
            except Exception as exc:  # noqa: BLE001 - a failing run is recorded and retried on the next due tick.
                logger.exception("scheduled_task_failed task=%s", name)
                status = STATUS_ERROR
                details = {"error": f"{exc.__class__.__name__}: {exc}"[:500]}
            async with self._session_factory() as session:
                await task_runs_repo.mark_finished(session, name, now=self._now(), status=status, details=details)
                await session.commit()
            logger.info("scheduled_task_finished task=%s status=%s", name, status)
            return status
        finally:
            self._running.discard(name)
            await release_task_lock(lock)

    async def tick(self) -> dict[str, str]:
        return {name: await self.run_task(name) for name in self._tasks}

    async def _timer(self, task: PeriodicTask) -> None:
        pause = max(0.01, min(float(self._poll_interval_s), float(task.interval_s)))
        while True:
            try:
                await self.run_task(task.name)
            except Exception:  # noqa: BLE001 - keep the timer alive while surfacing errors in logs.
                logger.exception("scheduled_task_cycle_failed task=%s", task.name)
            await self._sleep(pause)

    async def start(self) -> None:
        if self.is_running:
            return
        self._timers = {
            name: asyncio.create_task(self._timer(task), name=f"subgov:{name}") for name, task in self._tasks.items()
        }
        logger.info("scheduler_started tasks=%s", ",".join(self._tasks))

    async def stop(self) -> None:
        timers = list(self._timers.values())
        for timer in timers:
            timer.cancel()
        await asyncio.gather(*timers, return_exceptions=True)
        self._timers = {}
        logger.info("scheduler_stopped")

    async def __aenter__(self) -> SchedulerHandle:
        await self.start()
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.stop()

    async def describe(self) -> list[dict[str, Any]]:
        async with self._session_factory() as session:
            rows = {row.task_name: row for row in await task_runs_repo.list_task_runs(session)}
        described: list[dict[str, Any]] = []
        for name, task in self._tasks.items():
            row = rows.get(name)
            started = as_utc(row.last_started_at) if row is not None else None
            finished = as_utc(row.last_finished_at) if row is not None else None
            described.append(
                {
                    "task": name,
                    "interval_s": task.interval_s,
                    "running": name in self._running,
                    "last_started_at": started.isoformat() if started is not None else None,
                    "last_finished_at": finished.isoformat() if finished is not None else None,
                    "last_status": row.last_status if row is not None else None,
                    "last_details": row.last_details if row is not None else None,
                }
            )
        return described


@dataclass
class GovernanceServices:
    session_factory: async_sessionmaker[AsyncSession]
    provider_client: ProviderClient
    notifier: NotificationScheduler
    governor: UsageGovernor
    reconciler: ExpirationReconciler
    subscriptions: SubscriptionService


def build_services(
    *,
    session_factory: async_sessionmaker[AsyncSession] | None = None,
    provider: AccountProvider | None = None,
    dispatcher: NotificationDispatcher | None = None,
) -> GovernanceServices:
    if session_factory is None:
        from subgov.persistence.db import SessionLocal

        session_factory = SessionLocal
    provider_client = ProviderClient(provider or get_account_provider(), session_factory=session_factory)
    notifier = NotificationScheduler(session_factory, dispatcher or get_notification_dispatcher())
    governor = UsageGovernor(session_factory, provider_client, notifier)
    return GovernanceServices(
        session_factory=session_factory,
        provider_client=provider_client,
        notifier=notifier,
        governor=governor,
        reconciler=ExpirationReconciler(session_factory, provider_client, notifier),
        subscriptions=SubscriptionService(session_factory, provider_client, governor),
    )


async def run_audit_cleanup(session_factory: async_sessionmaker[AsyncSession]) -> dict[str, int]:
    async with session_factory() as session:
        audit = await prune_audit_events(session)
        usage = await prune_usage_history(session)
        notifications = await prune_notification_history(session)
        await session.commit()
    return {"audit_events": audit, "usage_history": usage, "notifications": notifications}


def default_tasks(services: GovernanceServices) -> list[PeriodicTask]:
    settings = get_settings()
    return [
        PeriodicTask(TASK_RECONCILIATION, settings.reconcile_interval_s, services.reconciler.run),
        PeriodicTask(TASK_PROVIDER_SYNC, settings.provider_sync_interval_s, services.reconciler.sync_pending),
        PeriodicTask(TASK_GRACE_SWEEP, settings.usage_grace_sweep_interval_s, services.governor.sweep_grace_periods),
        PeriodicTask(TASK_THRESHOLD_SWEEP, settings.usage_threshold_sweep_interval_s, services.governor.sweep_thresholds),
        PeriodicTask(
            TASK_EXPIRATION_WARNINGS,
            settings.expiration_warning_interval_s,
            services.notifier.send_expiration_warnings,
        ),
        PeriodicTask(TASK_NOTIFICATION_DRAIN, settings.notify_drain_interval_s, services.notifier.drain),
        PeriodicTask(
            TASK_AUDIT_CLEANUP,
            settings.audit_cleanup_interval_s,
            lambda: run_audit_cleanup(services.session_factory),
        ),
    ]


def build_default_scheduler(services: GovernanceServices | None = None) -> SchedulerHandle:
    services = services or build_services()
    return SchedulerHandle(default_tasks(services), session_factory=services.session_factory)
