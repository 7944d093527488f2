from __future__ import annotations

import os

# Point settings at SQLite and the in-memory adapters before any subgov module reads them.
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ["REDIS_URL"] = ""
os.environ["PROVIDER_KIND"] = "fake"
os.environ["NOTIFY_DISPATCHER"] = "fake"

from typing import Any, AsyncIterator  # noqa: E402

import pytest  # noqa: E402
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine  # noqa: E402

from subgov.core.config import get_settings  # noqa: E402
from subgov.domain.models import Base  # noqa: E402
from subgov.providers.account.fake import FakeAccountProvider  # noqa: E402
from subgov.providers.notify.fake import FakeDispatcher  # noqa: E402
from subgov.services import locks  # noqa: E402
from subgov.services.notification_scheduler import NotificationScheduler  # noqa: E402
from subgov.services.provider_client import ProviderClient  # noqa: E402
from subgov.services.reconciler import ExpirationReconciler  # noqa: E402
from subgov.services.resilience import CircuitBreaker, CircuitBreakerConfig, RetryPolicy  # noqa: E402
from subgov.services.telemetry import reset_telemetry  # noqa: E402
from subgov.services.usage_governor import UsageGovernor  # noqa: E402
from subgov.tests.utils.factories import Clock, SleepRecorder  # noqa: E402


@pytest.fixture(autouse=True)
def reset_process_state() -> None:
    # Settings, telemetry and local task locks are process-wide; isolate them per test.
    get_settings.cache_clear()
    reset_telemetry()
    locks._local_task_locks.clear()
    locks._local_task_owners.clear()
    yield
    get_settings.cache_clear()


@pytest.fixture
async def session_factory(tmp_path) -> AsyncIterator[async_sessionmaker[AsyncSession]]:
    # One throwaway SQLite file per test; schema comes straight from the ORM metadata.
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'subgov.db'}")
    async with engine.begin() as connection:
        await connection.run_sync(Base.metadata.create_all)
    yield async_sessionmaker(engine, expire_on_commit=False)
    await engine.dispose()


@pytest.fixture
def clock() -> Clock:
    return Clock()


@pytest.fixture
def sleeps() -> SleepRecorder:
    return SleepRecorder()


@pytest.fixture
def provider() -> FakeAccountProvider:
    return FakeAccountProvider()


@pytest.fixture
def dispatcher() -> FakeDispatcher:
    return FakeDispatcher()


@pytest.fixture
def breaker(clock: Clock) -> CircuitBreaker:
    return CircuitBreaker(
        "provider.fake",
        redis=None,
        config=CircuitBreakerConfig(volume_threshold=5, error_threshold_pct=50, reset_timeout_s=30, window_s=60),
        time_source=clock.monotonic,
    )


@pytest.fixture
def provider_client(
    provider: FakeAccountProvider,
    breaker: CircuitBreaker,
    session_factory: async_sessionmaker[AsyncSession],
    sleeps: SleepRecorder,
) -> ProviderClient:
    return ProviderClient(
        provider,
        breaker=breaker,
        policy=RetryPolicy(timeout_s=1.0, max_attempts=3, backoff_s=1.0),
        session_factory=session_factory,
        sleep=sleeps,
    )


@pytest.fixture
def notifier(
    session_factory: async_sessionmaker[AsyncSession],
    dispatcher: FakeDispatcher,
    clock: Clock,
) -> NotificationScheduler:
    return NotificationScheduler(session_factory, dispatcher, dedup_hours=24, enabled=True, time_provider=clock)


@pytest.fixture
def governor(
    session_factory: async_sessionmaker[AsyncSession],
    provider_client: ProviderClient,
    notifier: NotificationScheduler,
    clock: Clock,
    sleeps: SleepRecorder,
) -> UsageGovernor:
    return UsageGovernor(
        session_factory,
        provider_client,
        notifier,
        threshold_pct=80,
        cache_ttl_s=300,
        time_provider=clock,
        sleep=sleeps,
    )


@pytest.fixture
def reconciler(
    session_factory: async_sessionmaker[AsyncSession],
    provider_client: ProviderClient,
    notifier: NotificationScheduler,
    clock: Clock,
    sleeps: SleepRecorder,
) -> ExpirationReconciler:
    return ExpirationReconciler(
        session_factory,
        provider_client,
        notifier,
        batch_size=5,
        batch_pause_s=1.0,
        time_provider=clock,
        sleep=sleeps,
    )


@pytest.fixture
def settings_env(monkeypatch) -> Any:
    # Apply env overrides and rebuild the cached settings.
    def _apply(**values: str) -> None:
        for key, value in values.items():
            monkeypatch.setenv(key.upper(), value)
        get_settings.cache_clear()

    return _apply
