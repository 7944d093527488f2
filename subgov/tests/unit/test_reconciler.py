from __future__ import annotations

from datetime import timedelta

import httpx
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine

from subgov.core.errors import ProviderAuthFailure, ProviderUnavailable
from subgov.domain.state import EscalationState, SubscriptionState, SyncStatus, UsageMetric
from subgov.persistence.repos import usage as usage_repo
from subgov.providers.account.jellyfin import JellyfinAccountProvider
from subgov.services.provider_client import ProviderClient
from subgov.services.reconciler import ExpirationReconciler
from subgov.services.resilience import RetryPolicy
from subgov.tests.utils.factories import add_subscription, audit_events, load_escalation, load_subscription


async def test_expired_subscription_is_disabled_and_notified(
    session_factory, reconciler, provider, dispatcher, clock
) -> None:
    await add_subscription(session_factory, "u1", expiration_at=clock() - timedelta(hours=1), provider=provider)

    result = await reconciler.run()

    assert result.summary()["succeeded"] == 1
    assert result.mode == "provider"
    subscription = await load_subscription(session_factory, "u1")
    assert subscription.state == SubscriptionState.DISABLED.value
    assert subscription.sync_status == SyncStatus.SYNCED.value
    assert subscription.disable_reason == "expired"
    assert provider.accounts["acct-u1"] is False
    [event] = await audit_events(session_factory, action="reconciliation.completed")
    assert event.outcome == "success"
    assert event.details["total_candidates"] == 1
    assert dispatcher.kinds() == ["subscription_expired"]
    assert dispatcher.delivered[0].payload["username"] == "user_u1"


async def test_unhealthy_provider_disables_locally_without_calls(
    session_factory, reconciler, provider, dispatcher, clock
) -> None:
    await add_subscription(session_factory, "u1", expiration_at=clock() - timedelta(hours=1), provider=provider)
    provider.healthy = False

    result = await reconciler.run()

    assert result.mode == "local_only"
    assert result.locally_disabled == ["u1"]
    subscription = await load_subscription(session_factory, "u1")
    assert subscription.state == SubscriptionState.DISABLED.value
    assert subscription.sync_status == SyncStatus.PENDING_PROVIDER_SYNC.value
    assert subscription.disable_reason == "provider_unavailable"
    assert [call.operation for call in provider.calls] == ["health_check"]
    assert provider.accounts["acct-u1"] is True
    [event] = await audit_events(session_factory, action="reconciliation.completed")
    assert event.outcome == "partial"
    assert dispatcher.delivered == []

    # Once the provider is back the pending row converges and the user hears about it.
    provider.healthy = True
    synced = await reconciler.sync_pending()

    assert synced.as_dict() == {"attempted": 1, "synced": 1, "failed": 0, "skipped": None}
    subscription = await load_subscription(session_factory, "u1")
    assert subscription.sync_status == SyncStatus.SYNCED.value
    assert provider.accounts["acct-u1"] is False
    assert dispatcher.kinds() == ["subscription_expired"]


async def test_second_run_changes_nothing(session_factory, reconciler, provider, clock) -> None:
    await add_subscription(session_factory, "u1", expiration_at=clock() - timedelta(days=2), provider=provider)
    await add_subscription(session_factory, "u2", expiration_at=clock() - timedelta(hours=1), provider=provider)

    first = await reconciler.run()
    second = await reconciler.run()

    assert first.succeeded == ["u1", "u2"]
    assert second.total_candidates == 0
    assert len(provider.calls_for("disable_account")) == 2


async def test_only_expired_active_subscriptions_are_touched(session_factory, reconciler, provider, clock) -> None:
    await add_subscription(session_factory, "expired", expiration_at=clock() - timedelta(hours=1), provider=provider)
    await add_subscription(session_factory, "future", expiration_at=clock() + timedelta(hours=1), provider=provider)
    await add_subscription(
        session_factory,
        "already",
        expiration_at=clock() - timedelta(days=3),
        provider=provider,
        state=SubscriptionState.DISABLED,
    )

    result = await reconciler.run()

    assert result.succeeded == ["expired"]
    assert [call.account_id for call in provider.calls_for("disable_account")] == ["acct-expired"]
    assert (await load_subscription(session_factory, "future")).state == SubscriptionState.ACTIVE.value


async def test_item_failure_is_recorded_and_the_rest_continue(session_factory, reconciler, provider, clock) -> None:
    await add_subscription(session_factory, "u1", expiration_at=clock() - timedelta(hours=2), provider=provider)
    await add_subscription(session_factory, "u2", expiration_at=clock() - timedelta(hours=1), provider=provider)
    provider.failing_accounts["acct-u2"] = ProviderAuthFailure("denied", status_code=401)

    result = await reconciler.run()

    assert result.succeeded == ["u1"]
    assert result.failed == [("u2", "ProviderAuthFailure")]
    failed = await load_subscription(session_factory, "u2")
    assert failed.state == SubscriptionState.ACTIVE.value
    assert "ProviderAuthFailure" in (failed.last_sync_error or "")
    [event] = await audit_events(session_factory, action="reconciliation.completed")
    assert event.outcome == "partial"
    assert event.details["failed_sample"] == [{"user_id": "u2", "error": "ProviderAuthFailure"}]


async def test_candidates_are_processed_in_paced_batches(session_factory, reconciler, provider, clock, sleeps) -> None:
    for index in range(12):
        await add_subscription(
            session_factory,
            f"u{index:02d}",
            expiration_at=clock() - timedelta(hours=index + 1),
            provider=provider,
        )

    result = await reconciler.run()

    assert len(result.succeeded) == 12
    assert sleeps.delays == [1.0, 1.0]
    # Oldest expirations go first.
    assert result.succeeded[:5] == ["u11", "u10", "u09", "u08", "u07"]


async def test_open_breaker_mid_run_falls_back_to_local(session_factory, reconciler, provider, clock) -> None:
    for index in range(1, 8):
        await add_subscription(
            session_factory,
            f"u{index}",
            expiration_at=clock() - timedelta(hours=10 - index),
            provider=provider,
        )
    for index in range(1, 6):
        provider.failing_accounts[f"acct-u{index}"] = ProviderUnavailable("down", status_code=503)

    result = await reconciler.run()

    assert result.mode == "partial_local"
    assert result.succeeded == []
    for user_id in ("u6", "u7"):
        subscription = await load_subscription(session_factory, user_id)
        assert subscription.state == SubscriptionState.DISABLED.value
        assert subscription.sync_status == SyncStatus.PENDING_PROVIDER_SYNC.value
    called = {call.account_id for call in provider.calls_for("disable_account")}
    assert called.isdisjoint({"acct-u6", "acct-u7"})

    # The sync task stays put while the circuit is open.
    skipped = await reconciler.sync_pending()
    assert skipped.skipped == "circuit_open"
    assert skipped.attempted == 0


async def test_disable_cancels_grace_timers(session_factory, reconciler, provider, clock) -> None:
    await add_subscription(session_factory, "u1", expiration_at=clock() - timedelta(hours=1), provider=provider)
    async with session_factory() as session:
        await usage_repo.set_escalation(
            session,
            user_id="u1",
            metric=UsageMetric.STREAMS,
            state=EscalationState.GRACE_PERIOD,
            grace_ends_at=clock() + timedelta(hours=5),
        )
        await session.commit()

    await reconciler.run()

    escalation = await load_escalation(session_factory, "u1", UsageMetric.STREAMS)
    assert escalation.state == EscalationState.WARNED.value
    assert escalation.grace_ends_at is None


async def test_placeholder_accounts_are_disabled_locally(session_factory, reconciler, provider, clock) -> None:
    await add_subscription(
        session_factory,
        "u1",
        expiration_at=clock() - timedelta(hours=1),
        account_id="pending-0001",
    )

    result = await reconciler.run()

    assert result.succeeded == ["u1"]
    assert provider.calls_for("disable_account") == []


async def test_store_outage_is_reported_not_raised(tmp_path, provider_client, clock, sleeps) -> None:
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'missing' / 'subgov.db'}")
    reconciler = ExpirationReconciler(
        async_sessionmaker(engine, expire_on_commit=False),
        provider_client,
        batch_size=5,
        batch_pause_s=1.0,
        time_provider=clock,
        sleep=sleeps,
    )

    result = await reconciler.run()

    assert result.mode == "store_unavailable"
    assert result.error is not None and result.error.startswith("StoreUnavailable")
    await engine.dispose()


async def test_unreadable_health_body_falls_back_to_local(
    session_factory, breaker, notifier, clock, sleeps
) -> None:
    transport = httpx.MockTransport(lambda _request: httpx.Response(200, text="<html>login</html>"))
    jellyfin = JellyfinAccountProvider(
        base_url="http://jellyfin.test",
        api_key="key-1",
        client=httpx.AsyncClient(base_url="http://jellyfin.test", transport=transport),
    )
    client = ProviderClient(
        jellyfin,
        breaker=breaker,
        policy=RetryPolicy(timeout_s=1.0, max_attempts=3, backoff_s=1.0),
        session_factory=session_factory,
        sleep=sleeps,
    )
    reconciler = ExpirationReconciler(
        session_factory, client, notifier, batch_size=5, batch_pause_s=1.0, time_provider=clock, sleep=sleeps
    )
    await add_subscription(session_factory, "u1", expiration_at=clock() - timedelta(hours=1))

    result = await reconciler.run()

    assert result.mode == "local_only"
    assert result.locally_disabled == ["u1"]
    subscription = await load_subscription(session_factory, "u1")
    assert subscription.state == SubscriptionState.DISABLED.value
    assert subscription.sync_status == SyncStatus.PENDING_PROVIDER_SYNC.value
    assert len(await audit_events(session_factory, action="reconciliation.completed")) == 1
    await jellyfin.aclose()
