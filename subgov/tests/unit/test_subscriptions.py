from __future__ import annotations

from datetime import timedelta

import pytest

from subgov.core.errors import ProviderAuthFailure, ProviderBadRequest
from subgov.domain.state import EscalationState, SubscriptionState, SyncStatus, UsageMetric, as_utc
from subgov.persistence.repos import usage as usage_repo
from subgov.services.subscriptions import SubscriptionNotFound, SubscriptionService
from subgov.tests.utils.factories import add_subscription, audit_events, load_escalation, load_subscription


@pytest.fixture
def service(session_factory, provider_client, governor, clock) -> SubscriptionService:
    return SubscriptionService(session_factory, provider_client, governor, time_provider=clock)


async def test_provision_creates_local_row_then_provider_account(service, provider, session_factory, clock) -> None:
    row = await service.provision(
        user_id="u1",
        username="alice",
        secret="hunter2",
        tier_id="premium",
        expiration_at=clock() + timedelta(days=30),
        email="alice@example.test",
    )

    assert row.state == SubscriptionState.ACTIVE.value
    assert row.sync_status == SyncStatus.SYNCED.value
    assert row.external_account_id.startswith("alice-")
    assert provider.accounts[row.external_account_id] is True
    [event] = await audit_events(session_factory, action="subscription.provisioned")
    assert event.outcome == "success"
    assert "hunter2" not in str(event.details)


async def test_provision_failure_leaves_pending_row(service, provider, session_factory, clock) -> None:
    provider.fail_next("create_account", ProviderAuthFailure("bad key", status_code=401))

    row = await service.provision(
        user_id="u1",
        username="alice",
        secret="hunter2",
        tier_id="basic",
        expiration_at=clock() + timedelta(days=30),
    )

    assert row.state == SubscriptionState.PENDING_PROVIDER_SYNC.value
    assert row.external_account_id.startswith("pending-")
    assert "ProviderAuthFailure" in (row.last_sync_error or "")
    [event] = await audit_events(session_factory, action="subscription.provisioned")
    assert event.outcome == "failure"


async def test_admin_disable_syncs_provider(service, provider, session_factory, clock) -> None:
    await add_subscription(session_factory, "u1", expiration_at=clock() + timedelta(days=30), provider=provider)

    row = await service.admin_disable("u1", actor="ops@example.test")

    assert row.state == SubscriptionState.DISABLED.value
    assert row.sync_status == SyncStatus.SYNCED.value
    assert row.disable_reason == "admin"
    assert provider.accounts["acct-u1"] is False
    [event] = await audit_events(session_factory, action="subscription.disabled")
    assert (event.actor, event.outcome) == ("ops@example.test", "success")


async def test_admin_disable_keeps_pending_when_provider_fails(service, provider, session_factory, clock) -> None:
    await add_subscription(session_factory, "u1", expiration_at=clock() + timedelta(days=30), provider=provider)
    provider.failing_accounts["acct-u1"] = ProviderAuthFailure("denied", status_code=403)

    row = await service.admin_disable("u1", actor="ops")

    assert row.state == SubscriptionState.DISABLED.value
    assert row.sync_status == SyncStatus.PENDING_PROVIDER_SYNC.value
    [event] = await audit_events(session_factory, action="subscription.disabled")
    assert event.outcome == "partial"


async def test_admin_disable_unknown_user(service) -> None:
    with pytest.raises(SubscriptionNotFound):
        await service.admin_disable("ghost", actor="ops")


async def test_renew_reenables_and_clears_restriction(service, governor, provider, session_factory, clock) -> None:
    await add_subscription(
        session_factory,
        "u1",
        expiration_at=clock() - timedelta(days=1),
        provider=provider,
        state=SubscriptionState.DISABLED,
    )
    async with session_factory() as session:
        await usage_repo.set_escalation(
            session,
            user_id="u1",
            metric=UsageMetric.STREAMS,
            state=EscalationState.RESTRICTED,
            grace_ends_at=None,
        )
        await session.commit()
    new_expiration = clock() + timedelta(days=30)

    row = await service.renew("u1", new_expiration, actor="billing")

    assert row.state == SubscriptionState.ACTIVE.value
    assert row.disable_reason is None
    assert as_utc(row.expiration_at) == new_expiration
    assert provider.accounts["acct-u1"] is True
    escalation = await load_escalation(session_factory, "u1", UsageMetric.STREAMS)
    assert escalation.state == EscalationState.NORMAL.value
    assert await governor.is_restricted("u1") is False
    [event] = await audit_events(session_factory, action="subscription.renewed")
    assert event.details["previous_state"] == "disabled"


async def test_renew_failure_propagates_and_keeps_state(service, provider, session_factory, clock) -> None:
    await add_subscription(
        session_factory,
        "u1",
        expiration_at=clock() - timedelta(days=1),
        provider=provider,
        state=SubscriptionState.DISABLED,
    )
    provider.failing_accounts["acct-u1"] = ProviderAuthFailure("denied", status_code=401)

    with pytest.raises(ProviderAuthFailure):
        await service.renew("u1", clock() + timedelta(days=30), actor="billing")

    row = await load_subscription(session_factory, "u1")
    assert row.state == SubscriptionState.DISABLED.value
    [event] = await audit_events(session_factory, action="subscription.renewed")
    assert event.outcome == "failure"


async def test_renew_rejects_placeholder_accounts(service, session_factory, clock) -> None:
    await add_subscription(
        session_factory,
        "u1",
        expiration_at=clock() + timedelta(days=1),
        account_id="pending-abc",
        state=SubscriptionState.PENDING_PROVIDER_SYNC,
    )

    with pytest.raises(ProviderBadRequest):
        await service.renew("u1", clock() + timedelta(days=30), actor="billing")
