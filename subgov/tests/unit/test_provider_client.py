from __future__ import annotations

import asyncio

import pytest

from subgov.core.errors import (
    ProviderAuthFailure,
    ProviderBadRequest,
    ProviderCircuitOpen,
    ProviderTimeout,
    ProviderUnavailable,
)
from subgov.providers.account.fake import FakeAccountProvider, FakeCall
from subgov.services.provider_client import ProviderClient
from subgov.services.resilience import RetryPolicy
from subgov.services.telemetry import external_latency_by_integration
from subgov.tests.utils.factories import audit_events


async def test_call_retries_unavailable_with_backoff(provider, provider_client, sleeps, session_factory) -> None:
    provider.accounts["acct-1"] = True
    provider.fail_next("disable_account", ProviderUnavailable("503"), ProviderUnavailable("503"))

    await provider_client.disable_account("acct-1")

    assert provider.accounts["acct-1"] is False
    assert len(provider.calls_for("disable_account")) == 3
    assert sleeps.delays == [1.0, 2.0]
    metrics = await audit_events(session_factory, action="provider.call", category="metric")
    assert len(metrics) == 1
    assert metrics[0].outcome == "success"
    assert metrics[0].details["attempts"] == 3
    assert metrics[0].details["operation"] == "disable_account"


async def test_auth_and_bad_request_fail_fast(provider, provider_client, sleeps) -> None:
    provider.accounts["acct-1"] = True
    provider.fail_next("disable_account", ProviderAuthFailure("401", status_code=401))

    with pytest.raises(ProviderAuthFailure):
        await provider_client.disable_account("acct-1")
    with pytest.raises(ProviderBadRequest):
        await provider_client.disable_account("missing")

    assert sleeps.delays == []
    assert len(provider.calls_for("disable_account")) == 2


async def test_request_errors_do_not_open_the_breaker(provider, provider_client) -> None:
    for _ in range(6):
        with pytest.raises(ProviderBadRequest):
            await provider_client.disable_account("missing")

    assert await provider_client.breaker_state() == "closed"


async def test_breaker_opens_and_short_circuits(provider, provider_client, clock) -> None:
    provider.accounts["acct-1"] = True
    provider.failing_accounts["acct-1"] = ProviderUnavailable("down", status_code=503)

    for _ in range(2):
        with pytest.raises(ProviderUnavailable):
            await provider_client.disable_account("acct-1")
    assert await provider_client.breaker_state() == "open"
    attempted = len(provider.calls_for("disable_account"))

    with pytest.raises(ProviderCircuitOpen):
        await provider_client.disable_account("acct-1")
    assert len(provider.calls_for("disable_account")) == attempted

    # After the reset timeout a single probe goes through and closes the circuit.
    provider.failing_accounts.clear()
    clock.advance(seconds=30)
    await provider_client.disable_account("acct-1")
    assert await provider_client.breaker_state() == "closed"


async def test_each_attempt_is_bounded_by_timeout(session_factory, sleeps) -> None:
    class SlowProvider(FakeAccountProvider):
        async def disable_account(self, account_id: str) -> None:
            self.calls.append(FakeCall("disable_account", account_id))
            await asyncio.sleep(5)

    slow = SlowProvider()
    client = ProviderClient(
        slow,
        policy=RetryPolicy(timeout_s=0.01, max_attempts=3, backoff_s=1.0),
        session_factory=session_factory,
        sleep=sleeps,
    )

    with pytest.raises(ProviderTimeout):
        await client.disable_account("acct-1")
    assert len(slow.calls) == 3
    assert sleeps.delays == [1.0, 2.0]


async def test_health_reports_provider_state(provider, provider_client) -> None:
    healthy = await provider_client.health()
    assert healthy.healthy is True

    provider.healthy = False
    unhealthy = await provider_client.health()
    assert unhealthy.healthy is False
    assert unhealthy.detail == "ProviderUnavailable"
    # Health probes are never retried.
    assert len(provider.calls_for("health_check")) == 2


async def test_unexpected_health_error_reports_unhealthy(breaker, session_factory, sleeps) -> None:
    class BrokenProvider(FakeAccountProvider):
        async def health_check(self):
            self.calls.append(FakeCall("health_check"))
            raise ValueError("Expecting value: line 1 column 1 (char 0)")

    client = ProviderClient(BrokenProvider(), breaker=breaker, session_factory=session_factory, sleep=sleeps)

    status = await client.health()

    assert status.healthy is False
    assert status.detail == "ValueError"


async def test_health_short_circuits_while_breaker_open(provider, provider_client, breaker) -> None:
    for _ in range(5):
        await breaker.record_failure()

    status = await provider_client.health()

    assert status.healthy is False
    assert status.detail == "circuit_open"
    assert provider.calls_for("health_check") == []


async def test_calls_feed_external_telemetry(provider, provider_client) -> None:
    provider.accounts["acct-1"] = True
    await provider_client.enable_account("acct-1")

    summary = external_latency_by_integration(window_s=300)
    assert summary["provider.fake"]["calls"] == 1
    assert summary["provider.fake"]["failures"] == 0
