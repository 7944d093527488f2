from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from subgov.apps.worker import build_parser, dispatch
from subgov.domain.state import SubscriptionState
from subgov.tests.utils.factories import add_subscription, load_subscription
from subgov.workers.scheduler import GovernanceServices, build_services


@pytest.fixture
def services(session_factory, provider, dispatcher) -> GovernanceServices:
    return build_services(session_factory=session_factory, provider=provider, dispatcher=dispatcher)


async def test_reconcile_command_returns_summary(services, session_factory, provider) -> None:
    now = datetime.now(timezone.utc)
    await add_subscription(session_factory, "u1", expiration_at=now - timedelta(hours=1), provider=provider)

    summary = await dispatch("reconcile", services)

    assert summary["mode"] == "provider"
    assert summary["succeeded"] == 1
    assert (await load_subscription(session_factory, "u1")).state == SubscriptionState.DISABLED.value


async def test_provider_health_command(services) -> None:
    report = await dispatch("provider-health", services)

    assert report["healthy"] is True
    assert report["circuit"] == "closed"
    assert report["telemetry"]["provider.fake"]["calls"] == 1


async def test_status_command_lists_tasks(services) -> None:
    report = await dispatch("status", services)

    assert report["is_running"] is False
    assert len(report["task_runs"]) == 7
    assert {row["last_status"] for row in report["task_runs"]} == {None}


async def test_sync_and_prune_commands(services) -> None:
    assert await dispatch("sync", services) == {"attempted": 0, "synced": 0, "failed": 0, "skipped": None}
    assert await dispatch("prune-audit", services) == {"pruned_audit_events": 0}


async def test_unknown_command(services) -> None:
    with pytest.raises(ValueError):
        await dispatch("explode", services)


def test_parser_requires_a_command() -> None:
    parser = build_parser()

    assert parser.parse_args(["--log-level", "DEBUG", "drain"]).command == "drain"
    with pytest.raises(SystemExit):
        parser.parse_args([])
