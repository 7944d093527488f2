from __future__ import annotations

import argparse
import asyncio
from dataclasses import asdict
import json
import logging
import signal
from typing import Any, Sequence

from subgov.core.logging import configure_logging
from subgov.services.audit import sanitize_metadata
from subgov.services.maintenance import prune_audit_events
from subgov.services.telemetry import external_latency_by_integration
from subgov.workers.scheduler import GovernanceServices, build_default_scheduler, build_services


logger = logging.getLogger(__name__)


def _emit(payload: Any) -> None:
    print(json.dumps(sanitize_metadata(payload), indent=2, sort_keys=True))


async def _run_forever(services: GovernanceServices) -> None:
    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for signum in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(signum, stop.set)
        except NotImplementedError:
            # Windows event loops lack signal handlers; KeyboardInterrupt still stops asyncio.run.
            pass
    async with build_default_scheduler(services) as scheduler:
        logger.info("worker_running %s", scheduler.status())
        await stop.wait()


async def _prune_audit(services: GovernanceServices) -> dict[str, int]:
    async with services.session_factory() as session:
        deleted = await prune_audit_events(session)
        await session.commit()
    return {"pruned_audit_events": deleted}


async def _status(services: GovernanceServices) -> dict[str, Any]:
    scheduler = build_default_scheduler(services)
    return {**scheduler.status(), "task_runs": await scheduler.describe()}


async def _provider_health(services: GovernanceServices) -> dict[str, Any]:
    status = await services.provider_client.health()
    return {
        **asdict(status),
        "circuit": await services.provider_client.breaker_state(),
        "telemetry": external_latency_by_integration(window_s=300),
    }


async def dispatch(command: str, services: GovernanceServices | None = None) -> Any:
    services = services or build_services()
    if command == "run":
        await _run_forever(services)
        return None
    if command == "reconcile":
        return (await services.reconciler.run()).summary()
    if command == "sync":
        return (await services.reconciler.sync_pending()).as_dict()
    if command == "drain":
        return (await services.notifier.drain()).as_dict()
    if command == "warnings":
        return (await services.notifier.send_expiration_warnings()).as_dict()
    if command == "prune-audit":
        return await _prune_audit(services)
    if command == "status":
        return await _status(services)
    if command == "provider-health":
        return await _provider_health(services)
    raise ValueError(f"Unknown command: {command}")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="subgov-worker", description="Subscription governance worker")
    parser.add_argument("--log-level", default=None, help="override LOG_LEVEL")
    commands = parser.add_subparsers(dest="command", required=True)
    commands.add_parser("run", help="run every periodic task until interrupted")
    commands.add_parser("reconcile", help="run one expiration reconciliation pass")
    commands.add_parser("sync", help="push locally disabled subscriptions to the provider")
    commands.add_parser("drain", help="deliver due deferred notifications")
    commands.add_parser("warnings", help="send expiration warnings for today")
    commands.add_parser("prune-audit", help="delete audit events past retention")
    commands.add_parser("status", help="show scheduled tasks and their last runs")
    commands.add_parser("provider-health", help="probe the account provider")
    return parser


def main(argv: Sequence[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    configure_logging(args.log_level)
    result = asyncio.run(dispatch(args.command))
    if result is not None:
        _emit(result)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
