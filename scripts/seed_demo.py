from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import timedelta
import sys

from subgov.domain.models import TierLimit
from subgov.domain.state import DEFAULT_TIER_LIMITS, utc_now
from subgov.persistence.db import SessionLocal
from subgov.persistence.repos import subscriptions as subscriptions_repo
from subgov.persistence.repos import usage as usage_repo
from subgov.workers.scheduler import build_services


@dataclass(frozen=True)
class DemoUser:
    user_id: str
    username: str
    tier_id: str
    expires_in_days: int


DEMO_USERS = (
    DemoUser("demo-expired", "demo_expired", "basic", -2),
    DemoUser("demo-warning", "demo_warning", "premium", 7),
    DemoUser("demo-healthy", "demo_healthy", "enterprise", 90),
)


async def seed_tiers() -> int:
    # Tier rows are reference data; existing rows are left as operators tuned them.
    created = 0
    async with SessionLocal() as session:
        for tier in DEFAULT_TIER_LIMITS.values():
            if await usage_repo.get_tier_limits(session, tier.tier_id) is not None:
                continue
            session.add(
                TierLimit(
                    tier_id=tier.tier_id,
                    storage_cap=tier.storage_cap,
                    stream_cap=tier.stream_cap,
                    concurrent_session_cap=tier.concurrent_session_cap,
                    api_call_cap=tier.api_call_cap,
                    window_duration_s=tier.window_duration_s,
                    grace_duration_s=tier.grace_duration_s,
                    throttle_delay_ms=tier.throttle_delay_ms,
                )
            )
            created += 1
        await session.commit()
    return created


async def seed_users() -> list[str]:
    services = build_services()
    now = utc_now()
    seeded: list[str] = []
    for user in DEMO_USERS:
        async with SessionLocal() as session:
            if await subscriptions_repo.get_subscription(session, user.user_id) is not None:
                continue
        row = await services.subscriptions.provision(
            user_id=user.user_id,
            username=user.username,
            secret="demo-password",
            tier_id=user.tier_id,
            expiration_at=now + timedelta(days=user.expires_in_days),
            email=f"{user.username}@example.invalid",
            actor="seed_demo",
        )
        seeded.append(f"{row.user_id}:{row.state}")
    return seeded


async def main() -> int:
    tiers = await seed_tiers()
    users = await seed_users()
    print(f"seeded_tiers={tiers} seeded_users={','.join(users) or 'none'}")
    return 0


if __name__ == "__main__":
    sys.exit(asyncio.run(main()))
