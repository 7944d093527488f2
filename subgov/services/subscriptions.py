from __future__ import annotations

from datetime import datetime
import logging
from typing import Callable
from uuid import uuid4

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from subgov.core.errors import ProviderBadRequest, ProviderError
from subgov.domain.models import Subscription
from subgov.domain.state import (
    PENDING_ACCOUNT_PREFIX,
    SubscriptionState,
    SyncStatus,
    utc_now,
)
from subgov.persistence.repos import subscriptions as subscriptions_repo
from subgov.persistence.repos import usage as usage_repo
from subgov.services.audit import record_event
from subgov.services.provider_client import ProviderClient
from subgov.services.usage_governor import UsageGovernor


logger = logging.getLogger(__name__)

REASON_ADMIN = "admin"


class SubscriptionNotFound(LookupError):
    pass


class SubscriptionService:
    """Admin-facing lifecycle actions; every provider call goes through the resilient client."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        provider_client: ProviderClient,
        governor: UsageGovernor | None = None,
        *,
        time_provider: Callable[[], datetime] | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._provider = provider_client
        self._governor = governor
        self._now = time_provider or utc_now

    async def _require(self, session: AsyncSession, user_id: str) -> Subscription:
        row = await subscriptions_repo.get_subscription(session, user_id)
        if row is None:
            raise SubscriptionNotFound(user_id)
        return row

    async def provision(
        self,
        *,
        user_id: str,
        username: str,
        secret: str,
        tier_id: str,
        expiration_at: datetime,
        email: str | None = None,
        actor: str = "admin",
    ) -> Subscription:
        """Create the local row first so a provider outage leaves a visible pending record."""
        placeholder = f"{PENDING_ACCOUNT_PREFIX}{uuid4().hex}"
        async with self._session_factory() as session:
            await subscriptions_repo.create_subscription(
                session,
                user_id=user_id,
                username=username,
                email=email,
                external_account_id=placeholder,
                tier_id=tier_id,
                expiration_at=expiration_at,
                state=SubscriptionState.PENDING_PROVIDER_SYNC.value,
                sync_status=SyncStatus.PENDING_PROVIDER_SYNC.value,
            )
            await session.commit()

        try:
            created = await self._provider.create_account(username, secret)
        except ProviderError as exc:
            async with self._session_factory() as session:
                await subscriptions_repo.record_sync_error(session, user_id, error=f"{exc.code}: {exc}")
                await record_event(
                    session=session,
                    actor=actor,
                    action="subscription.provisioned",
                    subject_user_id=user_id,
                    outcome="failure",
                    details={"username": username, "tier_id": tier_id, "error": exc.code},
                )
                await session.commit()
            logger.warning("subscription_provision_failed user_id=%s error=%s", user_id, exc.code)
            return await self._reload(user_id)

        async with self._session_factory() as session:
            await subscriptions_repo.transition_state(
                session,
                user_id,
                from_states=[SubscriptionState.PENDING_PROVIDER_SYNC],
                to_state=SubscriptionState.ACTIVE.value,
                values={
                    "external_account_id": created.id,
                    "sync_status": SyncStatus.SYNCED.value,
                    "last_sync_at": self._now(),
                    "last_sync_error": None,
                },
            )
            await record_event(
                session=session,
                actor=actor,
                action="subscription.provisioned",
                subject_user_id=user_id,
                details={"username": username, "tier_id": tier_id, "external_account_id": created.id},
            )
            await session.commit()
        logger.info("subscription_provisioned user_id=%s external_account_id=%s", user_id, created.id)
        return await self._reload(user_id)

    async def admin_disable(self, user_id: str, *, actor: str) -> Subscription:
        async with self._session_factory() as session:
            subscription = await self._require(session, user_id)
            moved = await subscriptions_repo.transition_state(
                session,
                user_id,
                from_states=[
                    SubscriptionState.ACTIVE,
                    SubscriptionState.GRACE_PERIOD,
                    SubscriptionState.PENDING_PROVIDER_SYNC,
                ],
                to_state=SubscriptionState.DISABLED.value,
                values={
                    "sync_status": SyncStatus.PENDING_PROVIDER_SYNC.value,
                    "disable_reason": REASON_ADMIN,
                },
            )
            await usage_repo.cancel_grace_timers(session, user_id)
            await session.commit()
            account_id = subscription.external_account_id

        outcome = "success"
        error: str | None = None
        if not account_id.startswith(PENDING_ACCOUNT_PREFIX):
            try:
                await self._provider.disable_account(account_id)
            except ProviderError as exc:
                # Left pending; the provider sync task retries it.
                outcome = "partial"
                error = exc.code
                logger.warning("subscription_admin_disable_provider_failed user_id=%s error=%s", user_id, exc.code)

        async with self._session_factory() as session:
            if error is None:
                await subscriptions_repo.mark_synced(
                    session, user_id, expected_state=SubscriptionState.DISABLED.value, now=self._now()
                )
            else:
                await subscriptions_repo.record_sync_error(session, user_id, error=error)
            await record_event(
                session=session,
                actor=actor,
                action="subscription.disabled",
                subject_user_id=user_id,
                outcome=outcome,
                details={"transitioned": moved, "provider_error": error},
            )
            await session.commit()
        return await self._reload(user_id)

    async def renew(self, user_id: str, new_expiration_at: datetime, *, actor: str) -> Subscription:
        """Extend and re-enable; a provider failure leaves the state untouched and propagates."""
        async with self._session_factory() as session:
            subscription = await self._require(session, user_id)
            account_id = subscription.external_account_id
            previous_state = subscription.state

        if account_id.startswith(PENDING_ACCOUNT_PREFIX):
            raise ProviderBadRequest("account has not been created on the provider yet")

        try:
            await self._provider.enable_account(account_id)
        except ProviderError as exc:
            async with self._session_factory() as session:
                await subscriptions_repo.record_sync_error(session, user_id, error=f"{exc.code}: {exc}")
                await record_event(
                    session=session,
                    actor=actor,
                    action="subscription.renewed",
                    subject_user_id=user_id,
                    outcome="failure",
                    details={"expiration_at": new_expiration_at, "error": exc.code},
                )
                await session.commit()
            raise

        async with self._session_factory() as session:
            await subscriptions_repo.transition_state(
                session,
                user_id,
                from_states=[previous_state],
                to_state=SubscriptionState.ACTIVE.value,
                values={
                    "expiration_at": new_expiration_at,
                    "sync_status": SyncStatus.SYNCED.value,
                    "disable_reason": None,
                    "last_sync_at": self._now(),
                    "last_sync_error": None,
                },
            )
            if self._governor is not None:
                await self._governor.reset_escalations(session, user_id)
            else:
                await usage_repo.cancel_grace_timers(session, user_id)
            await record_event(
                session=session,
                actor=actor,
                action="subscription.renewed",
                subject_user_id=user_id,
                details={"expiration_at": new_expiration_at, "previous_state": previous_state},
            )
            await session.commit()
        logger.info("subscription_renewed user_id=%s expiration_at=%s", user_id, new_expiration_at.isoformat())
        return await self._reload(user_id)

    async def _reload(self, user_id: str) -> Subscription:
        async with self._session_factory() as session:
            return await self._require(session, user_id)
