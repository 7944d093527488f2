from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta, timezone, tzinfo
from enum import Enum
import logging
import math
from typing import Any, Callable
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from subgov.core.config import EXPIRATION_WARNING_DAYS, get_settings
from subgov.core.errors import NotificationDeliveryFailed
from subgov.domain.models import NotificationPreference, ScheduledNotification, Subscription
from subgov.domain.state import NotificationKind, NotificationStatus, as_utc, utc_now
from subgov.persistence.repos import notifications as notifications_repo
from subgov.persistence.repos import subscriptions as subscriptions_repo
from subgov.providers.notify.base import NotificationDispatcher
from subgov.services.audit import record_event


logger = logging.getLogger(__name__)

CHANNEL_EMAIL = "email"
CHANNEL_TELEGRAM = "telegram"


class NotificationDecision(str, Enum):
    SENT = "sent"
    DEFERRED = "deferred"
    DEDUPLICATED = "deduplicated"
    FAILED = "failed"
    NO_CHANNEL = "no_channel"
    DISABLED = "disabled"


def parse_hhmm(value: str | None) -> time | None:
    if not value:
        return None
    hours, _, minutes = value.strip().partition(":")
    try:
        return time(hour=int(hours), minute=int(minutes or 0))
    except ValueError:
        logger.warning("quiet_hours_invalid value=%s", value)
        return None


def resolve_zone(name: str | None) -> tzinfo:
    if not name or name.upper() == "UTC":
        return timezone.utc
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError):
        logger.warning("quiet_hours_unknown_timezone tz=%s", name)
        return timezone.utc


def quiet_window_end(now: datetime, start: str | None, end: str | None, tz_name: str | None) -> datetime | None:
    """Return when the quiet window ends if ``now`` falls inside ``[start, end)``, else None.

    Windows are evaluated in the user's timezone and may wrap midnight (22:00-08:00).
    """
    start_t = parse_hhmm(start)
    end_t = parse_hhmm(end)
    if start_t is None or end_t is None or start_t == end_t:
        return None
    zone = resolve_zone(tz_name)
    local = now.astimezone(zone)
    current = local.time()
    today: date = local.date()
    if start_t < end_t:
        if not (start_t <= current < end_t):
            return None
        ends = datetime.combine(today, end_t, tzinfo=zone)
    else:
        if current >= start_t:
            ends = datetime.combine(today + timedelta(days=1), end_t, tzinfo=zone)
        elif current < end_t:
            ends = datetime.combine(today, end_t, tzinfo=zone)
        else:
            return None
    return ends.astimezone(timezone.utc)


def _kind_value(kind: str | NotificationKind) -> str:
    return kind.value if isinstance(kind, NotificationKind) else str(kind)


def days_remaining(expiration_at: datetime, now: datetime) -> int:
    return math.ceil((expiration_at - now) / timedelta(days=1))


@dataclass
class DrainResult:
    claimed: int = 0
    sent: int = 0
    failed: int = 0
    skipped: int = 0
    deferred: int = 0

    def as_dict(self) -> dict[str, int]:
        return {
            "claimed": self.claimed,
            "sent": self.sent,
            "failed": self.failed,
            "skipped": self.skipped,
            "deferred": self.deferred,
        }


@dataclass
class WarningRunResult:
    checked: int = 0
    outcomes: dict[str, int] = field(default_factory=dict)

    def as_dict(self) -> dict[str, Any]:
        return {"checked": self.checked, **self.outcomes}


@dataclass(frozen=True)
class _Channel:
    name: str
    recipient: str


class NotificationScheduler:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        dispatcher: NotificationDispatcher,
        *,
        dedup_hours: int | None = None,
        enabled: bool | None = None,
        time_provider: Callable[[], datetime] | None = None,
    ) -> None:
        settings = get_settings()
        self._session_factory = session_factory
        self._dispatcher = dispatcher
        self._dedup_hours = dedup_hours if dedup_hours is not None else settings.notify_dedup_hours
        self._enabled = settings.notifications_enabled if enabled is None else enabled
        self._now = time_provider or utc_now

    async def should_send_now(self, user_id: str, kind: str, within_hours: int | None = None) -> bool:
        # False when the same kind already reached this user inside the dedup window.
        hours = self._dedup_hours if within_hours is None else within_hours
        since = self._now() - timedelta(hours=hours)
        async with self._session_factory() as session:
            return not await notifications_repo.delivered_since(
                session, user_id=user_id, kind=_kind_value(kind), since=since
            )

    async def schedule(
        self,
        user_id: str,
        kind: str,
        payload: dict[str, Any] | None,
        due_at: datetime,
    ) -> ScheduledNotification:
        # One pending entry per (user, kind); scheduling again keeps its due time and takes the newer payload.
        kind = _kind_value(kind)
        async with self._session_factory() as session:
            existing = await notifications_repo.find_pending(session, user_id=user_id, kind=kind)
            if existing is not None:
                if existing.payload != payload:
                    existing.payload = payload
                    await session.commit()
                return existing
            row = await notifications_repo.create_scheduled(
                session,
                user_id=user_id,
                kind=kind,
                due_at=due_at,
                payload=payload,
            )
            await session.commit()
            logger.info("notification_scheduled user_id=%s kind=%s due_at=%s", user_id, kind, due_at.isoformat())
            return row

    def _channels(self, preference: NotificationPreference | None, subscription: Subscription | None) -> list[_Channel]:
        channels: list[_Channel] = []
        fallback_email = subscription.email if subscription is not None else None
        if preference is None:
            if fallback_email:
                channels.append(_Channel(CHANNEL_EMAIL, fallback_email))
            return channels
        email = preference.email or fallback_email
        if preference.email_enabled and email:
            channels.append(_Channel(CHANNEL_EMAIL, email))
        if preference.telegram_enabled and preference.telegram_chat_id:
            channels.append(_Channel(CHANNEL_TELEGRAM, preference.telegram_chat_id))
        return channels

    async def _deliver(
        self,
        session: AsyncSession,
        *,
        user_id: str,
        kind: str,
        payload: dict[str, Any],
        channels: list[_Channel],
    ) -> tuple[bool, list[str]]:
        delivered = False
        errors: list[str] = []
        now = self._now()
        for channel in channels:
            try:
                outcome = await self._dispatcher.deliver(channel.name, channel.recipient, kind, payload)
                success, error = outcome.success, outcome.error
            except NotificationDeliveryFailed as exc:
                success, error = False, str(exc)
            await notifications_repo.add_delivery(
                session,
                user_id=user_id,
                kind=kind,
                channel=channel.name,
                success=success,
                error=error,
                delivered_at=now,
            )
            if success:
                delivered = True
            else:
                errors.append(f"{channel.name}:{error or 'unknown'}")
        return delivered, errors

    async def _audit_failure(self, session: AsyncSession, *, user_id: str, kind: str, errors: list[str]) -> None:
        # Delivery failures are surfaced for follow-up; they never touch subscription state.
        logger.warning("notification_failed user_id=%s kind=%s errors=%s", user_id, kind, errors)
        await record_event(
            session=session,
            actor="notification_scheduler",
            action="notification.failed",
            subject_user_id=user_id,
            outcome="failure",
            details={"kind": kind, "errors": errors},
        )

    async def notify(self, user_id: str, kind: str, payload: dict[str, Any] | None = None) -> NotificationDecision:
        """Dedup, then quiet-hours deferral, then immediate delivery on every enabled channel."""
        kind = _kind_value(kind)
        payload = dict(payload or {})
        if not self._enabled:
            return NotificationDecision.DISABLED
        if not await self.should_send_now(user_id, kind):
            logger.info("notification_deduplicated user_id=%s kind=%s", user_id, kind)
            return NotificationDecision.DEDUPLICATED
        now = self._now()
        async with self._session_factory() as session:
            preference = await notifications_repo.get_preference(session, user_id)
            subscription = await subscriptions_repo.get_subscription(session, user_id)
        if preference is not None:
            window_end = quiet_window_end(
                now, preference.quiet_hours_start, preference.quiet_hours_end, preference.timezone
            )
            if window_end is not None:
                await self.schedule(user_id, kind, payload, window_end)
                return NotificationDecision.DEFERRED
        channels = self._channels(preference, subscription)
        if not channels:
            logger.info("notification_no_channel user_id=%s kind=%s", user_id, kind)
            return NotificationDecision.NO_CHANNEL
        async with self._session_factory() as session:
            delivered, errors = await self._deliver(
                session, user_id=user_id, kind=kind, payload=payload, channels=channels
            )
            if not delivered:
                await self._audit_failure(session, user_id=user_id, kind=kind, errors=errors)
            await session.commit()
        return NotificationDecision.SENT if delivered else NotificationDecision.FAILED

    async def drain(self, limit: int | None = None) -> DrainResult:
        """Deliver due deferred entries; failures are final and audited, never retried here."""
        batch = limit if limit is not None else get_settings().notify_drain_batch_size
        result = DrainResult()
        now = self._now()
        async with self._session_factory() as session:
            due = await notifications_repo.list_due(session, now=now, limit=batch)
        result.claimed = len(due)
        for row in due:
            async with self._session_factory() as session:
                await self._drain_one(session, row, result)
                await session.commit()
        if result.claimed:
            logger.info("notification_drain_completed %s", " ".join(f"{k}={v}" for k, v in result.as_dict().items()))
        return result

    async def _drain_one(self, session: AsyncSession, row: ScheduledNotification, result: DrainResult) -> None:
        now = self._now()
        since = now - timedelta(hours=self._dedup_hours)
        if await notifications_repo.delivered_since(session, user_id=row.user_id, kind=row.kind, since=since):
            if await notifications_repo.finish_scheduled(
                session, row.id, status=NotificationStatus.SKIPPED, attempted_at=now, error="deduplicated"
            ):
                result.skipped += 1
            return
        preference = await notifications_repo.get_preference(session, row.user_id)
        if preference is not None:
            window_end = quiet_window_end(
                now, preference.quiet_hours_start, preference.quiet_hours_end, preference.timezone
            )
            if window_end is not None:
                # Preferences changed since scheduling; keep waiting for the new window end.
                await notifications_repo.reschedule(session, row.id, due_at=window_end)
                result.deferred += 1
                return
        subscription = await subscriptions_repo.get_subscription(session, row.user_id)
        channels = self._channels(preference, subscription)
        if not channels:
            if await notifications_repo.finish_scheduled(
                session, row.id, status=NotificationStatus.SKIPPED, attempted_at=now, error="no_channel"
            ):
                result.skipped += 1
            return
        delivered, errors = await self._deliver(
            session, user_id=row.user_id, kind=row.kind, payload=dict(row.payload or {}), channels=channels
        )
        if delivered:
            if await notifications_repo.finish_scheduled(
                session, row.id, status=NotificationStatus.SENT, attempted_at=now
            ):
                result.sent += 1
            return
        if await notifications_repo.finish_scheduled(
            session, row.id, status=NotificationStatus.FAILED, attempted_at=now, error="; ".join(errors)[:1000]
        ):
            result.failed += 1
        await self._audit_failure(session, user_id=row.user_id, kind=row.kind, errors=errors)

    async def send_expiration_warnings(self) -> WarningRunResult:
        # Warnings go out only on the fixed remaining-day marks.
        now = self._now()
        horizon = now + timedelta(days=max(EXPIRATION_WARNING_DAYS))
        async with self._session_factory() as session:
            rows = await subscriptions_repo.list_active_expiring_before(session, now=now, until=horizon)
        result = WarningRunResult()
        for row in rows:
            expiration_at = as_utc(row.expiration_at)
            if expiration_at is None:
                continue
            remaining = days_remaining(expiration_at, now)
            if remaining not in EXPIRATION_WARNING_DAYS:
                continue
            result.checked += 1
            outcome = await self.notify(
                row.user_id,
                NotificationKind.EXPIRATION_WARNING.value,
                {
                    "username": row.username,
                    "days_remaining": remaining,
                    "expiration_at": expiration_at.isoformat(),
                },
            )
            result.outcomes[outcome.value] = result.outcomes.get(outcome.value, 0) + 1
        logger.info("expiration_warnings_completed %s", result.as_dict())
        return result
