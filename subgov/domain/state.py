from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum


class SubscriptionState(str, Enum):
    ACTIVE = "active"
    GRACE_PERIOD = "grace_period"
    DISABLED = "disabled"
    # Created locally, provider account not confirmed yet; unrelated to SyncStatus.PENDING_PROVIDER_SYNC.
    PENDING_PROVIDER_SYNC = "pending_provider_sync"


class SyncStatus(str, Enum):
    SYNCED = "synced"
    PENDING_PROVIDER_SYNC = "pending_provider_sync"


class EscalationState(str, Enum):
    NORMAL = "normal"
    WARNED = "warned"
    GRACE_PERIOD = "grace_period"
    RESTRICTED = "restricted"


class UsageMetric(str, Enum):
    STORAGE = "storage"
    STREAMS = "streams"
    CONCURRENT_SESSIONS = "concurrent_sessions"
    API_CALLS = "api_calls"


class NotificationStatus(str, Enum):
    PENDING = "pending"
    SENT = "sent"
    FAILED = "failed"
    SKIPPED = "skipped"


class NotificationKind(str, Enum):
    EXPIRATION_WARNING = "expiration_warning"
    SUBSCRIPTION_EXPIRED = "subscription_expired"
    USAGE_ALERT = "usage_alert"
    LIMIT_EXCEEDED = "limit_exceeded"
    ACCOUNT_RESTRICTED = "account_restricted"


PENDING_ACCOUNT_PREFIX = "pending-"

_GIB = 1024 * 1024 * 1024
_HOUR_S = 3600


@dataclass(frozen=True)
class TierLimits:
    tier_id: str
    storage_cap: int
    stream_cap: int
    concurrent_session_cap: int
    api_call_cap: int
    window_duration_s: int
    grace_duration_s: int
    throttle_delay_ms: int

    def cap_for(self, metric: UsageMetric) -> int:
        return {
            UsageMetric.STORAGE: self.storage_cap,
            UsageMetric.STREAMS: self.stream_cap,
            UsageMetric.CONCURRENT_SESSIONS: self.concurrent_session_cap,
            UsageMetric.API_CALLS: self.api_call_cap,
        }[metric]

    @property
    def window_duration(self) -> timedelta:
        return timedelta(seconds=self.window_duration_s)

    @property
    def grace_duration(self) -> timedelta:
        return timedelta(seconds=self.grace_duration_s)

    @property
    def throttle_delay_s(self) -> float:
        return self.throttle_delay_ms / 1000.0


# Built-in tiers used when no tier_limits row exists for a subscription's tier.
DEFAULT_TIER_LIMITS: dict[str, TierLimits] = {
    "basic": TierLimits(
        tier_id="basic",
        storage_cap=10 * _GIB,
        stream_cap=2,
        concurrent_session_cap=1,
        api_call_cap=1000,
        window_duration_s=24 * _HOUR_S,
        grace_duration_s=24 * _HOUR_S,
        throttle_delay_ms=1000,
    ),
    "premium": TierLimits(
        tier_id="premium",
        storage_cap=50 * _GIB,
        stream_cap=5,
        concurrent_session_cap=3,
        api_call_cap=5000,
        window_duration_s=24 * _HOUR_S,
        grace_duration_s=48 * _HOUR_S,
        throttle_delay_ms=500,
    ),
    "enterprise": TierLimits(
        tier_id="enterprise",
        storage_cap=200 * _GIB,
        stream_cap=10,
        concurrent_session_cap=10,
        api_call_cap=20000,
        window_duration_s=24 * _HOUR_S,
        grace_duration_s=72 * _HOUR_S,
        throttle_delay_ms=100,
    ),
}


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime | None) -> datetime | None:
    # SQLite hands back naive datetimes; everything stored here is UTC.
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)
