from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    DateTime,
    Index,
    Integer,
    String,
    Text,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from subgov.domain.state import NotificationStatus, SubscriptionState, SyncStatus


# JSONB on Postgres, plain JSON elsewhere (SQLite in tests).
JsonType = JSON().with_variant(JSONB(), "postgresql")
# SQLite only autoincrements INTEGER PRIMARY KEY columns.
BigIntId = BigInteger().with_variant(Integer(), "sqlite")


class Base(DeclarativeBase):
    pass


class Subscription(Base):
    __tablename__ = "subscriptions"
    __table_args__ = (
        Index("ix_subscriptions_state_expiration", "state", "expiration_at"),
        Index("ix_subscriptions_state_sync", "state", "sync_status"),
    )

    # One row per user, soft-disabled instead of deleted.
    user_id: Mapped[str] = mapped_column(String, primary_key=True)
    username: Mapped[str] = mapped_column(String)
    email: Mapped[str | None] = mapped_column(String, nullable=True)
    # Holds a pending-* placeholder until the provider confirms account creation.
    external_account_id: Mapped[str] = mapped_column(String, index=True)
    tier_id: Mapped[str] = mapped_column(String)
    expiration_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    # Sole source of truth for whether the provider account should be enabled.
    state: Mapped[str] = mapped_column(String, default=SubscriptionState.ACTIVE.value)
    sync_status: Mapped[str] = mapped_column(String, default=SyncStatus.SYNCED.value)
    disable_reason: Mapped[str | None] = mapped_column(String, nullable=True)
    last_sync_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    last_sync_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )


class TierLimit(Base):
    __tablename__ = "tier_limits"

    # Immutable reference data; rows are seeded by migrations and read through a cache.
    tier_id: Mapped[str] = mapped_column(String, primary_key=True)
    storage_cap: Mapped[int] = mapped_column(BigInteger)
    stream_cap: Mapped[int] = mapped_column(Integer)
    concurrent_session_cap: Mapped[int] = mapped_column(Integer)
    api_call_cap: Mapped[int] = mapped_column(Integer)
    window_duration_s: Mapped[int] = mapped_column(Integer)
    grace_duration_s: Mapped[int] = mapped_column(Integer)
    throttle_delay_ms: Mapped[int] = mapped_column(Integer)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class UsageCounter(Base):
    __tablename__ = "usage_counters"

    user_id: Mapped[str] = mapped_column(String, primary_key=True)
    storage_bytes: Mapped[int] = mapped_column(BigInteger, default=0)
    active_streams: Mapped[int] = mapped_column(Integer, default=0)
    concurrent_sessions: Mapped[int] = mapped_column(Integer, default=0)
    api_calls_in_window: Mapped[int] = mapped_column(Integer, default=0)
    window_started_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )


class UsageHistory(Base):
    __tablename__ = "usage_history"
    __table_args__ = (Index("ix_usage_history_user_recorded", "user_id", "recorded_at"),)

    id: Mapped[int] = mapped_column(BigIntId, primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(String)
    # Metric name, or api_reset when the counting window rolled over.
    metric: Mapped[str] = mapped_column(String)
    delta: Mapped[int] = mapped_column(BigInteger)
    value_after: Mapped[int] = mapped_column(BigInteger)
    recorded_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    details: Mapped[dict[str, Any] | None] = mapped_column(JsonType, nullable=True)


class UsageEscalation(Base):
    __tablename__ = "usage_escalations"
    __table_args__ = (Index("ix_usage_escalations_state_grace", "state", "grace_ends_at"),)

    # Persisted escalation state so grace periods survive restarts.
    user_id: Mapped[str] = mapped_column(String, primary_key=True)
    metric: Mapped[str] = mapped_column(String, primary_key=True)
    state: Mapped[str] = mapped_column(String)
    grace_ends_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )


class NotificationPreference(Base):
    __tablename__ = "notification_preferences"

    user_id: Mapped[str] = mapped_column(String, primary_key=True)
    email: Mapped[str | None] = mapped_column(String, nullable=True)
    email_enabled: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    telegram_chat_id: Mapped[str | None] = mapped_column(String, nullable=True)
    telegram_enabled: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    # HH:MM in the user's timezone; the window may wrap midnight.
    quiet_hours_start: Mapped[str | None] = mapped_column(String, nullable=True)
    quiet_hours_end: Mapped[str | None] = mapped_column(String, nullable=True)
    timezone: Mapped[str] = mapped_column(String, default="UTC")


class ScheduledNotification(Base):
    __tablename__ = "scheduled_notifications"
    __table_args__ = (
        Index("ix_scheduled_notifications_status_due", "status", "due_at"),
        Index("ix_scheduled_notifications_user_kind", "user_id", "kind"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True)
    user_id: Mapped[str] = mapped_column(String)
    kind: Mapped[str] = mapped_column(String)
    due_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    payload: Mapped[dict[str, Any] | None] = mapped_column(JsonType, nullable=True)
    status: Mapped[str] = mapped_column(String, default=NotificationStatus.PENDING.value)
    attempted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class NotificationDelivery(Base):
    __tablename__ = "notification_deliveries"
    __table_args__ = (
        Index("ix_notification_deliveries_dedup", "user_id", "kind", "success", "delivered_at"),
    )

    # Per-channel delivery log; successful rows drive dedup windows.
    id: Mapped[int] = mapped_column(BigIntId, primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(String)
    kind: Mapped[str] = mapped_column(String)
    channel: Mapped[str] = mapped_column(String)
    success: Mapped[bool] = mapped_column(Boolean)
    error: Mapped[str | None] = mapped_column(Text, nullable=True)
    delivered_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))


class AuditEvent(Base):
    __tablename__ = "audit_events"

    id: Mapped[int] = mapped_column(BigIntId, primary_key=True, autoincrement=True)
    occurred_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), index=True)
    # Admin id, or a component name for system-driven events.
    actor: Mapped[str] = mapped_column(String)
    action: Mapped[str] = mapped_column(String, index=True)
    subject_user_id: Mapped[str | None] = mapped_column(String, index=True, nullable=True)
    outcome: Mapped[str] = mapped_column(String, default="success")
    # business rows are the audit trail; metric rows are provider call timings.
    category: Mapped[str] = mapped_column(String, default="business", index=True)
    details: Mapped[dict[str, Any] | None] = mapped_column(JsonType, default=dict)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class TaskRun(Base):
    __tablename__ = "task_runs"

    # Durable last-run bookkeeping for interval scheduling across restarts.
    task_name: Mapped[str] = mapped_column(String, primary_key=True)
    last_started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    last_finished_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    last_status: Mapped[str | None] = mapped_column(String, nullable=True)
    last_details: Mapped[dict[str, Any] | None] = mapped_column(JsonType, nullable=True)
