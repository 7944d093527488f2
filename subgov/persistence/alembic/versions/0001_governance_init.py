"""subscription governance tables and seeded tier limits

Revision ID: 0001_governance_init
Revises:
Create Date: 2026-10-18
"""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


revision = "0001_governance_init"
down_revision = None
branch_labels = None
depends_on = None

_GIB = 1024 * 1024 * 1024
_DAY_S = 86400

_TIERS = [
    # tier_id, storage, streams, sessions, api calls, window, grace, throttle ms
    ("basic", 10 * _GIB, 2, 1, 1000, _DAY_S, _DAY_S, 1000),
    ("premium", 50 * _GIB, 5, 3, 5000, _DAY_S, 2 * _DAY_S, 500),
    ("enterprise", 200 * _GIB, 10, 10, 20000, _DAY_S, 3 * _DAY_S, 100),
]


def upgrade() -> None:
    # Subscription state is the single source of truth for provider access.
    op.create_table(
        "subscriptions",
        sa.Column("user_id", sa.String(), primary_key=True),
        sa.Column("username", sa.String(), nullable=False),
        sa.Column("email", sa.String(), nullable=True),
        sa.Column("external_account_id", sa.String(), nullable=False),
        sa.Column("tier_id", sa.String(), nullable=False),
        sa.Column("expiration_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("state", sa.String(), nullable=False),
        sa.Column("sync_status", sa.String(), nullable=False),
        sa.Column("disable_reason", sa.String(), nullable=True),
        sa.Column("last_sync_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_sync_error", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )
    op.create_index("ix_subscriptions_external_account_id", "subscriptions", ["external_account_id"])
    op.create_index("ix_subscriptions_state_expiration", "subscriptions", ["state", "expiration_at"])
    op.create_index("ix_subscriptions_state_sync", "subscriptions", ["state", "sync_status"])

    tier_limits = op.create_table(
        "tier_limits",
        sa.Column("tier_id", sa.String(), primary_key=True),
        sa.Column("storage_cap", sa.BigInteger(), nullable=False),
        sa.Column("stream_cap", sa.Integer(), nullable=False),
        sa.Column("concurrent_session_cap", sa.Integer(), nullable=False),
        sa.Column("api_call_cap", sa.Integer(), nullable=False),
        sa.Column("window_duration_s", sa.Integer(), nullable=False),
        sa.Column("grace_duration_s", sa.Integer(), nullable=False),
        sa.Column("throttle_delay_ms", sa.Integer(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )
    op.bulk_insert(
        tier_limits,
        [
            {
                "tier_id": tier_id,
                "storage_cap": storage,
                "stream_cap": streams,
                "concurrent_session_cap": sessions,
                "api_call_cap": api_calls,
                "window_duration_s": window,
                "grace_duration_s": grace,
                "throttle_delay_ms": throttle,
            }
            for tier_id, storage, streams, sessions, api_calls, window, grace, throttle in _TIERS
        ],
    )

    # Counters are mutated only through the usage governor.
    op.create_table(
        "usage_counters",
        sa.Column("user_id", sa.String(), primary_key=True),
        sa.Column("storage_bytes", sa.BigInteger(), nullable=False, server_default="0"),
        sa.Column("active_streams", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("concurrent_sessions", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("api_calls_in_window", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("window_started_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )
    op.create_table(
        "usage_history",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column("user_id", sa.String(), nullable=False),
        sa.Column("metric", sa.String(), nullable=False),
        sa.Column("delta", sa.BigInteger(), nullable=False),
        sa.Column("value_after", sa.BigInteger(), nullable=False),
        sa.Column("recorded_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("details", postgresql.JSONB(), nullable=True),
    )
    op.create_index("ix_usage_history_user_recorded", "usage_history", ["user_id", "recorded_at"])

    # Persisted escalation machine; grace_ends_at replaces in-process timers.
    op.create_table(
        "usage_escalations",
        sa.Column("user_id", sa.String(), primary_key=True),
        sa.Column("metric", sa.String(), primary_key=True),
        sa.Column("state", sa.String(), nullable=False),
        sa.Column("grace_ends_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )
    op.create_index("ix_usage_escalations_state_grace", "usage_escalations", ["state", "grace_ends_at"])

    op.create_table(
        "notification_preferences",
        sa.Column("user_id", sa.String(), primary_key=True),
        sa.Column("email", sa.String(), nullable=True),
        sa.Column("email_enabled", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column("telegram_chat_id", sa.String(), nullable=True),
        sa.Column("telegram_enabled", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("quiet_hours_start", sa.String(), nullable=True),
        sa.Column("quiet_hours_end", sa.String(), nullable=True),
        sa.Column("timezone", sa.String(), nullable=False, server_default="UTC"),
    )
    op.create_table(
        "scheduled_notifications",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("user_id", sa.String(), nullable=False),
        sa.Column("kind", sa.String(), nullable=False),
        sa.Column("due_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("payload", postgresql.JSONB(), nullable=True),
        sa.Column("status", sa.String(), nullable=False, server_default="pending"),
        sa.Column("attempted_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )
    op.create_index("ix_scheduled_notifications_status_due", "scheduled_notifications", ["status", "due_at"])
    op.create_index("ix_scheduled_notifications_user_kind", "scheduled_notifications", ["user_id", "kind"])

    # Successful delivery rows are the dedup source of truth.
    op.create_table(
        "notification_deliveries",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column("user_id", sa.String(), nullable=False),
        sa.Column("kind", sa.String(), nullable=False),
        sa.Column("channel", sa.String(), nullable=False),
        sa.Column("success", sa.Boolean(), nullable=False),
        sa.Column("error", sa.Text(), nullable=True),
        sa.Column("delivered_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index(
        "ix_notification_deliveries_dedup",
        "notification_deliveries",
        ["user_id", "kind", "success", "delivered_at"],
    )

    op.create_table(
        "audit_events",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column("occurred_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("actor", sa.String(), nullable=False),
        sa.Column("action", sa.String(), nullable=False),
        sa.Column("subject_user_id", sa.String(), nullable=True),
        sa.Column("outcome", sa.String(), nullable=False, server_default="success"),
        sa.Column("category", sa.String(), nullable=False, server_default="business"),
        sa.Column("details", postgresql.JSONB(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )
    op.create_index("ix_audit_events_occurred_at", "audit_events", ["occurred_at"])
    op.create_index("ix_audit_events_action", "audit_events", ["action"])
    op.create_index("ix_audit_events_subject_user_id", "audit_events", ["subject_user_id"])
    op.create_index("ix_audit_events_category", "audit_events", ["category"])

    op.create_table(
        "task_runs",
        sa.Column("task_name", sa.String(), primary_key=True),
        sa.Column("last_started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_finished_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_status", sa.String(), nullable=True),
        sa.Column("last_details", postgresql.JSONB(), nullable=True),
    )


def downgrade() -> None:
    op.drop_table("task_runs")

    op.drop_index("ix_audit_events_category", table_name="audit_events")
    op.drop_index("ix_audit_events_subject_user_id", table_name="audit_events")
    op.drop_index("ix_audit_events_action", table_name="audit_events")
    op.drop_index("ix_audit_events_occurred_at", table_name="audit_events")
    op.drop_table("audit_events")

    op.drop_index("ix_notification_deliveries_dedup", table_name="notification_deliveries")
    op.drop_table("notification_deliveries")
    op.drop_index("ix_scheduled_notifications_user_kind", table_name="scheduled_notifications")
    op.drop_index("ix_scheduled_notifications_status_due", table_name="scheduled_notifications")
    op.drop_table("scheduled_notifications")
    op.drop_table("notification_preferences")

    op.drop_index("ix_usage_escalations_state_grace", table_name="usage_escalations")
    op.drop_table("usage_escalations")
    op.drop_index("ix_usage_history_user_recorded", table_name="usage_history")
    op.drop_table("usage_history")
    op.drop_table("usage_counters")
    op.drop_table("tier_limits")

    op.drop_index("ix_subscriptions_state_sync", table_name="subscriptions")
    op.drop_index("ix_subscriptions_state_expiration", table_name="subscriptions")
    op.drop_index("ix_subscriptions_external_account_id", table_name="subscriptions")
    op.drop_table("subscriptions")
