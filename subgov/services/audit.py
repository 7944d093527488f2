from __future__ import annotations

from datetime import datetime, timezone
import logging
from typing import Any

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from subgov.domain.models import AuditEvent


logger = logging.getLogger(__name__)

CATEGORY_BUSINESS = "business"
CATEGORY_METRIC = "metric"

_SENSITIVE_KEY_PATTERNS = ["api_key", "authorization", "token", "secret", "password"]
_REDACTED_VALUE = "[REDACTED]"


def _is_sensitive_key(key: str) -> bool:
    lowered = key.lower()
    return any(pattern in lowered for pattern in _SENSITIVE_KEY_PATTERNS)


def sanitize_metadata(value: Any) -> Any:
    # Recursively scrub credential-like fields while preserving safe structure.
    if isinstance(value, dict):
        sanitized: dict[str, Any] = {}
        for raw_key, raw_value in value.items():
            key = str(raw_key)
            if _is_sensitive_key(key):
                sanitized[key] = _REDACTED_VALUE
            else:
                sanitized[key] = sanitize_metadata(raw_value)
        return sanitized
    if isinstance(value, (list, tuple)):
        return [sanitize_metadata(item) for item in value]
    if isinstance(value, datetime):
        return value.isoformat()
    return value


def _session_factory(session_factory: async_sessionmaker[AsyncSession] | None) -> async_sessionmaker[AsyncSession]:
    if session_factory is not None:
        return session_factory
    from subgov.persistence.db import SessionLocal

    return SessionLocal


async def record_event(
    *,
    session: AsyncSession | None = None,
    session_factory: async_sessionmaker[AsyncSession] | None = None,
    occurred_at: datetime | None = None,
    actor: str,
    action: str,
    subject_user_id: str | None = None,
    outcome: str = "success",
    category: str = CATEGORY_BUSINESS,
    details: dict[str, Any] | None = None,
    commit: bool | None = None,
    best_effort: bool = True,
) -> None:
    # Append-only audit write; best-effort writes never break the calling flow.
    event = AuditEvent(
        occurred_at=occurred_at or datetime.now(timezone.utc),
        actor=actor,
        action=action,
        subject_user_id=subject_user_id,
        outcome=outcome,
        category=category,
        details=sanitize_metadata(details or {}),
    )

    if session is None:
        async with _session_factory(session_factory)() as audit_session:
            try:
                audit_session.add(event)
                await audit_session.commit()
            except SQLAlchemyError as exc:
                await audit_session.rollback()
                if not best_effort:
                    raise
                logger.warning("audit_event_write_failed action=%s subject=%s", action, subject_user_id, exc_info=exc)
        return

    resolved_commit = commit if commit is not None else False
    try:
        session.add(event)
        if resolved_commit:
            await session.commit()
    except SQLAlchemyError as exc:
        if resolved_commit:
            await session.rollback()
        if not best_effort:
            raise
        logger.warning("audit_event_write_failed action=%s subject=%s", action, subject_user_id, exc_info=exc)


async def record_metric(
    *,
    session_factory: async_sessionmaker[AsyncSession] | None = None,
    actor: str,
    action: str,
    outcome: str,
    details: dict[str, Any] | None = None,
    occurred_at: datetime | None = None,
) -> None:
    # Timing rows live beside the audit trail but are filtered out of business listings.
    await record_event(
        session_factory=session_factory,
        occurred_at=occurred_at,
        actor=actor,
        action=action,
        outcome=outcome,
        category=CATEGORY_METRIC,
        details=details,
        best_effort=True,
    )


async def list_events(
    session: AsyncSession,
    *,
    action: str | None = None,
    subject_user_id: str | None = None,
    category: str | None = CATEGORY_BUSINESS,
    limit: int = 100,
) -> list[AuditEvent]:
    query = select(AuditEvent)
    if action is not None:
        query = query.where(AuditEvent.action == action)
    if subject_user_id is not None:
        query = query.where(AuditEvent.subject_user_id == subject_user_id)
    if category is not None:
        query = query.where(AuditEvent.category == category)
    query = query.order_by(AuditEvent.occurred_at.desc(), AuditEvent.id.desc()).limit(limit)
    return list((await session.execute(query)).scalars().all())
