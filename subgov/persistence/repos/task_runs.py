from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from subgov.domain.models import TaskRun


async def get_task_run(session: AsyncSession, task_name: str) -> TaskRun | None:
    result = await session.execute(select(TaskRun).where(TaskRun.task_name == task_name))
    return result.scalar_one_or_none()


async def list_task_runs(session: AsyncSession) -> list[TaskRun]:
    result = await session.execute(select(TaskRun).order_by(TaskRun.task_name))
    return list(result.scalars().all())


async def mark_started(session: AsyncSession, task_name: str, *, now: datetime) -> TaskRun:
    row = await get_task_run(session, task_name)
    if row is None:
        row = TaskRun(task_name=task_name)
        session.add(row)
    row.last_started_at = now
    row.last_status = "running"
    await session.flush()
    return row


async def mark_finished(
    session: AsyncSession,
    task_name: str,
    *,
    now: datetime,
    status: str,
    details: dict[str, Any] | None = None,
) -> TaskRun:
    row = await get_task_run(session, task_name)
    if row is None:
        row = TaskRun(task_name=task_name, last_started_at=now)
        session.add(row)
    row.last_finished_at = now
    row.last_status = status
    row.last_details = details
    await session.flush()
    return row
