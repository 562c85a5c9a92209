from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict, List

from sqlalchemy import delete, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from pms_automation.db.models import Artifact, PmsJob, Task
from pms_automation.domain.errors import JobNotFound
from pms_automation.domain.state_machine import ensure_consistent
from pms_automation.domain.status import AutomationState, AutomationStatusDetail


async def load_job(session: AsyncSession, job_id: str) -> PmsJob:
    res = await session.execute(select(PmsJob).where(PmsJob.id == job_id))
    job = res.scalar_one_or_none()
    if not job:
        raise JobNotFound(job_id)
    return job


def read_status(job: PmsJob) -> AutomationStatusDetail:
    return AutomationStatusDetail.model_validate(job.automation_status)


async def save_status(
    session: AsyncSession,
    *,
    job: PmsJob,
    detail: AutomationStatusDetail,
    commit: bool = True,
) -> AutomationStatusDetail:
    """Replace the job's projection with ``detail`` in a single write."""
    ensure_consistent(detail)
    job.automation_status = detail.to_json()
    job.status = detail.status
    if detail.status in {AutomationState.COMPLETED, AutomationState.FAILED}:
        started = detail.started_at
        if started.tzinfo is None:
            started = started.replace(tzinfo=timezone.utc)
        job.time_elapsed = int((datetime.now(timezone.utc) - started).total_seconds())
    if commit:
        await session.commit()
    return detail


async def next_agent_attempt(session: AsyncSession, job_id: str) -> int:
    res = await session.execute(select(func.max(Artifact.attempt)).where(Artifact.job_id == job_id))
    current = res.scalar_one_or_none()
    return (current or 0) + 1


async def add_artifact(
    session: AsyncSession,
    *,
    job_id: str,
    name: str,
    attempt: int,
    success: bool,
    error: str | None,
    payload: Dict[str, Any],
    result_id: str | None = None,
    after_halt: bool = False,
) -> Artifact:
    artifact = Artifact(
        job_id=job_id,
        name=name,
        attempt=attempt,
        result_id=result_id,
        success=success,
        error=error,
        payload=payload,
        after_halt=after_halt,
    )
    session.add(artifact)
    await session.commit()
    await session.refresh(artifact)
    return artifact


async def latest_agent_artifacts(session: AsyncSession, job_id: str) -> List[Artifact]:
    """Artifacts of the most recent fan-out attempt, excluding late results."""
    attempt = await next_agent_attempt(session, job_id) - 1
    if attempt < 1:
        return []
    res = await session.execute(
        select(Artifact)
        .where(Artifact.job_id == job_id, Artifact.attempt == attempt, Artifact.after_halt.is_(False))
        .order_by(Artifact.id.asc())
    )
    return list(res.scalars().all())


async def replace_tasks(session: AsyncSession, *, job_id: str, tasks: List[Task]) -> None:
    await session.execute(delete(Task).where(Task.job_id == job_id))
    session.add_all(tasks)
    await session.commit()


def agent_result_id(artifact: Artifact) -> str:
    return artifact.result_id or str(artifact.id)
