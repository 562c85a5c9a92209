from __future__ import annotations

import math
from dataclasses import dataclass
from typing import List, Optional, Sequence

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from pms_automation.core.config import settings
from pms_automation.db.models import PmsJob
from pms_automation.domain.status import AutomationState, AutomationStatusDetail
from pms_automation.runtime.store import load_job, read_status


@dataclass
class JobPage:
    jobs: List[PmsJob]
    page: int
    per_page: int
    total: int

    @property
    def total_pages(self) -> int:
        return max(1, math.ceil(self.total / self.per_page)) if self.per_page else 1

    @property
    def has_next_page(self) -> bool:
        return self.page < self.total_pages


async def get_automation_status(session: AsyncSession, job_id: str) -> AutomationStatusDetail:
    # the projection is one JSON value written in a single commit
    return read_status(await load_job(session, job_id))


async def list_jobs(
    session: AsyncSession,
    *,
    statuses: Optional[Sequence[AutomationState]] = None,
    is_approved: Optional[bool] = None,
    organization_id: Optional[str] = None,
    domain: Optional[str] = None,
    page: int = 1,
    per_page: Optional[int] = None,
) -> JobPage:
    per_page = min(max(1, per_page or settings.jobs_per_page), settings.max_jobs_per_page)
    page = max(1, page)

    conditions = []
    if statuses:
        conditions.append(PmsJob.status.in_(list(statuses)))
    if is_approved is not None:
        conditions.append(PmsJob.is_approved == is_approved)
    if organization_id:
        conditions.append(PmsJob.organization_id == organization_id)
    if domain:
        conditions.append(PmsJob.domain == domain)

    total = (await session.execute(select(func.count(PmsJob.id)).where(*conditions))).scalar_one()
    res = await session.execute(
        select(PmsJob)
        .where(*conditions)
        .order_by(PmsJob.created_at.desc(), PmsJob.id.asc())
        .offset((page - 1) * per_page)
        .limit(per_page)
    )
    return JobPage(jobs=list(res.scalars().all()), page=page, per_page=per_page, total=total)


async def list_active_jobs(session: AsyncSession, *, organization_id: Optional[str] = None) -> List[PmsJob]:
    stmt = select(PmsJob).where(PmsJob.status != AutomationState.COMPLETED)
    if organization_id:
        stmt = stmt.where(PmsJob.organization_id == organization_id)
    res = await session.execute(stmt.order_by(PmsJob.created_at.desc()))
    return list(res.scalars().all())
