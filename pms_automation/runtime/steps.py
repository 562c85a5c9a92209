from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import List, Optional

from pydantic import ValidationError
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from pms_automation.agents.contracts import ProposedTask
from pms_automation.db.models import JobSource, PmsJob, Task, TaskCategory
from pms_automation.domain.errors import StepExecutionFailed
from pms_automation.domain.status import (
    AgentResult,
    AutomationStatusDetail,
    AutomationSummary,
    MonthlyAgentKey,
    StepKey,
    TasksCreated,
)
from pms_automation.parsing.pms_csv import parse_pms_csv
from pms_automation.runtime.store import agent_result_id, latest_agent_artifacts, replace_tasks

logger = logging.getLogger(__name__)


# -----------------------
# file_upload / pms_parser
# -----------------------

def run_file_upload(job: PmsJob) -> str:
    if job.source == JobSource.CSV and not (job.source_text or "").strip():
        raise StepExecutionFailed(StepKey.FILE_UPLOAD, "Uploaded file is empty", job_id=job.id)
    name = job.filename or "upload"
    return f"Received {name}"


def run_pms_parser(job: PmsJob) -> str:
    result = parse_pms_csv(job.source_text or "")
    if not result.ok:
        raise StepExecutionFailed(StepKey.PMS_PARSER, result.error_message(), job_id=job.id)

    job.response_log = {"records": result.records, "recordsProcessed": len(result.records)}
    logger.info("job %s: parsed %d PMS records", job.id, len(result.records))
    return f"Parsed {len(result.records)} PMS records"


# -----------------------
# task_creation
# -----------------------

def _proposed_tasks(payload: dict) -> List[ProposedTask]:
    tasks: List[ProposedTask] = []
    for raw in payload.get("tasks") or []:
        try:
            tasks.append(ProposedTask.model_validate(raw))
        except ValidationError:
            # a malformed proposal is dropped, the rest of the agent output still counts
            logger.warning("ignoring malformed task proposal: %r", raw)
    return tasks


async def run_task_creation(session: AsyncSession, job: PmsJob) -> str:
    artifacts = await latest_agent_artifacts(session, job.id)

    rows: List[Task] = []
    for artifact in artifacts:
        if not artifact.success or artifact.name == MonthlyAgentKey.DATA_FETCH.value:
            continue
        for proposal in _proposed_tasks(artifact.payload or {}):
            rows.append(
                Task(
                    job_id=job.id,
                    organization_id=job.organization_id,
                    title=proposal.title[:255],
                    description=proposal.description,
                    category=TaskCategory(proposal.category),
                    agent=artifact.name,
                )
            )

    await replace_tasks(session, job_id=job.id, tasks=rows)
    return f"Created {len(rows)} tasks"


# -----------------------
# complete
# -----------------------

def format_duration(seconds: float) -> str:
    seconds = max(0, int(seconds))
    hours, rest = divmod(seconds, 3600)
    minutes, secs = divmod(rest, 60)
    if hours:
        return f"{hours}h {minutes}m {secs}s"
    if minutes:
        return f"{minutes}m {secs}s"
    return f"{secs}s"


async def count_tasks(session: AsyncSession, job_id: str) -> TasksCreated:
    res = await session.execute(select(Task.category).where(Task.job_id == job_id))
    categories = list(res.scalars().all())
    user = sum(1 for c in categories if c == TaskCategory.USER)
    alloro = sum(1 for c in categories if c == TaskCategory.ALLORO)
    return TasksCreated(user=user, alloro=alloro, total=len(categories))


async def build_summary(
    session: AsyncSession,
    *,
    job: PmsJob,
    detail: AutomationStatusDetail,
    now: Optional[datetime] = None,
) -> AutomationSummary:
    now = now or datetime.now(timezone.utc)

    results = {}
    for artifact in await latest_agent_artifacts(session, job.id):
        key = MonthlyAgentKey(artifact.name)
        results[key] = AgentResult(
            success=artifact.success,
            result_id=agent_result_id(artifact),
            error=artifact.error,
        )

    started = detail.started_at
    if started.tzinfo is None:
        started = started.replace(tzinfo=timezone.utc)

    return AutomationSummary(
        tasks_created=await count_tasks(session, job.id),
        agent_results=results,
        duration=format_duration((now - started).total_seconds()),
    )
