from __future__ import annotations

import logging
from typing import Any, Dict

from sqlalchemy.ext.asyncio import AsyncSession

from pms_automation.core.audit import write_audit_event
from pms_automation.db.models import AuditEventType
from pms_automation.domain.errors import InvalidRetryTarget
from pms_automation.domain.state_machine import RETRYABLE_STEPS, rewind
from pms_automation.domain.status import AutomationState, StepKey, StepState
from pms_automation.runtime.locks import JobLocks
from pms_automation.runtime.store import load_job, read_status, save_status

logger = logging.getLogger(__name__)


async def retry_step(
    session: AsyncSession,
    *,
    job_id: str,
    step: str,
    locks: JobLocks,
) -> Dict[str, Any]:
    """Rewind a failed job to ``step``. The caller schedules the resumed run."""
    try:
        target = StepKey(step)
    except ValueError:
        raise InvalidRetryTarget(f"unknown step: {step}", job_id=job_id) from None

    if target not in RETRYABLE_STEPS:
        raise InvalidRetryTarget(f"{target.value} cannot be retried", job_id=job_id)

    async with locks.hold(job_id):
        job = await load_job(session, job_id)
        detail = read_status(job)
        if detail.status != AutomationState.FAILED:
            raise InvalidRetryTarget(f"job is {detail.status.value}, only failed jobs can be retried", job_id=job_id)
        if detail.current_step != target and detail.steps[target].status != StepState.FAILED:
            raise InvalidRetryTarget(
                f"{target.value} is not the failed step ({detail.current_step.value})", job_id=job_id
            )

        detail = rewind(detail, target)
        await save_status(session, job=job, detail=detail, commit=False)
        await write_audit_event(
            session,
            job_id=job_id,
            event_type=AuditEventType.RETRY_REQUESTED,
            payload={"step": target.value},
        )

    logger.info("job %s: retry requested for %s", job_id, target.value)
    return {"jobId": job.id, "stepRetried": target.value, "organization_id": job.organization_id}
