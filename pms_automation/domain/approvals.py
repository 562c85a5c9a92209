from __future__ import annotations

import logging
from typing import Callable, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from pms_automation.core.audit import write_audit_event
from pms_automation.db.models import AuditEventType, PmsJob
from pms_automation.domain.state_machine import complete_step
from pms_automation.domain.status import STEP_LABELS, ApprovalKind, AutomationState, StepKey
from pms_automation.runtime.locks import JobLocks
from pms_automation.runtime.store import load_job, read_status, save_status

logger = logging.getLogger(__name__)

AdvanceSignal = Callable[[str], None]

_GATES = {
    ApprovalKind.ADMIN: (StepKey.ADMIN_APPROVAL, "is_approved"),
    ApprovalKind.CLIENT: (StepKey.CLIENT_APPROVAL, "is_client_approved"),
}


async def set_approval(
    session: AsyncSession,
    *,
    job_id: str,
    which: ApprovalKind,
    value: bool,
    locks: JobLocks,
    signal: Optional[AdvanceSignal] = None,
) -> PmsJob:
    """Set one approval flag.

    Writing the value the flag already holds is a no-op. Clearing a flag never
    reopens a gate that already completed. When a flag turns true, ``signal``
    is called with the job id so the pipeline can resume.
    """
    gate, attr = _GATES[ApprovalKind(which)]
    job = await load_job(session, job_id)
    previous = bool(getattr(job, attr))
    if previous == value:
        return job

    setattr(job, attr, value)

    gate_completed = False
    detail = read_status(job)
    # a running job completes the gate itself once it re-reads the flag
    if (
        value
        and not locks.is_running(job_id)
        and detail.status == AutomationState.AWAITING_APPROVAL
        and detail.current_step == gate
    ):
        detail = complete_step(detail, gate, message=f"{STEP_LABELS[gate]} granted")
        await save_status(session, job=job, detail=detail, commit=False)
        gate_completed = True

    await write_audit_event(
        session,
        job_id=job_id,
        event_type=AuditEventType.APPROVAL_CHANGED,
        payload={"which": which.value, "from": previous, "to": value, "gateCompleted": gate_completed},
    )
    await session.refresh(job)
    logger.info("job %s: %s approval set to %s", job_id, which.value, value)

    if value and signal is not None:
        signal(job_id)
    return job
