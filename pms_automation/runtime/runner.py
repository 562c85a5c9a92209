from __future__ import annotations

import logging
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import sessionmaker

from pms_automation.agents.registry import AgentRegistry
from pms_automation.core.audit import write_audit_event
from pms_automation.core.config import settings
from pms_automation.db.models import AuditEventType, PmsJob
from pms_automation.domain.errors import PipelineError, StepExecutionFailed
from pms_automation.domain.state_machine import (
    GATE_STEPS,
    await_approval,
    complete_step,
    fail_step,
    finish,
    is_terminal,
    next_step,
    start_step,
)
from pms_automation.domain.status import (
    STEP_LABELS,
    AutomationState,
    AutomationStatusDetail,
    StepKey,
    StepState,
)
from pms_automation.runtime.locks import JobLocks
from pms_automation.runtime.orchestrator import MonthlyAgentOrchestrator
from pms_automation.runtime.steps import build_summary, run_file_upload, run_pms_parser, run_task_creation
from pms_automation.runtime.store import load_job, read_status, save_status

logger = logging.getLogger(__name__)


def _gate_open(job: PmsJob, step: StepKey) -> bool:
    if step == StepKey.ADMIN_APPROVAL:
        return bool(job.is_approved)
    return bool(job.is_client_approved)


class PipelineRunner:
    """Drives jobs through the step sequence, one active run per job."""

    def __init__(
        self,
        *,
        session_factory: sessionmaker,
        agents: AgentRegistry,
        locks: Optional[JobLocks] = None,
        agent_timeout_s: Optional[float] = None,
        max_parallel_agents: Optional[int] = None,
    ) -> None:
        self.session_factory = session_factory
        self.locks = locks or JobLocks()
        self.orchestrator = MonthlyAgentOrchestrator(
            agents=agents,
            timeout_s=agent_timeout_s if agent_timeout_s is not None else settings.agent_timeout_s,
            max_parallel=max_parallel_agents or settings.max_parallel_agents,
        )

    # -----------------------
    # entrypoints
    # -----------------------

    async def advance(self, job_id: str) -> AutomationStatusDetail:
        if self.locks.is_running(job_id):
            # the active run picks the request up before it releases the lock
            self.locks.request_rerun(job_id)
            logger.info("job %s: run in progress, advance deferred to it", job_id)
            async with self.session_factory() as session:
                return read_status(await load_job(session, job_id))

        async with self.locks.hold(job_id):
            try:
                while True:
                    async with self.session_factory() as session:
                        detail = await self._run(session, job_id)
                    if not self.locks.take_rerun(job_id):
                        return detail
            except Exception:
                self.locks.take_rerun(job_id)
                raise

    async def run_in_background(self, job_id: str) -> None:
        try:
            await self.advance(job_id)
        except StepExecutionFailed as e:
            logger.warning("job %s: run halted at %s: %s", job_id, e.step.value, e.error)
        except PipelineError as e:
            logger.warning("job %s: run not started: %s", job_id, e.message)
        except Exception:
            logger.exception("job %s: background run failed", job_id)

    # -----------------------
    # step loop
    # -----------------------

    async def _run(self, session: AsyncSession, job_id: str) -> AutomationStatusDetail:
        job = await load_job(session, job_id)
        detail = read_status(job)

        while not is_terminal(detail):
            step = next_step(detail)
            if step is None:
                break

            if step in GATE_STEPS:
                # approval flags are written by other sessions
                await session.refresh(job)
                detail = read_status(job)
                if not _gate_open(job, step):
                    if detail.status != AutomationState.AWAITING_APPROVAL or detail.current_step != step:
                        detail = await_approval(detail, step)
                        await save_status(session, job=job, detail=detail, commit=False)
                        await write_audit_event(
                            session,
                            job_id=job_id,
                            event_type=AuditEventType.AWAITING_APPROVAL,
                            payload={"step": step.value},
                        )
                        logger.info("job %s: awaiting %s", job_id, STEP_LABELS[step].lower())
                    return detail

                detail = complete_step(detail, step, message=f"{STEP_LABELS[step]} granted")
                await self._step_completed(session, job=job, detail=detail, step=step)
                continue

            detail = await self._execute(session, job=job, detail=detail, step=step)

        return detail

    async def _step_completed(
        self,
        session: AsyncSession,
        *,
        job: PmsJob,
        detail: AutomationStatusDetail,
        step: StepKey,
    ) -> None:
        await save_status(session, job=job, detail=detail, commit=False)
        await write_audit_event(
            session,
            job_id=job.id,
            event_type=AuditEventType.STEP_COMPLETED,
            payload={"step": step.value, "progress": detail.progress},
        )
        logger.info("job %s: %s completed (%d%%)", job.id, step.value, detail.progress)

    async def _execute(
        self,
        session: AsyncSession,
        *,
        job: PmsJob,
        detail: AutomationStatusDetail,
        step: StepKey,
    ) -> AutomationStatusDetail:
        job_id = job.id

        if detail.steps[step].status == StepState.PENDING:
            detail = start_step(detail, step)
            await save_status(session, job=job, detail=detail, commit=False)
            await write_audit_event(
                session,
                job_id=job_id,
                event_type=AuditEventType.STEP_STARTED,
                payload={"step": step.value},
            )
            logger.info("job %s: %s started", job_id, step.value)

        async def persist(value: AutomationStatusDetail) -> AutomationStatusDetail:
            return await save_status(session, job=job, detail=value)

        try:
            message: Optional[str] = None
            if step == StepKey.FILE_UPLOAD:
                message = run_file_upload(job)
            elif step == StepKey.PMS_PARSER:
                message = run_pms_parser(job)
            elif step == StepKey.MONTHLY_AGENTS:
                detail = await self.orchestrator.run(session, job=job, detail=detail, persist=persist)
            elif step == StepKey.TASK_CREATION:
                message = await run_task_creation(session, job)
            elif step == StepKey.COMPLETE:
                summary = await build_summary(session, job=job, detail=detail)
                detail = finish(detail, summary)
                await save_status(session, job=job, detail=detail, commit=False)
                await write_audit_event(
                    session,
                    job_id=job_id,
                    event_type=AuditEventType.PIPELINE_COMPLETED,
                    payload={"summary": summary.model_dump(mode="json", by_alias=True)},
                )
                logger.info("job %s: automation completed in %s", job_id, summary.duration)
                return detail
        except StepExecutionFailed as e:
            failure = e
        except Exception as e:
            logger.exception("job %s: %s raised", job_id, step.value)
            failure = StepExecutionFailed(step, f"{type(e).__name__}: {e}", job_id=job_id)
        else:
            detail = complete_step(detail, step, message=message)
            await self._step_completed(session, job=job, detail=detail, step=step)
            return detail

        await self._record_failure(session, job_id=job_id, failure=failure)
        raise failure

    async def _record_failure(self, session: AsyncSession, *, job_id: str, failure: StepExecutionFailed) -> None:
        # drop whatever the failed step left unflushed, then fail from the last committed status
        await session.rollback()
        job = await load_job(session, job_id)
        detail = read_status(job)
        if detail.steps[failure.step].status != StepState.FAILED:
            detail = fail_step(detail, failure.step, failure.error)
        await save_status(session, job=job, detail=detail, commit=False)
        await write_audit_event(
            session,
            job_id=job_id,
            event_type=AuditEventType.STEP_FAILED,
            payload={"step": failure.step.value, "error": failure.error, "kind": failure.kind.value},
        )
        logger.warning("job %s: %s failed: %s", job_id, failure.step.value, failure.error)
